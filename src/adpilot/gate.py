from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from adpilot.errors import ConfidenceTooLow, InvalidRequest


def coerce_confidence(raw: Any) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise InvalidRequest("confidence must be a number between 0 and 100")
    try:
        v = float(raw)
    except ValueError as e:
        raise InvalidRequest("confidence must be a number between 0 and 100") from e
    if not 0 <= v <= 100:
        raise InvalidRequest("confidence must be a number between 0 and 100")
    return v


@dataclass(frozen=True)
class ConfidenceGate:
    """
    Binary auto-apply gate.

    Only recommendations at or above `threshold` may mutate a live account.
    With the default threshold of 100 that means exactly 100; there is no
    partial tier. The threshold is process configuration, never a per-call argument.
    """

    threshold: float = 100.0

    def validate(self, confidence: float) -> bool:
        try:
            v = coerce_confidence(confidence)
        except InvalidRequest:
            return False
        return v >= self.threshold

    def check(self, confidence: Any) -> float:
        """Return the coerced confidence or raise ConfidenceTooLow / InvalidRequest."""
        v = coerce_confidence(confidence)
        if v < self.threshold:
            raise ConfidenceTooLow(v, self.threshold)
        return v
