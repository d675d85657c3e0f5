from __future__ import annotations

from typing import Awaitable, TypeVar

from adpilot.util import format_percent

T = TypeVar("T")


class AdsError(RuntimeError):
    """Base for every failure that crosses the service contract as a result envelope."""

    code = "platform_error"


class NotAuthenticated(AdsError):
    code = "not_authenticated"

    def __init__(self, message: str = "Google Ads account not connected. Please connect your account in Settings."):
        super().__init__(message)


class NotConfigured(AdsError):
    code = "not_configured"


class ConfidenceTooLow(AdsError):
    code = "confidence_too_low"

    def __init__(self, confidence: float, threshold: float = 100):
        self.confidence = confidence
        self.threshold = threshold
        super().__init__(
            f"Cannot apply change: Confidence is {format_percent(confidence)}%, "
            f"must be {format_percent(threshold)}% to auto-apply changes."
        )


class NotFound(AdsError):
    code = "not_found"


class DuplicateAccount(AdsError):
    code = "duplicate_account"


class UnsupportedChangeType(AdsError):
    code = "unsupported_change_type"

    def __init__(self, change_type: str):
        self.change_type = change_type
        super().__init__(f"Unsupported recommendation type: {change_type}")


class InvalidRequest(AdsError):
    code = "invalid_request"


class PlatformError(AdsError):
    code = "platform_error"


async def platform_call(awaitable: Awaitable[T]) -> T:
    """Await a transport call; anything that is not an AdsError becomes a PlatformError."""
    try:
        return await awaitable
    except AdsError:
        raise
    except Exception as e:  # noqa: BLE001 - any transport failure is a platform failure
        raise PlatformError(f"{type(e).__name__}: {e}") from e
