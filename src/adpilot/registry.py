from __future__ import annotations

from adpilot.config import Settings
from adpilot.connectors.base import AdsPlatformTransport
from adpilot.connectors.demo import DemoTransport
from adpilot.connectors.google_ads import GoogleAdsTransport


def build_transport(settings: Settings, *, platform: str = "google") -> AdsPlatformTransport:
    if settings.demo_mode:
        return DemoTransport()

    if platform == "google":
        return GoogleAdsTransport(settings)

    raise ValueError(f"Unknown platform: {platform}")
