from adpilot.connectors.base import (
    AdsPlatformTransport,
    Credentials,
    MutateRequest,
    MutateResult,
    TokenGrant,
    TransportCapabilities,
)
from adpilot.connectors.demo import DemoTransport
from adpilot.connectors.google_ads import GoogleAdsTransport

__all__ = [
    "AdsPlatformTransport",
    "Credentials",
    "MutateRequest",
    "MutateResult",
    "TokenGrant",
    "TransportCapabilities",
    "DemoTransport",
    "GoogleAdsTransport",
]
