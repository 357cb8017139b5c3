"""Wire payload schemas."""

from .shadow import (
    ConnectionCredentials,
    ShadowDelta,
    ShadowDocument,
    ShadowRejection,
    ShadowState,
)

__all__ = [
    "ConnectionCredentials",
    "ShadowDelta",
    "ShadowDocument",
    "ShadowRejection",
    "ShadowState",
]
