from .status import CanonicalDeviceStatus, DeviceCommand, FilterStage, FilterStatus  # noqa: E402
from .events import (  # noqa: E402
    BreakerStateChanged,
    Connected,
    Disconnected,
    SessionError,
    SessionEvent,
    StateChanged,
)

__all__ = [
    "CanonicalDeviceStatus",
    "DeviceCommand",
    "FilterStage",
    "FilterStatus",
    "BreakerStateChanged",
    "Connected",
    "Disconnected",
    "SessionError",
    "SessionEvent",
    "StateChanged",
]
