"""Resilient asyncio client for Philips Air+ device shadows over MQTT-over-WebSocket."""

from .core.config import Settings, get_settings
from .exceptions import (
    CircuitOpenError,
    ConnectionFailedError,
    CredentialError,
    InvalidCommandError,
    NotConnectedError,
    RequestDisconnectedError,
    RequestError,
    RequestRejectedError,
    RequestSupersededError,
    RequestTimeoutError,
    ShadowClientError,
    TransportError,
)
from .models import CanonicalDeviceStatus, DeviceCommand
from .schemas import ConnectionCredentials, ShadowDocument
from .services import DeviceMonitor, SessionState, ShadowSession
from .services.normalizer import build_desired, merge_status, normalize_reported

__version__ = "0.1.0"

__all__ = [
    "CanonicalDeviceStatus",
    "CircuitOpenError",
    "ConnectionCredentials",
    "ConnectionFailedError",
    "CredentialError",
    "DeviceCommand",
    "DeviceMonitor",
    "InvalidCommandError",
    "NotConnectedError",
    "RequestDisconnectedError",
    "RequestError",
    "RequestRejectedError",
    "RequestSupersededError",
    "RequestTimeoutError",
    "SessionState",
    "Settings",
    "ShadowClientError",
    "ShadowDocument",
    "ShadowSession",
    "TransportError",
    "build_desired",
    "get_settings",
    "merge_status",
    "normalize_reported",
]
