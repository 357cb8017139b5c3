"""Service layer: normalizer, router, correlator, session and monitor."""

from .circuit_breaker import CircuitBreaker, CircuitState
from .correlator import Operation, RequestCorrelator
from .monitor import DeviceMonitor
from .router import MessageKind, RoutedMessage, classify
from .session import SessionState, ShadowSession
from .transport import PahoWebSocketTransport, ShadowTransport

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "DeviceMonitor",
    "MessageKind",
    "Operation",
    "PahoWebSocketTransport",
    "RequestCorrelator",
    "RoutedMessage",
    "SessionState",
    "ShadowSession",
    "ShadowTransport",
    "classify",
]
