"""
Shadow Client Exceptions

Transport-level errors drive the reconnection state machine; request-level
errors are raised only to the caller awaiting that request.
"""

from __future__ import annotations

from datetime import datetime


class ShadowClientError(Exception):
    """Base exception for shadow client operations."""
    pass


class TransportError(ShadowClientError):
    """Raised when the broker connection cannot be established or is lost."""
    pass


class ConnectionFailedError(TransportError):
    """Raised when a connect attempt fails (handshake error or timeout)."""
    pass


class CredentialError(TransportError):
    """Raised when the credential supplier fails to return connection info."""
    pass


class CircuitOpenError(ShadowClientError):
    """Raised when connect attempts are suppressed by the circuit breaker."""

    def __init__(self, message: str, retry_at: datetime | None = None) -> None:
        super().__init__(message)
        self.retry_at = retry_at


class NotConnectedError(ShadowClientError):
    """Raised when a request is issued while the session is not connected."""
    pass


class InvalidCommandError(ShadowClientError, ValueError):
    """Raised when a canonical command cannot be encoded."""
    pass


class RequestError(ShadowClientError):
    """Base class for failures scoped to a single shadow request."""

    def __init__(self, message: str, device_id: str | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.device_id = device_id
        self.operation = operation


class RequestRejectedError(RequestError):
    """Raised when the broker or device explicitly rejects a request."""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        operation: str | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message, device_id, operation)
        self.code = code
        self.reason = message


class RequestTimeoutError(RequestError):
    """Raised when no response arrives before the request deadline."""
    pass


class RequestSupersededError(RequestError):
    """Raised when a newer request for the same device and operation preempts this one."""
    pass


class RequestDisconnectedError(RequestError):
    """Raised when the session disconnects while the request is pending."""
    pass
