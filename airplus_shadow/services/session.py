"""
Shadow Session Manager

Owns the live broker connection for one account: device-scoped credential
acquisition and rotation, reconnection with exponential backoff behind a
circuit breaker, shadow request correlation and inbound dispatch.

All state is mutated on the event loop; paho's network thread only reaches
the session through the transport's marshalled callbacks. Connection
lifecycle and unsolicited shadow state are published as typed events on a
single queue drained with :meth:`ShadowSession.events`.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable

from pydantic import ValidationError

from ..core.config import Settings, get_settings
from ..exceptions import (
    CircuitOpenError,
    ConnectionFailedError,
    CredentialError,
    NotConnectedError,
    RequestDisconnectedError,
    RequestRejectedError,
    TransportError,
)
from ..models.events import (
    BreakerStateChanged,
    Connected,
    Disconnected,
    SessionError,
    SessionEvent,
    StateChanged,
)
from ..schemas.shadow import ConnectionCredentials, ShadowDelta, ShadowDocument, ShadowRejection
from .circuit_breaker import CircuitBreaker, CircuitState
from .correlator import Operation, RequestCorrelator
from .router import MessageKind, classify, shadow_topic, subscription_topics
from .transport import PahoWebSocketTransport, ShadowTransport, TransportFactory

logger = logging.getLogger(__name__)

CredentialSupplier = Callable[[], Awaitable[ConnectionCredentials | Mapping[str, Any]]]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect ``attempt`` (1-based): ``min(base * 2**(attempt-1), cap)``."""
    if attempt < 1:
        return 0.0
    # Past this exponent every delay is capped anyway
    exponent = min(attempt - 1, 64)
    return min(base * (2**exponent), cap)


class ShadowSession:
    """Resilient device-shadow session over MQTT-over-WebSocket."""

    def __init__(
        self,
        credential_supplier: CredentialSupplier,
        config: Settings | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._config = config or get_settings()
        self._supplier = credential_supplier
        self._transport_factory: TransportFactory = transport_factory or PahoWebSocketTransport

        self._state = SessionState.DISCONNECTED
        self._transport: ShadowTransport | None = None
        self._credentials: ConnectionCredentials | None = None
        self._last_connected_at: datetime | None = None

        self._breaker = CircuitBreaker(
            failure_threshold=self._config.breaker_failure_threshold,
            cooldown_s=self._config.breaker_cooldown_s,
            on_transition=self._on_breaker_transition,
        )
        self._correlator = RequestCorrelator(
            self._publish_request, default_timeout=self._config.request_timeout_s
        )

        self._requested: set[str] = set()
        self._subscribed: set[str] = set()

        self._connect_lock = asyncio.Lock()
        # Bumped by disconnect() so an in-flight connect knows it was abandoned
        self._epoch = 0
        self._reconnect_attempt = 0
        self._reconnect_task: asyncio.Task[None] | None = None
        self._rotation_task: asyncio.Task[None] | None = None
        self._cooldown_task: asyncio.Task[None] | None = None
        self._closing_tasks: set[asyncio.Task[None]] = set()

        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=self._config.event_queue_size)

    # ------------------------------------------------------------------
    # Introspection

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def credentials(self) -> ConnectionCredentials | None:
        return self._credentials

    @property
    def requested_devices(self) -> frozenset[str]:
        return frozenset(self._requested)

    @property
    def subscribed_devices(self) -> frozenset[str]:
        return frozenset(self._subscribed)

    @property
    def pending_count(self) -> int:
        return self._correlator.pending_count

    @property
    def last_connected_at(self) -> datetime | None:
        return self._last_connected_at

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    # ------------------------------------------------------------------
    # Events

    async def events(self) -> AsyncIterator[SessionEvent]:
        while True:
            yield await self._events.get()

    async def next_event(self, timeout: float | None = None) -> SessionEvent:
        if timeout is None:
            return await self._events.get()
        return await asyncio.wait_for(self._events.get(), timeout=timeout)

    def _emit(self, event: SessionEvent) -> None:
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            dropped = self._events.get_nowait()
            logger.warning(
                "Session event queue full, dropping oldest event",
                extra={"dropped": type(dropped).__name__, "queued": type(event).__name__},
            )
            self._events.put_nowait(event)

    # ------------------------------------------------------------------
    # Connection lifecycle

    async def connect(self) -> None:
        """Connect, or return at once if already connected.

        Raises :class:`CircuitOpenError` without contacting the credential
        supplier while the breaker is open, and :class:`ConnectionFailedError`
        when the attempt fails.
        """
        async with self._connect_lock:
            if self._state is SessionState.CONNECTED:
                return
            await self._connect_once()

    async def _connect_once(self) -> None:
        self._breaker.check()
        epoch = self._epoch
        self._set_state(SessionState.CONNECTING)

        transport: ShadowTransport | None = None
        try:
            credentials = await self._fetch_credentials()
            transport = self._transport_factory(
                self._config, self._handle_message, self._handle_transport_closed
            )
            self._transport = transport
            await transport.open(credentials, self._config.connect_timeout_s)
        except asyncio.CancelledError:
            self._transport = None
            self._set_state(SessionState.DISCONNECTED)
            if transport is not None:
                self._spawn_close(transport)
            raise
        except Exception as exc:
            self._transport = None
            self._set_state(SessionState.DISCONNECTED)
            if transport is not None:
                await self._close_quietly(transport)
            self._breaker.record_failure()
            logger.warning(
                "Connect attempt failed",
                extra={
                    "error": str(exc),
                    "consecutive_failures": self._breaker.consecutive_failures,
                    "breaker": self._breaker.state.value,
                },
            )
            if self._requested and not self._breaker.is_open:
                self._schedule_reconnect()
            if isinstance(exc, ConnectionFailedError):
                raise
            raise ConnectionFailedError(f"Connect attempt failed: {exc}") from exc

        if epoch != self._epoch:
            # disconnect() ran while the handshake was in flight
            self._transport = None
            await self._close_quietly(transport)
            self._set_state(SessionState.DISCONNECTED)
            raise ConnectionFailedError("session disconnected while connecting")

        self._credentials = credentials
        self._last_connected_at = datetime.now(UTC)
        self._reconnect_attempt = 0
        self._set_state(SessionState.CONNECTED)
        self._breaker.record_success()
        self._cancel_task(self._cooldown_task)
        self._cooldown_task = None

        logger.info(
            "Shadow session connected",
            extra={
                "client_id": credentials.client_id,
                "authorized_device_id": credentials.authorized_device_id,
            },
        )
        self._emit(Connected(credentials.client_id, credentials.authorized_device_id))
        self._resubscribe()
        self._schedule_rotation()

    async def _fetch_credentials(self) -> ConnectionCredentials:
        try:
            supplied = await self._supplier()
        except Exception as exc:
            raise CredentialError(f"Credential supplier failed: {exc}") from exc
        if isinstance(supplied, ConnectionCredentials):
            return supplied
        try:
            return ConnectionCredentials.model_validate(supplied)
        except ValidationError as exc:
            raise CredentialError(f"Credential supplier returned invalid credentials: {exc}") from exc

    async def disconnect(self) -> None:
        """Tear the session down without scheduling any reconnection.

        Every pending request is rejected before this returns.
        """
        self._epoch += 1
        tasks = [self._reconnect_task, self._rotation_task, self._cooldown_task]
        self._reconnect_task = self._rotation_task = self._cooldown_task = None
        for task in tasks:
            self._cancel_task(task)

        self._requested.clear()
        self._correlator.reject_all(RequestDisconnectedError, "session disconnected")

        transport, self._transport = self._transport, None
        self._subscribed.clear()
        was_disconnected = self._state is SessionState.DISCONNECTED
        self._set_state(SessionState.DISCONNECTED)

        current = asyncio.current_task()
        for task in tasks:
            if task is not None and task is not current:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if transport is not None:
            await self._close_quietly(transport)
        if self._closing_tasks:
            await asyncio.gather(*self._closing_tasks, return_exceptions=True)

        if not was_disconnected:
            logger.info("Shadow session disconnected")
            self._emit(Disconnected("disconnect requested", intentional=True))

    def _handle_transport_closed(self, transport: ShadowTransport, reason: str) -> None:
        if transport is not self._transport:
            logger.debug("Ignoring close from a stale transport")
            return
        self._transport = None
        self._subscribed.clear()
        self._cancel_task(self._rotation_task)
        self._rotation_task = None
        self._set_state(SessionState.DISCONNECTED)
        self._correlator.reject_all(RequestDisconnectedError, f"connection lost: {reason}")
        self._emit(Disconnected(reason))
        self._spawn_close(transport)

        if self._requested:
            self._schedule_reconnect()
        else:
            logger.info("Connection lost with no devices requested, not reconnecting")

    # ------------------------------------------------------------------
    # Reconnection, breaker cool-down and credential rotation

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_attempt += 1
        delay = backoff_delay(
            self._reconnect_attempt,
            self._config.reconnect_base_delay_s,
            self._config.reconnect_max_delay_s,
        )
        logger.info(
            "Scheduling reconnect",
            extra={"attempt": self._reconnect_attempt, "delay_s": delay},
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._reconnect_task is asyncio.current_task():
            self._reconnect_task = None
        if not self._requested:
            logger.info("No devices requested, skipping reconnect")
            return
        try:
            await self.connect()
        except CircuitOpenError as exc:
            # The breaker's cool-down owns the next attempt
            logger.warning("Reconnect suppressed by open circuit", extra={"retry_at": str(exc.retry_at)})
            self._emit(SessionError(exc, exc.retry_at))
        except ConnectionFailedError as exc:
            # A failed attempt reschedules itself while the breaker stays closed
            self._emit(SessionError(exc, self._breaker.retry_at))

    def _on_breaker_transition(self, previous: CircuitState, current: CircuitState, failures: int) -> None:
        self._emit(BreakerStateChanged(previous.value, current.value, failures))
        if current is not CircuitState.OPEN:
            return
        retry_at = self._breaker.retry_at
        self._emit(
            SessionError(
                CircuitOpenError(f"connect attempts suspended after {failures} failures", retry_at),
                retry_at,
            )
        )
        self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        self._cancel_task(self._cooldown_task)
        self._cooldown_task = asyncio.create_task(self._cooldown_after(self._breaker.cooldown_s))

    async def _cooldown_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._cooldown_task is asyncio.current_task():
            self._cooldown_task = None
        if not self._breaker.half_open():
            return
        if self._requested and self._state is SessionState.DISCONNECTED:
            logger.info("Circuit half-open, making a trial connect attempt")
            self._cancel_task(self._reconnect_task)
            self._reconnect_task = asyncio.create_task(self._reconnect_after(0))

    def _schedule_rotation(self) -> None:
        self._cancel_task(self._rotation_task)
        self._rotation_task = asyncio.create_task(self._rotate_after(self._config.credential_rotation_s))

    async def _rotate_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._rotation_task is asyncio.current_task():
            self._rotation_task = None

        logger.info("Rotating connection credentials")
        transport, self._transport = self._transport, None
        self._subscribed.clear()
        self._set_state(SessionState.DISCONNECTED)
        self._correlator.reject_all(RequestDisconnectedError, "credential rotation")
        self._emit(Disconnected("credential rotation", intentional=True))
        if transport is not None:
            await self._close_quietly(transport)

        try:
            await self.connect()
        except CircuitOpenError as exc:
            self._emit(SessionError(exc, exc.retry_at))
        except ConnectionFailedError as exc:
            self._emit(SessionError(exc, self._breaker.retry_at))

    # ------------------------------------------------------------------
    # Subscriptions

    def _is_authorized(self, device_id: str) -> bool:
        """Credentials without a device restriction authorize every device."""
        if self._credentials is None:
            return False
        authorized = self._credentials.authorized_device_id
        return authorized is None or authorized == device_id

    def subscribe_device(self, device_id: str) -> bool:
        """Request shadow updates for ``device_id``.

        The device is always recorded; it is wire-subscribed only while
        connected with credentials that authorize it. Returns whether it is
        wire-subscribed now.
        """
        self._requested.add(device_id)
        if self.is_connected and device_id not in self._subscribed:
            if self._is_authorized(device_id):
                self._wire_subscribe(device_id)
            else:
                logger.info(
                    "Device not authorized by current credentials, subscription deferred",
                    extra={"device_id": device_id},
                )
        return device_id in self._subscribed

    def unsubscribe_device(self, device_id: str) -> None:
        self._requested.discard(device_id)
        if device_id not in self._subscribed:
            return
        self._subscribed.discard(device_id)
        if self._transport is None:
            return
        try:
            self._transport.unsubscribe(subscription_topics(self._config.shadow_topic_prefix, device_id))
        except TransportError as exc:
            logger.warning("Failed to unsubscribe device", extra={"device_id": device_id, "error": str(exc)})

    def _wire_subscribe(self, device_id: str) -> None:
        if self._transport is None:
            return
        try:
            self._transport.subscribe(subscription_topics(self._config.shadow_topic_prefix, device_id))
        except TransportError as exc:
            logger.warning("Failed to subscribe device", extra={"device_id": device_id, "error": str(exc)})
            return
        self._subscribed.add(device_id)

    def _resubscribe(self) -> None:
        for device_id in sorted(self._requested):
            if self._is_authorized(device_id):
                self._wire_subscribe(device_id)

    # ------------------------------------------------------------------
    # Requests

    async def get_state(self, device_id: str, timeout: float | None = None) -> ShadowDocument:
        """Fetch the full shadow document of ``device_id``."""
        future = self._issue(device_id, Operation.GET, {}, timeout)
        return await future

    async def update_state(
        self, device_id: str, patch: Mapping[str, Any], timeout: float | None = None
    ) -> ShadowDocument:
        """Publish ``patch`` as the desired state of ``device_id``."""
        future = self._issue(device_id, Operation.UPDATE, {"state": {"desired": dict(patch)}}, timeout)
        return await future

    def _issue(
        self, device_id: str, operation: Operation, payload: dict[str, Any], timeout: float | None
    ) -> asyncio.Future:
        if self._state is not SessionState.CONNECTED or self._transport is None:
            raise NotConnectedError(f"cannot {operation.value} {device_id}: session is {self._state.value}")
        if not self._is_authorized(device_id):
            raise NotConnectedError(f"current credentials do not authorize device {device_id}")
        return self._correlator.request(device_id, operation, payload, timeout)

    def _publish_request(self, device_id: str, operation: Operation, payload: dict[str, Any]) -> None:
        if self._transport is None:
            raise NotConnectedError("transport is not open")
        topic = shadow_topic(self._config.shadow_topic_prefix, device_id, operation.value)
        self._transport.publish(topic, json.dumps(payload).encode("utf-8"))

    # ------------------------------------------------------------------
    # Inbound dispatch

    def _handle_message(self, topic: str, payload: bytes) -> None:
        routed = classify(topic, payload)
        if not routed.recognized or routed.device_id is None:
            return
        device_id = routed.device_id
        if not self._is_authorized(device_id):
            logger.debug("Dropping message for unauthorized device", extra={"device_id": device_id})
            return

        kind = routed.kind
        document = routed.document
        if isinstance(document, ShadowDocument):
            self._correlator.resolve(device_id, kind.operation, document)
            reported = document.state.reported
            if kind is MessageKind.GET_ACCEPTED and self._config.notify_on_get_accepted and reported is not None:
                self._emit(
                    StateChanged(device_id, "reported", reported, document.version, document.timestamp)
                )
        elif isinstance(document, ShadowRejection):
            operation = kind.operation
            self._correlator.reject(
                device_id,
                operation,
                RequestRejectedError(document.message, device_id, operation, document.code),
            )
        elif isinstance(document, ShadowDelta):
            self._emit(StateChanged(device_id, "delta", document.state, document.version, document.timestamp))

    # ------------------------------------------------------------------
    # Helpers

    def _set_state(self, new_state: SessionState) -> None:
        if new_state is self._state:
            return
        logger.debug(
            "Session state changed",
            extra={"previous": self._state.value, "current": new_state.value},
        )
        self._state = new_state

    @staticmethod
    def _cancel_task(task: asyncio.Task | None) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _spawn_close(self, transport: ShadowTransport) -> None:
        task = asyncio.create_task(self._close_quietly(transport))
        self._closing_tasks.add(task)
        task.add_done_callback(self._closing_tasks.discard)

    @staticmethod
    async def _close_quietly(transport: ShadowTransport) -> None:
        try:
            await transport.close()
        except Exception:
            logger.exception("Error closing transport")
