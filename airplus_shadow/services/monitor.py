"""
Device Monitor

Drains a session's event queue, keeps the merged canonical status of every
watched device and fans status changes out to registered observers.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from typing import Any, Callable

from ..core.config import Settings, get_settings
from ..exceptions import InvalidCommandError
from ..models.events import Connected, Disconnected, SessionError, SessionEvent, StateChanged
from ..models.status import CanonicalDeviceStatus, DeviceCommand
from ..schemas.shadow import ShadowDocument
from .normalizer import build_desired, merge_status, normalize_reported
from .session import ShadowSession

logger = logging.getLogger(__name__)

StatusCallback = Callable[[CanonicalDeviceStatus, str], None]


class DeviceMonitor:
    """
    Per-device status cache and observer registry on top of a session.

    A device is requested on the session while it has at least one
    observer; when the last observer unregisters its cached status is
    discarded and the session stops listening for it.
    """

    def __init__(self, session: ShadowSession, config: Settings | None = None) -> None:
        self._session = session
        self._config = config or get_settings()
        self._observers: dict[str, list[StatusCallback]] = {}
        self._status: dict[str, CanonicalDeviceStatus] = {}
        self._drain_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def watched_devices(self) -> frozenset[str]:
        return frozenset(self._observers)

    async def start(self) -> None:
        if self._started:
            logger.warning("Device monitor already started")
            return
        self._started = True
        logger.info("Starting device monitor")
        self._drain_task = asyncio.create_task(self._drain_events())

    async def stop(self) -> None:
        if not self._started:
            return
        logger.info("Stopping device monitor")
        self._started = False
        if self._drain_task:
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None

    def watch(self, device_id: str, callback: StatusCallback) -> Callable[[], None]:
        """Register ``callback(status, kind)`` for a device.

        Returns:
            A function to unregister the callback.
        """
        self._observers.setdefault(device_id, []).append(callback)
        self._session.subscribe_device(device_id)

        def unregister() -> None:
            callbacks = self._observers.get(device_id)
            if not callbacks or callback not in callbacks:
                return
            callbacks.remove(callback)
            if not callbacks:
                del self._observers[device_id]
                self._status.pop(device_id, None)
                self._session.unsubscribe_device(device_id)
                logger.debug("Stopped watching device", extra={"device_id": device_id})

        return unregister

    def status(self, device_id: str) -> CanonicalDeviceStatus | None:
        return self._status.get(device_id)

    async def refresh(self, device_id: str, timeout: float | None = None) -> CanonicalDeviceStatus:
        """Fetch the shadow and merge its reported state.

        Observers are notified here only when get/accepted responses are not
        already surfaced as session events.
        """
        document = await self._session.get_state(device_id, timeout)
        notify = not self._config.notify_on_get_accepted
        return self._apply(device_id, document.state.reported or {}, "reported", notify=notify)

    async def set_state(
        self,
        device_id: str,
        command: DeviceCommand | Mapping[str, Any],
        timeout: float | None = None,
    ) -> ShadowDocument:
        patch = build_desired(command, self._config.speed_range)
        if not patch:
            raise InvalidCommandError("command does not set any attribute")
        logger.info("Updating device state", extra={"device_id": device_id, "patch": patch})
        return await self._session.update_state(device_id, patch, timeout)

    def handle_event(self, event: SessionEvent) -> None:
        if isinstance(event, StateChanged):
            self._apply(event.device_id, event.state, event.kind)
        elif isinstance(event, SessionError):
            logger.warning("Session error", extra={"error": str(event.error), "retry_at": str(event.retry_at)})
        elif isinstance(event, (Connected, Disconnected)):
            logger.debug("Session event", extra={"event": type(event).__name__})

    async def _drain_events(self) -> None:
        async for event in self._session.events():
            try:
                self.handle_event(event)
            except Exception:
                logger.exception("Failed to process session event", extra={"event": type(event).__name__})

    def _apply(
        self, device_id: str, raw: Mapping[str, Any], kind: str, notify: bool = True
    ) -> CanonicalDeviceStatus:
        update = normalize_reported(raw, self._config.speed_range)
        status = merge_status(self._status.get(device_id), update)
        callbacks = self._observers.get(device_id)
        if not callbacks:
            return status

        self._status[device_id] = status
        if notify:
            for callback in list(callbacks):
                try:
                    callback(status, kind)
                except Exception:
                    logger.exception("Error in device status callback", extra={"device_id": device_id})
        return status
