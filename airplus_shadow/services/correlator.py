"""
Shadow Request Correlator

Turns the one-way publish/subscribe channel into awaitable request/response
pairs. At most one request per (device, operation) key is pending; a newer
request supersedes the older one at issue time.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from ..exceptions import (
    RequestDisconnectedError,
    RequestError,
    RequestSupersededError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 10.0


class Operation(str, Enum):
    GET = "get"
    UPDATE = "update"


PublishFn = Callable[[str, Operation, dict[str, Any]], None]


@dataclass(slots=True)
class PendingRequest:
    device_id: str
    operation: Operation
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = None


class RequestCorrelator:
    """Tracks pending shadow requests and settles each exactly once."""

    def __init__(self, publish: PublishFn, default_timeout: float = DEFAULT_REQUEST_TIMEOUT) -> None:
        self._publish = publish
        self._default_timeout = default_timeout
        self._pending: dict[tuple[str, Operation], PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def request(
        self,
        device_id: str,
        operation: Operation | str,
        payload: dict[str, Any],
        timeout: float | None = None,
    ) -> asyncio.Future:
        """Register, publish and arm the deadline for a request.

        Registration happens before this returns, so a later request for the
        same key always supersedes this one. Publish errors propagate after the
        new entry is removed.
        """
        operation = Operation(operation)
        key = (device_id, operation)
        loop = asyncio.get_running_loop()

        previous = self._pending.pop(key, None)
        if previous is not None:
            logger.debug(
                "Superseding pending request",
                extra={"device_id": device_id, "operation": operation.value},
            )
            self._settle(
                previous,
                error=RequestSupersededError(
                    f"{operation.value} request for {device_id} superseded by a newer request",
                    device_id,
                    operation.value,
                ),
            )

        future: asyncio.Future = loop.create_future()
        entry = PendingRequest(device_id, operation, future)
        self._pending[key] = entry
        future.add_done_callback(lambda f: self._discard_cancelled(key, entry, f))

        try:
            self._publish(device_id, operation, payload)
        except Exception:
            self._discard(key, entry)
            future.cancel()
            raise

        deadline = self._default_timeout if timeout is None else timeout
        entry.timer = loop.call_later(deadline, self._expire, key, entry, deadline)
        return future

    def resolve(self, device_id: str, operation: Operation | str, document: Any) -> bool:
        """Settle the matching request with ``document``; ``False`` if none is pending."""
        entry = self._pending.pop((device_id, Operation(operation)), None)
        if entry is None:
            logger.debug(
                "No pending request for response",
                extra={"device_id": device_id, "operation": str(operation)},
            )
            return False
        self._settle(entry, result=document)
        return True

    def reject(self, device_id: str, operation: Operation | str, error: BaseException) -> bool:
        entry = self._pending.pop((device_id, Operation(operation)), None)
        if entry is None:
            return False
        self._settle(entry, error=error)
        return True

    def reject_all(
        self,
        error: type[RequestError] = RequestDisconnectedError,
        message: str = "session disconnected",
    ) -> int:
        """Fail every pending request with a fresh ``error`` each; returns the count."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            self._settle(entry, error=error(message, entry.device_id, entry.operation.value))
        if entries:
            logger.info("Rejected pending requests", extra={"count": len(entries), "reason": message})
        return len(entries)

    def _expire(self, key: tuple[str, Operation], entry: PendingRequest, deadline: float) -> None:
        if self._pending.get(key) is not entry:
            return
        del self._pending[key]
        device_id, operation = key
        logger.warning(
            "Shadow request timed out",
            extra={"device_id": device_id, "operation": operation.value, "timeout_s": deadline},
        )
        self._settle(
            entry,
            error=RequestTimeoutError(
                f"{operation.value} request for {device_id} timed out after {deadline}s",
                device_id,
                operation.value,
            ),
        )

    def _discard(self, key: tuple[str, Operation], entry: PendingRequest) -> None:
        if self._pending.get(key) is entry:
            del self._pending[key]
        if entry.timer is not None:
            entry.timer.cancel()

    def _discard_cancelled(self, key: tuple[str, Operation], entry: PendingRequest, future: asyncio.Future) -> None:
        # An awaiting caller was cancelled
        if future.cancelled():
            self._discard(key, entry)

    @staticmethod
    def _settle(entry: PendingRequest, result: Any = None, error: BaseException | None = None) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.future.done():
            return
        if error is not None:
            entry.future.set_exception(error)
        else:
            entry.future.set_result(result)
