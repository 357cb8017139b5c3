"""Typed events emitted on a session's outbound queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class Connected:
    client_id: str
    authorized_device_id: str | None
    at: datetime = field(default_factory=_now)


@dataclass(slots=True)
class Disconnected:
    reason: str
    intentional: bool = False
    at: datetime = field(default_factory=_now)


@dataclass(slots=True)
class StateChanged:
    """Unsolicited shadow state for one device.

    ``kind`` is ``"reported"`` for a full reported state (get/accepted) and
    ``"delta"`` for the changed fields of an update/delta.
    """

    device_id: str
    kind: Literal["reported", "delta"]
    state: dict[str, Any]
    version: int | None = None
    timestamp: int | float | None = None
    at: datetime = field(default_factory=_now)


@dataclass(slots=True)
class SessionError:
    """Advisory error raised by automatic recovery, never by a caller's request."""

    error: Exception
    retry_at: datetime | None = None
    at: datetime = field(default_factory=_now)


@dataclass(slots=True)
class BreakerStateChanged:
    previous: str
    current: str
    consecutive_failures: int
    at: datetime = field(default_factory=_now)


SessionEvent = Connected | Disconnected | StateChanged | SessionError | BreakerStateChanged
