"""
Connection Circuit Breaker

Counts consecutive connect failures. Once the threshold is reached the
breaker opens and suppresses connect attempts until the cool-down has
elapsed and it turns half-open; the next attempt then closes or reopens it.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Callable

from ..exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 10
DEFAULT_COOLDOWN_S = 300.0


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


TransitionListener = Callable[[CircuitState, CircuitState, int], None]


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_s: float = DEFAULT_COOLDOWN_S,
        on_transition: TransitionListener | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.cooldown_s = cooldown_s
        self._on_transition = on_transition

        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.first_failure_at: datetime | None = None
        self.last_success_at: datetime | None = None
        self.opened_at: datetime | None = None

    @property
    def retry_at(self) -> datetime | None:
        """Earliest time the breaker will allow another attempt, while open."""
        if self.state is not CircuitState.OPEN or self.opened_at is None:
            return None
        return self.opened_at + timedelta(seconds=self.cooldown_s)

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    def check(self) -> None:
        """Raise :class:`CircuitOpenError` if attempts are currently suppressed.

        An open breaker whose cool-down has elapsed moves to half-open here.
        """
        if self.state is not CircuitState.OPEN:
            return
        retry_at = self.retry_at
        if retry_at is not None and datetime.now(UTC) >= retry_at:
            self.half_open()
            return
        raise CircuitOpenError(
            f"circuit open after {self.consecutive_failures} consecutive connect failures",
            retry_at=retry_at,
        )

    def record_failure(self) -> bool:
        """Count a failed attempt. Returns ``True`` if this opened the breaker."""
        now = datetime.now(UTC)
        self.consecutive_failures += 1
        if self.first_failure_at is None:
            self.first_failure_at = now

        if self.state is CircuitState.HALF_OPEN or (
            self.state is CircuitState.CLOSED and self.consecutive_failures >= self.failure_threshold
        ):
            self.opened_at = now
            self._transition(CircuitState.OPEN)
            return True
        return False

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.first_failure_at = None
        self.opened_at = None
        self.last_success_at = datetime.now(UTC)
        self._transition(CircuitState.CLOSED)

    def half_open(self) -> bool:
        """Allow a single trial attempt after the cool-down."""
        if self.state is not CircuitState.OPEN:
            return False
        self._transition(CircuitState.HALF_OPEN)
        return True

    def _transition(self, new_state: CircuitState) -> None:
        previous = self.state
        if previous is new_state:
            return
        self.state = new_state
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "Circuit breaker state changed",
            extra={
                "previous": previous.value,
                "current": new_state.value,
                "consecutive_failures": self.consecutive_failures,
                "retry_at": self.retry_at.isoformat() if self.retry_at else None,
            },
        )
        if self._on_transition is not None:
            self._on_transition(previous, new_state, self.consecutive_failures)
