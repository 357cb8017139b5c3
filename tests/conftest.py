"""Pytest configuration and shared fixtures for shadow client tests."""
from __future__ import annotations

import json
from typing import Any

import pytest
import pytest_asyncio

from airplus_shadow.core.config import Settings
from airplus_shadow.exceptions import ConnectionFailedError
from airplus_shadow.services.session import ShadowSession

DEVICE_ID = "dev-1"
OTHER_DEVICE_ID = "dev-2"


def build_settings(**overrides) -> Settings:
    """Settings with timings shrunk for tests."""
    base = dict(
        connect_timeout_s=1.0,
        request_timeout_s=1.0,
        reconnect_base_delay_s=0.01,
        reconnect_max_delay_s=0.05,
        breaker_failure_threshold=10,
        breaker_cooldown_s=60.0,
        credential_rotation_s=60.0,
    )
    base.update(overrides)
    return Settings(**base)


class FakeTransport:
    """In-memory stand-in for the paho WebSocket transport."""

    def __init__(self, broker: "FakeBroker", config, on_message, on_close) -> None:
        self.broker = broker
        self.config = config
        self.on_message = on_message
        self.on_close = on_close
        self.credentials = None
        self.opened = False
        self.closed = False
        self.published: list[tuple[str, Any]] = []
        self.subscriptions: set[str] = set()

    async def open(self, credentials, timeout: float) -> None:
        self.broker.open_calls += 1
        if self.broker.fail_open:
            raise ConnectionFailedError("connection refused")
        self.credentials = credentials
        self.opened = True

    async def close(self) -> None:
        self.opened = False
        self.closed = True

    def publish(self, topic: str, payload: bytes) -> None:
        self.published.append((topic, json.loads(payload)))

    def subscribe(self, topics: list[str]) -> None:
        self.subscriptions.update(topics)

    def unsubscribe(self, topics: list[str]) -> None:
        self.subscriptions.difference_update(topics)

    def deliver(self, topic: str, payload: Any) -> None:
        if not isinstance(payload, (bytes, str)):
            payload = json.dumps(payload).encode()
        self.on_message(topic, payload)

    def drop(self, reason: str = "connection lost") -> None:
        self.opened = False
        self.on_close(self, reason)


class FakeBroker:
    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.open_calls = 0
        self.fail_open = False

    def factory(self, config, on_message, on_close) -> FakeTransport:
        transport = FakeTransport(self, config, on_message, on_close)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


class FakeCredentialSupplier:
    def __init__(self, device_id: str | None = DEVICE_ID) -> None:
        self.device_id = device_id
        self.calls = 0
        self.error: Exception | None = None

    async def __call__(self) -> dict[str, Any]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        # Field names as returned by the credential service
        return {
            "host": "wss://broker.example.test/mqtt?X-Amz-Signature=abc",
            "client_id": f"client-{self.calls}",
            "device_id": self.device_id,
        }


def shadow(device_id: str, suffix: str) -> str:
    return f"$aws/things/{device_id}/shadow/{suffix}"


@pytest.fixture
def settings() -> Settings:
    return build_settings()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def supplier() -> FakeCredentialSupplier:
    return FakeCredentialSupplier()


@pytest_asyncio.fixture
async def session(settings, broker, supplier):
    shadow_session = ShadowSession(supplier, config=settings, transport_factory=broker.factory)
    yield shadow_session
    await shadow_session.disconnect()


@pytest_asyncio.fixture
async def connected_session(session, broker):
    """A session connected and subscribed to the authorized device."""
    session.subscribe_device(DEVICE_ID)
    await session.connect()
    yield session
