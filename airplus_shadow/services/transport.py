"""
MQTT-over-WebSocket Transport

Wraps a paho-mqtt client connected through a presigned ``wss://`` URL.
paho runs its network loop in its own thread; every callback is marshalled
onto the asyncio event loop before it reaches the session.
"""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any, Callable, Protocol
from urllib.parse import urlparse

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage
from paho.mqtt.enums import CallbackAPIVersion

from ..core.config import Settings
from ..exceptions import ConnectionFailedError, TransportError
from ..schemas.shadow import ConnectionCredentials

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]
CloseHandler = Callable[["ShadowTransport", str], None]


class ShadowTransport(Protocol):
    """What the session needs from a broker connection.

    Handlers are always invoked on the event loop thread. ``on_close`` fires
    only for connections lost after a successful ``open``, never for
    ``close()``.
    """

    async def open(self, credentials: ConnectionCredentials, timeout: float) -> None: ...

    async def close(self) -> None: ...

    def publish(self, topic: str, payload: bytes) -> None: ...

    def subscribe(self, topics: list[str]) -> None: ...

    def unsubscribe(self, topics: list[str]) -> None: ...


TransportFactory = Callable[[Settings, MessageHandler, CloseHandler], ShadowTransport]


class PahoWebSocketTransport:
    def __init__(self, config: Settings, on_message: MessageHandler, on_close: CloseHandler) -> None:
        self._config = config
        self._on_message_cb = on_message
        self._on_close_cb = on_close

        self._client: mqtt.Client | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._handshake: asyncio.Event | None = None
        self._handshake_error: str | None = None
        self._opened = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closing

    async def open(self, credentials: ConnectionCredentials, timeout: float) -> None:
        if self._client is not None:
            raise TransportError("transport already opened; create a new one per connection")

        self._loop = asyncio.get_running_loop()
        handshake = self._handshake = asyncio.Event()
        self._handshake_error = None

        parsed = urlparse(credentials.transport_url)
        if not parsed.hostname:
            raise ConnectionFailedError(f"transport URL has no host: {parsed.scheme}://...")
        secure = parsed.scheme == "wss"
        port = parsed.port or (443 if secure else 80)
        path = parsed.path or "/mqtt"
        if parsed.query:
            path = f"{path}?{parsed.query}"

        # AWS IoT requires MQTT 3.1.1
        client = mqtt.Client(
            CallbackAPIVersion.VERSION2,
            client_id=credentials.client_id,
            transport="websockets",
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(logger)
        client.ws_set_options(path=path)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        self._client = client

        logger.info(
            "Opening MQTT WebSocket connection",
            extra={"host": parsed.hostname, "port": port, "client_id": credentials.client_id},
        )
        try:
            await asyncio.wait_for(
                self._connect(client, handshake, parsed.hostname, port, secure), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            await self._teardown()
            raise ConnectionFailedError(f"MQTT handshake timed out after {timeout}s") from exc
        except ConnectionFailedError:
            await self._teardown()
            raise
        except (OSError, ssl.SSLError, ValueError) as exc:
            await self._teardown()
            raise ConnectionFailedError(f"Failed to connect to MQTT broker: {exc}") from exc

        self._opened = True
        logger.info("MQTT WebSocket connection established", extra={"client_id": credentials.client_id})

    async def _connect(
        self, client: mqtt.Client, handshake: asyncio.Event, host: str, port: int, secure: bool
    ) -> None:
        def connect_sync() -> None:
            if secure:
                client.tls_set(cert_reqs=ssl.CERT_REQUIRED)
            client.connect(host, port, keepalive=self._config.mqtt_keepalive)

        await asyncio.to_thread(connect_sync)
        client.loop_start()

        await handshake.wait()
        if self._handshake_error is not None:
            raise ConnectionFailedError(f"MQTT connection refused: {self._handshake_error}")

    async def close(self) -> None:
        self._closing = True
        await self._teardown()

    async def _teardown(self) -> None:
        client, self._client = self._client, None
        self._opened = False
        if client is None:
            return

        def stop_sync() -> None:
            client.disconnect()
            client.loop_stop()

        try:
            await asyncio.to_thread(stop_sync)
        except Exception:  # pragma: no cover
            logger.exception("Error stopping MQTT client")

    def publish(self, topic: str, payload: bytes) -> None:
        client = self._require_client()
        info = client.publish(topic, payload, qos=self._config.mqtt_qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")

    def subscribe(self, topics: list[str]) -> None:
        if not topics:
            return
        client = self._require_client()
        rc, _mid = client.subscribe([(topic, self._config.mqtt_qos) for topic in topics])
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Subscribe failed: {mqtt.error_string(rc)}")
        logger.info("MQTT client subscribed", extra={"topics": topics})

    def unsubscribe(self, topics: list[str]) -> None:
        if not topics:
            return
        client = self._require_client()
        rc, _mid = client.unsubscribe(topics)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Unsubscribe failed: {mqtt.error_string(rc)}")
        logger.info("MQTT client unsubscribed", extra={"topics": topics})

    def _require_client(self) -> mqtt.Client:
        if self._client is None or not self._opened:
            raise TransportError("transport is not open")
        return self._client

    # paho network thread below; nothing here may touch state directly

    def _dispatch(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed, dropping MQTT callback")

    def _on_connect(
        self, _client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any
    ) -> None:
        self._dispatch(self._handle_connect, bool(reason_code.is_failure), str(reason_code))

    def _on_disconnect(
        self, _client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any
    ) -> None:
        self._dispatch(self._handle_disconnect, str(reason_code))

    def _on_message(self, _client: mqtt.Client, _userdata: Any, msg: MQTTMessage) -> None:
        self._dispatch(self._on_message_cb, msg.topic, msg.payload or b"")

    # event loop thread

    def _handle_connect(self, failed: bool, reason: str) -> None:
        if self._handshake is None or self._handshake.is_set():
            return
        if failed:
            logger.error("MQTT client failed to connect", extra={"reason": reason})
            self._handshake_error = reason
        self._handshake.set()

    def _handle_disconnect(self, reason: str) -> None:
        if self._handshake is not None and not self._handshake.is_set():
            self._handshake_error = f"disconnected during handshake ({reason})"
            self._handshake.set()
            return
        if self._closing or not self._opened:
            logger.info("MQTT client disconnected cleanly")
            return
        self._opened = False
        logger.warning("Unexpected MQTT disconnect", extra={"reason": reason})
        self._on_close_cb(self, reason)
