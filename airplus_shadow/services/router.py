"""
Shadow Topic Router

Classifies inbound (topic, payload) pairs into shadow message kinds and
validates the payload against the schema for that kind. Malformed or foreign
traffic is classified ``UNRECOGNIZED``; nothing here raises on bad input.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum

from pydantic import ValidationError

from ..schemas.shadow import ShadowDelta, ShadowDocument, ShadowRejection

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    GET_ACCEPTED = "get-accepted"
    GET_REJECTED = "get-rejected"
    UPDATE_ACCEPTED = "update-accepted"
    UPDATE_REJECTED = "update-rejected"
    UPDATE_DELTA = "update-delta"
    UNRECOGNIZED = "unrecognized"

    @property
    def operation(self) -> str | None:
        """``get`` or ``update`` for correlated responses, else ``None``."""
        if self in (MessageKind.GET_ACCEPTED, MessageKind.GET_REJECTED):
            return "get"
        if self in (MessageKind.UPDATE_ACCEPTED, MessageKind.UPDATE_REJECTED):
            return "update"
        return None


_SUFFIX_KINDS = {
    ("get", "accepted"): MessageKind.GET_ACCEPTED,
    ("get", "rejected"): MessageKind.GET_REJECTED,
    ("update", "accepted"): MessageKind.UPDATE_ACCEPTED,
    ("update", "rejected"): MessageKind.UPDATE_REJECTED,
    ("update", "delta"): MessageKind.UPDATE_DELTA,
}

_KIND_SCHEMAS = {
    MessageKind.GET_ACCEPTED: ShadowDocument,
    MessageKind.UPDATE_ACCEPTED: ShadowDocument,
    MessageKind.GET_REJECTED: ShadowRejection,
    MessageKind.UPDATE_REJECTED: ShadowRejection,
    MessageKind.UPDATE_DELTA: ShadowDelta,
}

# Suffixes a session subscribes to for each device
SUBSCRIPTION_SUFFIXES = (
    "get/accepted",
    "get/rejected",
    "update/accepted",
    "update/rejected",
    "update/delta",
)


@dataclass(slots=True)
class RoutedMessage:
    kind: MessageKind
    device_id: str | None = None
    document: ShadowDocument | ShadowDelta | ShadowRejection | None = None

    @property
    def recognized(self) -> bool:
        return self.kind is not MessageKind.UNRECOGNIZED


UNRECOGNIZED = MessageKind.UNRECOGNIZED


def shadow_topic(prefix: str, device_id: str, suffix: str) -> str:
    """Build ``{prefix}/{device_id}/shadow/{suffix}``."""
    return f"{prefix}/{device_id}/shadow/{suffix}"


def subscription_topics(prefix: str, device_id: str) -> list[str]:
    return [shadow_topic(prefix, device_id, suffix) for suffix in SUBSCRIPTION_SUFFIXES]


def parse_topic(topic: str) -> tuple[str, MessageKind] | None:
    """Match ``[$aws/]things/{device}/shadow/{op}/{result}``.

    Returns ``(device_id, kind)`` or ``None`` for anything else.
    """
    parts = topic.split("/")
    if parts and parts[0] == "$aws":
        parts = parts[1:]
    if len(parts) != 5 or parts[0] != "things" or parts[2] != "shadow":
        return None
    device_id = parts[1]
    if not device_id:
        return None
    kind = _SUFFIX_KINDS.get((parts[3], parts[4]))
    if kind is None:
        return None
    return device_id, kind


def classify(topic: str, payload: bytes | str) -> RoutedMessage:
    """Classify an inbound message and validate its payload."""
    matched = parse_topic(topic)
    if matched is None:
        logger.debug("Ignoring non-shadow topic", extra={"topic": topic})
        return RoutedMessage(UNRECOGNIZED)
    device_id, kind = matched

    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning(
                "Received non-UTF8 payload",
                extra={"topic": topic, "payload_preview": payload[:100]},
            )
            return RoutedMessage(UNRECOGNIZED, device_id)

    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as exc:
        logger.warning(
            "Discarding invalid JSON payload",
            extra={"topic": topic, "error": str(exc), "payload_preview": str(payload)[:200]},
        )
        return RoutedMessage(UNRECOGNIZED, device_id)

    if not isinstance(data, dict):
        logger.warning(
            "Payload is not a JSON object",
            extra={"topic": topic, "type": type(data).__name__},
        )
        return RoutedMessage(UNRECOGNIZED, device_id)

    try:
        document = _KIND_SCHEMAS[kind].model_validate(data)
    except ValidationError as exc:
        logger.warning(
            "Payload does not match shadow schema",
            extra={"topic": topic, "kind": kind.value, "error": str(exc)},
        )
        return RoutedMessage(UNRECOGNIZED, device_id)

    return RoutedMessage(kind, device_id, document)
