from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ConnectionCredentials(BaseModel):
    """Device-scoped broker credentials returned by the credential supplier."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    # The credential service names these host/client_id/device_id
    transport_url: str = Field(
        ..., validation_alias=AliasChoices("transport_url", "transportURL", "host")
    )
    client_id: str = Field(..., validation_alias=AliasChoices("client_id", "clientID", "clientId"))
    authorized_device_id: str | None = Field(
        None, validation_alias=AliasChoices("authorized_device_id", "authorizedDeviceID", "device_id")
    )
    issued_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        validation_alias=AliasChoices("issued_at", "issuedAt"),
    )

    @field_validator("transport_url")
    @classmethod
    def _require_websocket_url(cls, value: str) -> str:
        if not value.startswith(("wss://", "ws://")):
            raise ValueError("transport_url must be a ws:// or wss:// URL")
        return value


class ShadowState(BaseModel):
    """The ``state`` section of a shadow document."""

    model_config = ConfigDict(extra="ignore")

    reported: dict[str, Any] | None = None
    desired: dict[str, Any] | None = None
    delta: dict[str, Any] | None = None


class ShadowDocument(BaseModel):
    """Response published on get/accepted and update/accepted."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    state: ShadowState
    timestamp: int | float | None = Field(None, alias="timestamp")
    version: int | None = Field(None, alias="version")
    client_token: str | None = Field(None, alias="clientToken")

    def dump_raw(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ShadowDelta(BaseModel):
    """Device- or cloud-initiated change published on update/delta."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    state: dict[str, Any]
    timestamp: int | float | None = Field(None, alias="timestamp")
    version: int | None = Field(None, alias="version")


class ShadowRejection(BaseModel):
    """Error payload published on get/rejected and update/rejected."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    code: int | None = Field(None, alias="code")
    message: str = Field("request rejected", alias="message")
    timestamp: int | float | None = Field(None, alias="timestamp")
    client_token: str | None = Field(None, alias="clientToken")
