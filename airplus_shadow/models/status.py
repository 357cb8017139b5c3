from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class FilterStage(BaseModel):
    """Wear of a single filter stage, in hours."""

    model_config = ConfigDict(extra="forbid")

    remaining: int | None = None
    nominal: int | None = None
    percent: int | None = None
    needs_service: bool | None = None


class FilterStatus(BaseModel):
    """Periodic-clean and full-replacement filter stages."""

    model_config = ConfigDict(extra="forbid")

    clean: FilterStage | None = None
    replace: FilterStage | None = None


class CanonicalDeviceStatus(BaseModel):
    """Device status independent of the wire protocol generation.

    ``None`` means the attribute was not reported. ``raw`` carries every raw
    field no canonical attribute consumed.
    """

    model_config = ConfigDict(extra="forbid")

    power: bool | None = None
    mode: str | None = None
    fan_speed: int | None = None
    pm25: int | None = None
    humidity: int | None = None
    target_humidity: int | None = None
    temperature: int | None = None  # whole degrees C
    air_quality_index: int | None = None
    child_lock: bool | None = None
    display_brightness: int | None = None
    water_level: int | None = None
    filter: FilterStatus | None = None

    model: str | None = None
    firmware_version: str | None = None
    device_name: str | None = None

    raw: dict[str, Any] | None = None
    timestamp: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class DeviceCommand(BaseModel):
    """Writable subset of the canonical status."""

    model_config = ConfigDict(extra="forbid")

    power: bool | None = None
    mode: Literal["auto", "sleep", "turbo", "manual"] | None = None
    fan_speed: int | None = None
    child_lock: bool | None = None
    display_brightness: int | None = None
    target_humidity: int | None = Field(None, ge=0, le=100)
