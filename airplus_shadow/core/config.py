from __future__ import annotations
# BaseSettings moved to the pydantic-settings package in Pydantic v2
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client configuration loaded from environment variables."""

    # Shadow topics live under "$aws/things/{deviceId}/shadow" on the broker
    shadow_topic_prefix: str = Field("$aws/things", alias="AIRPLUS_SHADOW_TOPIC_PREFIX")

    mqtt_keepalive: int = Field(60, alias="AIRPLUS_MQTT_KEEPALIVE")
    mqtt_qos: int = Field(1, alias="AIRPLUS_MQTT_QOS")

    connect_timeout_s: float = Field(15.0, alias="AIRPLUS_CONNECT_TIMEOUT_S")
    request_timeout_s: float = Field(10.0, alias="AIRPLUS_REQUEST_TIMEOUT_S")

    reconnect_base_delay_s: float = Field(1.0, alias="AIRPLUS_RECONNECT_BASE_DELAY_S")
    reconnect_max_delay_s: float = Field(300.0, alias="AIRPLUS_RECONNECT_MAX_DELAY_S")

    breaker_failure_threshold: int = Field(10, alias="AIRPLUS_BREAKER_FAILURE_THRESHOLD")
    breaker_cooldown_s: float = Field(300.0, alias="AIRPLUS_BREAKER_COOLDOWN_S")

    # Presigned URLs expire after ~60 minutes; rotate with margin
    credential_rotation_s: float = Field(3000.0, alias="AIRPLUS_CREDENTIAL_ROTATION_S")

    # Treat get/accepted as an unsolicited "reported" notification as well
    notify_on_get_accepted: bool = Field(True, alias="AIRPLUS_NOTIFY_ON_GET_ACCEPTED")

    fan_speed_min: int = Field(1, alias="AIRPLUS_FAN_SPEED_MIN")
    fan_speed_max: int = Field(16, alias="AIRPLUS_FAN_SPEED_MAX")

    # Oldest events are dropped once full; 0 means unbounded
    event_queue_size: int = Field(1000, alias="AIRPLUS_EVENT_QUEUE_SIZE")

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
        "extra": "ignore",
        "populate_by_name": True,
    }

    @field_validator(
        "connect_timeout_s",
        "request_timeout_s",
        "reconnect_base_delay_s",
        "reconnect_max_delay_s",
        "breaker_cooldown_s",
        "credential_rotation_s",
    )
    @classmethod
    def _positive_duration(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("breaker_failure_threshold")
    @classmethod
    def _positive_threshold(cls, value: int) -> int:
        if value < 1:
            raise ValueError("breaker threshold must be at least 1")
        return value

    @field_validator("shadow_topic_prefix", mode="before")
    @classmethod
    def _strip_prefix(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip(" \t\r\n/")
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> "Settings":
        if self.reconnect_max_delay_s < self.reconnect_base_delay_s:
            raise ValueError("reconnect_max_delay_s must not be below reconnect_base_delay_s")
        if self.fan_speed_min > self.fan_speed_max:
            raise ValueError("fan_speed_min must not exceed fan_speed_max")
        if self.mqtt_qos not in (0, 1):
            raise ValueError("only QoS 0 and 1 are supported")
        return self

    @property
    def speed_range(self) -> tuple[int, int]:
        return (self.fan_speed_min, self.fan_speed_max)


_settings_instance = None


def get_settings():
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
