import pytest
from hypothesis import given, strategies as st
from pydantic import ValidationError

from airplus_shadow.core import config as config_module
from airplus_shadow.core.config import Settings, get_settings


def test_defaults_match_protocol_timings():
    settings = Settings()
    assert settings.shadow_topic_prefix == "$aws/things"
    assert settings.connect_timeout_s == 15.0
    assert settings.request_timeout_s == 10.0
    assert settings.reconnect_base_delay_s == 1.0
    assert settings.reconnect_max_delay_s == 300.0
    assert settings.breaker_failure_threshold == 10
    assert settings.breaker_cooldown_s == 300.0
    assert settings.credential_rotation_s == 3000.0
    assert settings.notify_on_get_accepted is True
    assert settings.event_queue_size == 1000
    assert settings.speed_range == (1, 16)


def test_environment_aliases(monkeypatch):
    monkeypatch.setenv("AIRPLUS_CONNECT_TIMEOUT_S", "3.5")
    monkeypatch.setenv("AIRPLUS_NOTIFY_ON_GET_ACCEPTED", "false")
    settings = Settings()
    assert settings.connect_timeout_s == 3.5
    assert settings.notify_on_get_accepted is False


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setattr(config_module, "_settings_instance", None)
    assert get_settings() is get_settings()


@given(st.text(alphabet="abc$/ ", max_size=12))
def test_topic_prefix_is_trimmed(prefix):
    settings = Settings(shadow_topic_prefix=prefix)
    assert not settings.shadow_topic_prefix.startswith(("/", " "))
    assert not settings.shadow_topic_prefix.endswith(("/", " "))


@given(st.floats(max_value=0, allow_nan=False))
def test_non_positive_durations_rejected(value):
    with pytest.raises(ValidationError):
        Settings(request_timeout_s=value)


@given(st.floats(min_value=0.001, max_value=1000), st.floats(min_value=0.001, max_value=1000))
def test_backoff_cap_not_below_base(base, cap):
    if cap < base:
        with pytest.raises(ValidationError):
            Settings(reconnect_base_delay_s=base, reconnect_max_delay_s=cap)
    else:
        settings = Settings(reconnect_base_delay_s=base, reconnect_max_delay_s=cap)
        assert settings.reconnect_max_delay_s >= settings.reconnect_base_delay_s


def test_qos_two_rejected():
    with pytest.raises(ValidationError):
        Settings(mqtt_qos=2)


def test_threshold_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(breaker_failure_threshold=0)
