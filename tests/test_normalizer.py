"""Tests for the protocol normalizer."""
from datetime import UTC, datetime

import pytest

from airplus_shadow.exceptions import InvalidCommandError
from airplus_shadow.models.status import CanonicalDeviceStatus, FilterStage, FilterStatus
from airplus_shadow.schemas.shadow import ShadowDocument
from airplus_shadow.services.normalizer import (
    build_desired,
    decode_mode,
    filter_stage,
    merge_status,
    normalize_reported,
    parse_shadow,
    round_half_up,
)


def test_newest_generation_sleep_mode():
    status = normalize_reported({"D03102": 1, "D0310C": 17, "D03221": 5})
    assert status.as_dict() == {"power": True, "mode": "sleep", "pm25": 5}


def test_combined_code_manual_speed():
    status = normalize_reported({"D0310C": 2})
    assert status.as_dict() == {"mode": "manual", "fan_speed": 2}


@pytest.mark.parametrize(
    "code, expected",
    [
        (0, ("auto", None)),
        (17, ("sleep", None)),
        (18, ("turbo", None)),
        (1, ("manual", 1)),
        (16, ("manual", 16)),
        (42, ("unknown mode 42", None)),
        ("x", ("unknown mode x", None)),
    ],
)
def test_decode_mode(code, expected):
    assert decode_mode(code) == expected


def test_temperature_deci_degrees_round_half_up():
    assert normalize_reported({"D03224": 235}).temperature == 24
    assert normalize_reported({"D03224": 224}).temperature == 22
    assert normalize_reported({"D03224": 225}).temperature == 23


def test_legacy_mnemonic_keys_with_string_flags():
    status = normalize_reported(
        {"pwr": "1", "mode": "M", "om": "3", "rh": "45", "rhset": "50", "temp": 21, "cl": False, "wl": 100}
    )
    assert status.as_dict() == {
        "power": True,
        "mode": "manual",
        "fan_speed": 3,
        "humidity": 45,
        "target_humidity": 50,
        "temperature": 21,
        "child_lock": False,
        "water_level": 100,
    }


def test_dashed_generation():
    status = normalize_reported({"D03-02": 1, "D03-03": "A", "D03-32": 12, "D03-41": 20, "D03-42": 38})
    assert status.as_dict() == {
        "power": True,
        "mode": "auto",
        "pm25": 12,
        "temperature": 20,
        "humidity": 38,
    }


def test_unknown_mode_letter():
    assert normalize_reported({"mode": "Q"}).mode == "unknown mode Q"


def test_newest_generation_wins_over_legacy():
    status = normalize_reported({"D03102": 0, "pwr": "1"})
    assert status.power is False
    # A recognized key is never passed through
    assert status.raw is None


def test_unrecognized_fields_pass_through():
    status = normalize_reported({"D03102": 1, "D0312A": 3, "foo": "bar"})
    assert status.raw == {"D0312A": 3, "foo": "bar"}


def test_absent_and_unparseable_fields_are_omitted():
    assert normalize_reported({}).as_dict() == {}
    assert normalize_reported({"D03221": "n/a"}).as_dict() == {}


def test_device_config_fields():
    status = normalize_reported({"D01S05": "AC0850/11", "swversion": "1.0.7", "name": "Bedroom"})
    assert status.model == "AC0850/11"
    assert status.firmware_version == "1.0.7"
    assert status.device_name == "Bedroom"


def test_filter_stages_from_raw():
    status = normalize_reported({"D0520D": 180, "D05207": 360, "fltsts1": 100, "fltt1": 4800})
    assert status.filter.clean.percent == 50
    assert status.filter.clean.needs_service is False
    assert status.filter.replace.percent == 2
    assert status.filter.replace.needs_service is True


def test_filter_stage_half_worn():
    stage = filter_stage(180, 360)
    assert stage.percent == 50
    assert stage.needs_service is False


def test_filter_stage_threshold_is_inclusive():
    assert filter_stage(18, 360).percent == 5
    assert filter_stage(18, 360).needs_service is True
    assert filter_stage(20, 360).needs_service is False


def test_filter_stage_without_nominal():
    stage = filter_stage(10, 0)
    assert stage.percent is None
    assert stage.needs_service is False
    assert filter_stage(None, None) is None


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(-2.5) == -2
    assert round_half_up(12.4999) == 12


def test_parse_shadow_uses_reported_state():
    document = ShadowDocument.model_validate(
        {"state": {"reported": {"D03102": 1}, "desired": {"D03102": 0}}, "version": 3}
    )
    assert parse_shadow(document).as_dict() == {"power": True}


def test_build_desired_power_off_only():
    assert build_desired({"power": False}) == {"D03102": 0}


def test_build_desired_full_command():
    patch = build_desired(
        {"power": True, "mode": "manual", "fan_speed": 4, "child_lock": True, "display_brightness": 50}
    )
    assert patch == {"D03102": 1, "D0310C": 4, "D03103": 1, "D03105": 50}


@pytest.mark.parametrize(
    "mode, code",
    [("auto", 0), ("sleep", 17), ("turbo", 18)],
)
def test_build_desired_named_modes(mode, code):
    assert build_desired({"mode": mode}) == {"D0310C": code}


def test_build_desired_bare_fan_speed_implies_manual_and_clamps():
    assert build_desired({"fan_speed": 20}) == {"D0310C": 16}
    assert build_desired({"fan_speed": 0}) == {"D0310C": 1}
    assert build_desired({"fan_speed": 5}, speed_range=(1, 3)) == {"D0310C": 3}


def test_build_desired_clamps_brightness():
    assert build_desired({"display_brightness": 150}) == {"D03105": 100}
    assert build_desired({"display_brightness": -5}) == {"D03105": 0}


def test_build_desired_manual_requires_fan_speed():
    with pytest.raises(InvalidCommandError):
        build_desired({"mode": "manual"})


def test_build_desired_rejects_unknown_attributes():
    with pytest.raises(InvalidCommandError):
        build_desired({"colour": "red"})
    with pytest.raises(ValueError):
        build_desired({"mode": "party"})


def test_merge_status_overwrites_fields_and_merges_raw():
    existing = CanonicalDeviceStatus(power=True, pm25=10, raw={"a": 1, "b": 2})
    update = CanonicalDeviceStatus(pm25=12, raw={"b": 3})
    merged = merge_status(existing, update)
    assert merged.power is True
    assert merged.pm25 == 12
    assert merged.raw == {"a": 1, "b": 3}


def test_merge_status_ignores_absent_fields():
    existing = CanonicalDeviceStatus(power=True, mode="auto")
    merged = merge_status(existing, CanonicalDeviceStatus())
    assert merged.power is True
    assert merged.mode == "auto"


def test_merge_status_merges_filter_stage_wise():
    existing = CanonicalDeviceStatus(
        filter=FilterStatus(clean=filter_stage(180, 360), replace=filter_stage(4000, 4800))
    )
    update = CanonicalDeviceStatus(filter=FilterStatus(clean=FilterStage(remaining=90)))
    merged = merge_status(existing, update)
    assert merged.filter.clean.remaining == 90
    assert merged.filter.clean.nominal == 360
    assert merged.filter.clean.percent == 25
    assert merged.filter.replace.percent == 83


def test_merge_status_stamps_timestamp():
    started = datetime.now(UTC)
    merged = merge_status(None, {"power": False})
    assert merged.power is False
    assert merged.timestamp >= started
