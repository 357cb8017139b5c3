"""
Protocol Normalizer

Maps raw shadow fields from the three device protocol generations onto the
canonical status model, and canonical commands back onto the field
identifiers of the newest generation:

- newest: numeric versioned identifiers (``D03102``), integer values
- dashed: ``D03-02`` style identifiers, letter mode codes
- legacy: short mnemonic keys (``pwr``, ``om``) with string-typed flags
"""
from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from ..exceptions import InvalidCommandError
from ..models.status import CanonicalDeviceStatus, DeviceCommand, FilterStage, FilterStatus
from ..schemas.shadow import ShadowDocument

logger = logging.getLogger(__name__)

# Newest generation field identifiers
POWER = "D03102"
CHILD_LOCK = "D03103"
BRIGHTNESS = "D03105"
MODE_CODE = "D0310C"
AIR_QUALITY = "D03120"
HUMIDITY = "D03125"
TARGET_HUMIDITY = "D03128"
PM25 = "D03221"
TEMPERATURE_DECI = "D03224"
CLEAN_NOMINAL = "D05207"
CLEAN_REMAINING = "D0520D"
REPLACE_NOMINAL = "D05408"
REPLACE_REMAINING = "D0540E"
DEVICE_NAME = "D01S03"
MODEL = "D01S05"
FIRMWARE = "D01S12"

# Combined mode/fan-speed code of the newest generation
MODE_AUTO = 0
MODE_SLEEP = 17
MODE_TURBO = 18
DEFAULT_SPEED_RANGE = (1, 16)

MODE_LETTERS = {"A": "auto", "S": "sleep", "T": "turbo", "M": "manual"}

FILTER_ALERT_PERCENT = 5
BRIGHTNESS_RANGE = (0, 100)

# Candidate raw keys per canonical attribute, newest generation first
_BOOL_FIELDS: dict[str, tuple[str, ...]] = {
    "power": (POWER, "D03-02", "pwr"),
    "child_lock": (CHILD_LOCK, "cl"),
}
_INT_FIELDS: dict[str, tuple[str, ...]] = {
    "pm25": (PM25, "D03-32", "pm25"),
    "humidity": (HUMIDITY, "D03-42", "rh"),
    "target_humidity": (TARGET_HUMIDITY, "rhset"),
    "air_quality_index": (AIR_QUALITY, "iaql"),
    "display_brightness": (BRIGHTNESS, "uil"),
    "water_level": ("wl",),
}
_TEXT_FIELDS: dict[str, tuple[str, ...]] = {
    "device_name": (DEVICE_NAME, "name"),
    "model": (MODEL, "ctn"),
    "firmware_version": (FIRMWARE, "swversion"),
}
_LEGACY_MODE_KEYS = ("D03-03", "mode")
_LEGACY_SPEED_KEYS = ("D03-12", "om")
_LEGACY_TEMPERATURE_KEYS = ("D03-41", "temp")
_CLEAN_KEYS = ((CLEAN_REMAINING, "fltsts0"), (CLEAN_NOMINAL, "fltt0"))
_REPLACE_KEYS = ((REPLACE_REMAINING, "fltsts1"), (REPLACE_NOMINAL, "fltt1"))


def _collect_known_keys() -> frozenset[str]:
    keys: set[str] = {MODE_CODE, TEMPERATURE_DECI}
    for table in (_BOOL_FIELDS, _INT_FIELDS, _TEXT_FIELDS):
        for candidates in table.values():
            keys.update(candidates)
    keys.update(_LEGACY_MODE_KEYS, _LEGACY_SPEED_KEYS, _LEGACY_TEMPERATURE_KEYS)
    for pair in (*_CLEAN_KEYS, *_REPLACE_KEYS):
        keys.update(pair)
    return frozenset(keys)


KNOWN_KEYS = _collect_known_keys()


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from negative infinity."""
    return math.floor(value + 0.5)


def _clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, value))


def _probe(raw: Mapping[str, Any], keys: tuple[str, ...]) -> tuple[str, Any] | None:
    for key in keys:
        if key in raw:
            return key, raw[key]
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            return int(value.strip(), 10)
        except ValueError:
            return None
    return None


def _as_bool(value: Any) -> bool | None:
    if value in (1, "1"):
        return True
    if value in (0, "0"):
        return False
    return None


def decode_mode(code: Any, speed_range: tuple[int, int] = DEFAULT_SPEED_RANGE) -> tuple[str, int | None]:
    """Split a combined mode code into ``(mode, fan_speed)``.

    Codes outside every known range yield ``"unknown mode N"`` instead of
    failing.
    """
    number = _as_int(code)
    if number is None:
        return f"unknown mode {code}", None
    if number == MODE_AUTO:
        return "auto", None
    if number == MODE_SLEEP:
        return "sleep", None
    if number == MODE_TURBO:
        return "turbo", None
    low, high = speed_range
    if low <= number <= high:
        return "manual", number
    return f"unknown mode {number}", None


def _decode_mode_letter(value: Any, speed_range: tuple[int, int]) -> tuple[str, int | None]:
    if isinstance(value, str):
        return MODE_LETTERS.get(value, f"unknown mode {value}"), None
    return decode_mode(value, speed_range)


def filter_stage(remaining: int | None, nominal: int | None) -> FilterStage | None:
    """Derive percent and service alert for one filter stage."""
    if remaining is None and nominal is None:
        return None
    percent = None
    if nominal and remaining is not None:
        percent = round_half_up(remaining / nominal * 100)
    return FilterStage(
        remaining=remaining,
        nominal=nominal,
        percent=percent,
        needs_service=percent is not None and percent <= FILTER_ALERT_PERCENT,
    )


def _stage_from_raw(raw: Mapping[str, Any], keys: tuple[tuple[str, ...], tuple[str, ...]]) -> FilterStage | None:
    remaining_keys, nominal_keys = keys
    found_remaining = _probe(raw, remaining_keys)
    found_nominal = _probe(raw, nominal_keys)
    remaining = _as_int(found_remaining[1]) if found_remaining else None
    nominal = _as_int(found_nominal[1]) if found_nominal else None
    return filter_stage(remaining, nominal)


def normalize_reported(
    raw: Mapping[str, Any],
    speed_range: tuple[int, int] = DEFAULT_SPEED_RANGE,
) -> CanonicalDeviceStatus:
    """Build a canonical status from raw reported fields.

    Attributes missing from every generation are left unset, never defaulted.
    """
    if not isinstance(raw, Mapping):
        raise TypeError(f"reported state must be a mapping, not {type(raw).__name__}")

    fields: dict[str, Any] = {}

    for name, keys in _BOOL_FIELDS.items():
        found = _probe(raw, keys)
        if found is not None:
            fields[name] = _as_bool(found[1])

    for name, keys in _INT_FIELDS.items():
        found = _probe(raw, keys)
        if found is not None:
            fields[name] = _as_int(found[1])

    for name, keys in _TEXT_FIELDS.items():
        found = _probe(raw, keys)
        if found is not None and found[1] is not None:
            fields[name] = str(found[1])

    if MODE_CODE in raw:
        fields["mode"], fields["fan_speed"] = decode_mode(raw[MODE_CODE], speed_range)
    else:
        found = _probe(raw, _LEGACY_MODE_KEYS)
        if found is not None:
            fields["mode"], _ = _decode_mode_letter(found[1], speed_range)
        found = _probe(raw, _LEGACY_SPEED_KEYS)
        if found is not None:
            fields["fan_speed"] = _as_int(found[1])

    if TEMPERATURE_DECI in raw:
        deci = _as_int(raw[TEMPERATURE_DECI])
        fields["temperature"] = round_half_up(deci / 10) if deci is not None else None
    else:
        found = _probe(raw, _LEGACY_TEMPERATURE_KEYS)
        if found is not None:
            fields["temperature"] = _as_int(found[1])

    clean = _stage_from_raw(raw, _CLEAN_KEYS)
    replace = _stage_from_raw(raw, _REPLACE_KEYS)
    if clean is not None or replace is not None:
        fields["filter"] = FilterStatus(clean=clean, replace=replace)

    unrecognized = {key: value for key, value in raw.items() if key not in KNOWN_KEYS}
    if unrecognized:
        fields["raw"] = unrecognized

    return CanonicalDeviceStatus(**fields)


def parse_shadow(
    document: ShadowDocument,
    speed_range: tuple[int, int] = DEFAULT_SPEED_RANGE,
) -> CanonicalDeviceStatus:
    """Normalize the reported section of a shadow document."""
    return normalize_reported(document.state.reported or {}, speed_range)


def _coerce_command(command: DeviceCommand | CanonicalDeviceStatus | Mapping[str, Any]) -> DeviceCommand:
    if isinstance(command, DeviceCommand):
        return command
    if isinstance(command, CanonicalDeviceStatus):
        command = {name: getattr(command, name) for name in DeviceCommand.model_fields}
    try:
        return DeviceCommand.model_validate(command)
    except ValidationError as exc:
        raise InvalidCommandError(f"Invalid device command: {exc}") from exc


def _encode_mode(mode: str | None, fan_speed: int | None, speed_range: tuple[int, int]) -> int | None:
    if mode is None and fan_speed is None:
        return None
    if mode == "auto":
        return MODE_AUTO
    if mode == "sleep":
        return MODE_SLEEP
    if mode == "turbo":
        return MODE_TURBO
    # "manual", or a bare fan speed which implies manual
    if fan_speed is None:
        raise InvalidCommandError("manual mode requires a fan_speed")
    clamped = _clamp(fan_speed, speed_range)
    if clamped != fan_speed:
        logger.debug("Clamped fan speed", extra={"requested": fan_speed, "applied": clamped})
    return clamped


def build_desired(
    command: DeviceCommand | CanonicalDeviceStatus | Mapping[str, Any],
    speed_range: tuple[int, int] = DEFAULT_SPEED_RANGE,
) -> dict[str, int]:
    """Encode a canonical command as a desired-state patch.

    Only attributes present in the command appear in the patch.
    """
    command = _coerce_command(command)
    patch: dict[str, int] = {}

    if command.power is not None:
        patch[POWER] = 1 if command.power else 0

    code = _encode_mode(command.mode, command.fan_speed, speed_range)
    if code is not None:
        patch[MODE_CODE] = code

    if command.child_lock is not None:
        patch[CHILD_LOCK] = 1 if command.child_lock else 0

    if command.display_brightness is not None:
        patch[BRIGHTNESS] = _clamp(command.display_brightness, BRIGHTNESS_RANGE)

    if command.target_humidity is not None:
        patch[TARGET_HUMIDITY] = command.target_humidity

    return patch


def _merge_filter(current: Any, incoming: FilterStatus) -> FilterStatus:
    if isinstance(current, FilterStatus):
        current = current.model_dump()
    current = current or {}
    stages: dict[str, FilterStage | None] = {}
    for stage_name in ("clean", "replace"):
        old = current.get(stage_name) or {}
        new = getattr(incoming, stage_name)
        if new is None:
            stages[stage_name] = FilterStage(**old) if old else None
            continue
        combined = {**old, **new.model_dump(exclude_none=True)}
        stages[stage_name] = filter_stage(combined.get("remaining"), combined.get("nominal"))
    return FilterStatus(**stages)


def merge_status(
    existing: CanonicalDeviceStatus | None,
    update: CanonicalDeviceStatus | Mapping[str, Any],
) -> CanonicalDeviceStatus:
    """Merge a partial status into an existing one.

    Unset attributes of the update never overwrite. ``raw`` and ``filter``
    merge key-wise with the update taking precedence. The result is always
    stamped with the current time.
    """
    if not isinstance(update, CanonicalDeviceStatus):
        update = CanonicalDeviceStatus.model_validate(update)

    merged: dict[str, Any] = dict(existing) if existing is not None else {}

    for name in CanonicalDeviceStatus.model_fields:
        if name == "timestamp":
            continue
        value = getattr(update, name)
        if value is None:
            continue
        if name == "raw":
            merged["raw"] = {**(merged.get("raw") or {}), **value}
        elif name == "filter":
            merged["filter"] = _merge_filter(merged.get("filter"), value)
        else:
            merged[name] = value

    merged["timestamp"] = datetime.now(UTC)
    return CanonicalDeviceStatus(**merged)
