"""Weekly schedule -> device timetable transformation and validation.

Devices expect one list of ring times per weekday, keyed "0" (Sunday) to
"6" (Saturday), e.g.:

    {
      "id": "Springfield_High_a1b2c3",
      "updatedAt": "2024-06-10T12:00:00.000Z",
      "times": {"0": [], "1": ["08:00", "10:30"], ...}
    }

The firmware holds at most 30 times per day and a 2048 byte payload.
"""

from __future__ import annotations

import datetime
import json
import re
from collections.abc import Iterable, Mapping
from typing import Any

from bellbot_controller.const import DAY_INDEX, MAX_DAY_SLOTS, MAX_PAYLOAD_BYTES
from bellbot_controller.logging_abstraction import get_logger
from bellbot_controller.models import (
    TIME_PATTERN,
    DeviceTimetable,
    PresetTimetable,
    SpecialDayTimetable,
    TimetableValidation,
    WeeklySchedule,
)
from bellbot_controller.utils import iso_utc_millis

__all__ = [
    "DAY_KEYS",
    "encode_timetable",
    "merge_day_times",
    "payload_size",
    "timetable_id",
    "transform_timetable",
    "validate_device_timetable",
    "weekday_key",
]

logger = get_logger(__name__)

DAY_KEYS: tuple[str, ...] = tuple(str(i) for i in range(7))
_TIME_RE = re.compile(TIME_PATTERN)
_WHITESPACE_RE = re.compile(r"\s+")


def timetable_id(school_name: str, document_id: str) -> str:
    """Device-displayable id: school name with whitespace runs as '_' plus the document id's last 6 chars."""
    return f"{_WHITESPACE_RE.sub('_', school_name)}_{str(document_id)[-6:]}"


def weekday_key(day: datetime.date) -> str:
    """Device day key for a calendar date ("0" = Sunday)."""
    return str((day.weekday() + 1) % 7)


def merge_day_times(*sources: Iterable[str], label: str = "") -> list[str]:
    """Concatenate time lists, drop exact duplicates, sort, cap at MAX_DAY_SLOTS.

    Zero-padded HH:MM strings sort lexicographically in chronological order.
    """
    times = sorted({t for source in sources for t in source})
    if len(times) > MAX_DAY_SLOTS:
        logger.warning(
            "Day %s has %d slots, truncating to %d",
            label,
            len(times),
            MAX_DAY_SLOTS,
            extra={"day": label, "slots": len(times), "dropped": times[MAX_DAY_SLOTS:]},
        )
        times = times[:MAX_DAY_SLOTS]
    return times


def transform_timetable(
    schedule: WeeklySchedule,
    school_name: str,
    presets: Mapping[str, PresetTimetable],
    document_id: str | None = None,
    special_days: Iterable[SpecialDayTimetable] = (),
    not_before: datetime.datetime | None = None,
) -> DeviceTimetable:
    """Build the device timetable for a weekly schedule.

    Args:
        schedule: The school's weekly schedule
        school_name: Used to derive the timetable id
        presets: Preset id -> preset for every preset the schedule may reference;
            an unresolvable reference contributes no times
        document_id: Storage id for the id suffix (defaults to schedule.id)
        special_days: Date overrides; each replaces the list of its weekday
        not_before: Lower bound for updatedAt, for changes the inputs do not carry

    """
    updated_at = max(schedule.updated_at, not_before) if not_before else schedule.updated_at
    times: dict[str, list[str]] = {}

    for day_name, day in schedule.days.items():
        preset_times: list[str] = []
        if day.preset_id:
            preset = presets.get(day.preset_id)
            if preset is None:
                logger.warning(
                    "Preset %s referenced by %s not found, using custom times only",
                    day.preset_id,
                    day_name,
                )
            else:
                preset_times = [entry.time for entry in preset.times]
        custom_times = [entry.time for entry in day.custom_times]
        times[DAY_INDEX[day_name]] = merge_day_times(preset_times, custom_times, label=day_name)

    for special in special_days:
        key = weekday_key(special.date)
        times[key] = merge_day_times([entry.time for entry in special.times], label=special.date.isoformat())
        updated_at = max(updated_at, special.updated_at)
        logger.debug("Special day %s overrides day key %s", special.date.isoformat(), key)

    return DeviceTimetable(
        id=timetable_id(school_name, document_id or schedule.id),
        updated_at=iso_utc_millis(updated_at),
        times={key: times.get(key, []) for key in DAY_KEYS},
    )


def encode_timetable(timetable: DeviceTimetable | Mapping[str, Any]) -> bytes:
    """Compact JSON bytes exactly as transmitted to the device."""
    wire = timetable.to_wire() if isinstance(timetable, DeviceTimetable) else dict(timetable)
    return json.dumps(wire, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def payload_size(timetable: DeviceTimetable | Mapping[str, Any]) -> int:
    return len(encode_timetable(timetable))


def validate_device_timetable(timetable: DeviceTimetable | Mapping[str, Any]) -> TimetableValidation:
    """Check a timetable against the device limits, collecting every violation."""
    errors: list[str] = []
    size = payload_size(timetable)
    if size > MAX_PAYLOAD_BYTES:
        errors.append(f"Payload size {size} bytes exceeds device limit of {MAX_PAYLOAD_BYTES} bytes")

    if isinstance(timetable, DeviceTimetable):
        day_times: Mapping[str, list[str]] = timetable.times
    else:
        day_times = timetable.get("times") or {}

    errors.extend(f"Missing day index {key}" for key in DAY_KEYS if key not in day_times)

    for key, times in day_times.items():
        if len(times) > MAX_DAY_SLOTS:
            errors.append(f"Day {key} has {len(times)} slots, max is {MAX_DAY_SLOTS}")
        for idx, value in enumerate(times):
            if not isinstance(value, str) or not _TIME_RE.match(value):
                errors.append(f'Invalid time format "{value}" in day {key} slot {idx}')

    return TimetableValidation(valid=not errors, errors=errors, size_bytes=size)
