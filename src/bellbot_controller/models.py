"""Pydantic models for schools, schedules, devices and the device wire timetable."""

from __future__ import annotations

import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from bellbot_controller.const import DAY_NAMES

__all__ = [
    "TIME_PATTERN",
    "DaySchedule",
    "Device",
    "DeviceAssignment",
    "DeviceTimetable",
    "PresetTimetable",
    "School",
    "SpecialDayTimetable",
    "TimeEntry",
    "TimetableValidation",
    "WeeklySchedule",
    "utcnow",
]

# Zero-padded 24-hour clock, 00:00 - 23:59
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class TimeEntry(BaseModel):
    """One bell: time of day, ring duration in seconds, display label."""

    time: str = Field(pattern=TIME_PATTERN)
    duration: int = Field(ge=1, le=60)
    label: str = ""


class School(BaseModel):
    id: str
    name: str


class DaySchedule(BaseModel):
    """One day of a weekly schedule: an optional preset plus ad-hoc times."""

    preset_id: str | None = None
    custom_times: list[TimeEntry] = Field(default_factory=list)


class WeeklySchedule(BaseModel):
    """A school's weekly schedule. Always holds all seven named days."""

    id: str
    school_id: str
    days: dict[str, DaySchedule] = Field(default_factory=dict, validate_default=True)
    updated_at: datetime.datetime = Field(default_factory=utcnow)
    updated_by: str | None = None

    @field_validator("days", mode="before")
    @classmethod
    def _fill_days(cls, value: Any) -> dict[str, Any]:
        raw: dict[str, Any] = dict(value or {})
        unknown = [name for name in raw if name not in DAY_NAMES]
        if unknown:
            msg = f"Unknown day name(s): {', '.join(unknown)}"
            raise ValueError(msg)
        return {name: raw.get(name) or DaySchedule() for name in DAY_NAMES}

    def presets_in_use(self) -> dict[str, str]:
        """Map day name -> preset id for days that reference a preset."""
        return {name: day.preset_id for name, day in self.days.items() if day.preset_id}

    def with_day(
        self,
        day: str,
        preset_id: str | None,
        custom_times: list[TimeEntry],
        updated_by: str | None = None,
    ) -> WeeklySchedule:
        """Copy with one named day replaced and a fresh modification time."""
        if day not in DAY_NAMES:
            msg = f"Invalid day: {day}"
            raise ValueError(msg)
        days = dict(self.days)
        days[day] = DaySchedule(preset_id=preset_id, custom_times=list(custom_times))
        return self.model_copy(update={"days": days, "updated_at": utcnow(), "updated_by": updated_by})


class PresetTimetable(BaseModel):
    """Named reusable ordered list of bell times, scoped to a school."""

    id: str
    school_id: str
    name: str
    description: str = ""
    times: list[TimeEntry] = Field(default_factory=list)
    created_at: datetime.datetime = Field(default_factory=utcnow)
    updated_at: datetime.datetime = Field(default_factory=utcnow)


class SpecialDayTimetable(BaseModel):
    """Bell times replacing the weekly schedule on one calendar date."""

    id: str
    school_id: str
    date: datetime.date
    times: list[TimeEntry] = Field(default_factory=list)
    created_by: str | None = None
    updated_at: datetime.datetime = Field(default_factory=utcnow)


class Device(BaseModel):
    """Bell device record.

    Connectivity and sync fields (is_online, current_timetable_id, time_synced,
    last_seen, last_status_check) are written by the message dispatcher only.
    """

    serial: str
    school_id: str
    location: str = ""
    model: str = "Standard Bell"
    is_online: bool = False
    is_silenced: bool = False
    current_timetable_id: str | None = None
    time_synced: bool = False
    last_seen: datetime.datetime | None = None
    last_status_check: datetime.datetime | None = None
    created_at: datetime.datetime = Field(default_factory=utcnow)
    updated_at: datetime.datetime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> str:
        return "online" if self.is_online else "offline"


class DeviceAssignment(BaseModel):
    device_serial: str
    user_id: str


class DeviceTimetable(BaseModel):
    """Compact per-day timetable sent to devices.

    Wire form: {"id": ..., "updatedAt": ..., "times": {"0": [...], ..., "6": [...]}}
    with "0" = Sunday. Times are not checked here; see timetable.validate_device_timetable.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    updated_at: str = Field(alias="updatedAt")
    times: dict[str, list[str]] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class TimetableValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    size_bytes: int
