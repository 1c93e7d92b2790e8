"""Device state store.

The core only relies on the ``DeviceStore`` protocol. ``MemoryStore`` is the
in-process document store used by the service and the tests; it can be seeded
from a YAML file:

    schools:
      - {id: sch-001, name: Springfield High}
    presets:
      - {id: pre-001, school_id: sch-001, name: Regular, times: [{time: "08:30", duration: 5}]}
    schedules:
      - id: sched-001a2b
        school_id: sch-001
        days:
          Monday: {preset_id: pre-001, custom_times: [{time: "15:30", duration: 5}]}
    special_days:
      - {id: sd-001, school_id: sch-001, date: 2024-12-24, times: []}
    devices:
      - {serial: BELL001, school_id: sch-001, location: Main hall}
"""

from __future__ import annotations

import asyncio
import datetime
import uuid
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

import yaml
from pydantic import BaseModel

from bellbot_controller.exceptions import (
    DeviceNotFoundError,
    PresetInUseError,
    SchoolNotFoundError,
    StoreConflictError,
)
from bellbot_controller.instrumentation import timed_async
from bellbot_controller.logging_abstraction import get_logger
from bellbot_controller.models import (
    Device,
    DeviceAssignment,
    PresetTimetable,
    School,
    SpecialDayTimetable,
    TimeEntry,
    WeeklySchedule,
    utcnow,
)

__all__ = [
    "DeviceStore",
    "MemoryStore",
]

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@runtime_checkable
class DeviceStore(Protocol):
    """Async persistence operations the device communication core depends on."""

    async def find_device(self, serial: str) -> Device | None: ...

    async def update_device(self, serial: str, **fields: Any) -> Device | None: ...

    async def list_devices(self, school_id: str | None = None) -> list[Device]: ...

    async def find_school(self, school_id: str) -> School | None: ...

    async def find_weekly_schedule(self, school_id: str) -> WeeklySchedule | None: ...

    async def find_preset(self, preset_id: str) -> PresetTimetable | None: ...

    async def find_special_days(
        self,
        school_id: str,
        start: datetime.date,
        end: datetime.date,
    ) -> list[SpecialDayTimetable]: ...


def _copy(model: ModelT | None) -> ModelT | None:
    return model.model_copy(deep=True) if model is not None else None


class MemoryStore:
    """In-memory document store.

    Every write happens under one asyncio.Lock so each single-document update is
    atomic with respect to other coroutines. Reads hand out deep copies.
    """

    lp: str = "MemoryStore:"

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._schools: dict[str, School] = {}
        self._devices: dict[str, Device] = {}
        self._assignments: list[DeviceAssignment] = []
        self._schedules: dict[str, WeeklySchedule] = {}  # keyed by school_id
        self._presets: dict[str, PresetTimetable] = {}
        self._special_days: dict[tuple[str, datetime.date], SpecialDayTimetable] = {}

    # ---- core protocol -------------------------------------------------

    async def find_device(self, serial: str) -> Device | None:
        return _copy(self._devices.get(serial))

    @timed_async("store_update_device")
    async def update_device(self, serial: str, **fields: Any) -> Device | None:
        """Apply ``fields`` to one device atomically. Returns the updated copy or None if unknown."""
        async with self._lock:
            current = self._devices.get(serial)
            if current is None:
                return None
            unknown = set(fields) - set(Device.model_fields)
            if unknown:
                msg = f"Unknown device field(s): {', '.join(sorted(unknown))}"
                raise ValueError(msg)
            updated = current.model_copy(update={**fields, "updated_at": utcnow()})
            self._devices[serial] = updated
            return _copy(updated)

    async def list_devices(self, school_id: str | None = None) -> list[Device]:
        return [
            device.model_copy(deep=True)
            for device in self._devices.values()
            if school_id is None or device.school_id == school_id
        ]

    async def find_school(self, school_id: str) -> School | None:
        return _copy(self._schools.get(school_id))

    async def find_weekly_schedule(self, school_id: str) -> WeeklySchedule | None:
        return _copy(self._schedules.get(school_id))

    async def find_preset(self, preset_id: str) -> PresetTimetable | None:
        return _copy(self._presets.get(preset_id))

    async def find_special_days(
        self,
        school_id: str,
        start: datetime.date,
        end: datetime.date,
    ) -> list[SpecialDayTimetable]:
        """Special days of a school with start <= date <= end, ordered by date."""
        found = [
            special.model_copy(deep=True)
            for (sid, day), special in self._special_days.items()
            if sid == school_id and start <= day <= end
        ]
        return sorted(found, key=lambda special: special.date)

    # ---- schools -------------------------------------------------------

    async def list_schools(self) -> list[School]:
        return [school.model_copy(deep=True) for school in self._schools.values()]

    async def create_school(self, school: School) -> School:
        """Insert a school together with its empty seven-day weekly schedule."""
        lp = f"{self.lp}create_school:"
        async with self._lock:
            if school.id in self._schools:
                raise StoreConflictError(f"school {school.id} already exists")
            self._schools[school.id] = school.model_copy(deep=True)
            self._schedules.setdefault(school.id, WeeklySchedule(id=uuid.uuid4().hex, school_id=school.id))
        logger.info("%s Created school %s (%s)", lp, school.id, school.name)
        return school.model_copy(deep=True)

    async def save_school(self, school: School) -> School:
        async with self._lock:
            self._schools[school.id] = school.model_copy(deep=True)
        return school

    async def delete_school(self, school_id: str) -> None:
        """Delete a school with its schedule, presets and special days.

        Raises:
            SchoolNotFoundError: Unknown school id
            StoreConflictError: Devices still belong to the school

        """
        lp = f"{self.lp}delete_school:"
        async with self._lock:
            if school_id not in self._schools:
                raise SchoolNotFoundError(school_id)
            devices = sum(1 for device in self._devices.values() if device.school_id == school_id)
            if devices:
                raise StoreConflictError(f"school {school_id} still has {devices} device(s)")
            del self._schools[school_id]
            _ = self._schedules.pop(school_id, None)
            self._presets = {pid: p for pid, p in self._presets.items() if p.school_id != school_id}
            self._special_days = {key: s for key, s in self._special_days.items() if key[0] != school_id}
        logger.info("%s Deleted school %s", lp, school_id)

    # ---- devices -------------------------------------------------------

    async def create_device(self, device: Device) -> Device:
        lp = f"{self.lp}create_device:"
        async with self._lock:
            if device.serial in self._devices:
                raise StoreConflictError(f"device serial {device.serial} already exists")
            self._devices[device.serial] = device.model_copy(deep=True)
        logger.info("%s Created device %s (school=%s)", lp, device.serial, device.school_id)
        return device.model_copy(deep=True)

    async def delete_device(self, serial: str) -> None:
        """Delete a device and every assignment record pointing at it."""
        lp = f"{self.lp}delete_device:"
        async with self._lock:
            if self._devices.pop(serial, None) is None:
                raise DeviceNotFoundError(serial)
            before = len(self._assignments)
            self._assignments = [a for a in self._assignments if a.device_serial != serial]
        logger.info(
            "%s Deleted device %s and %d assignment(s)",
            lp,
            serial,
            before - len(self._assignments),
        )

    async def assign_device(self, serial: str, user_id: str) -> DeviceAssignment:
        async with self._lock:
            if serial not in self._devices:
                raise DeviceNotFoundError(serial)
            for existing in self._assignments:
                if existing.device_serial == serial and existing.user_id == user_id:
                    raise StoreConflictError(f"device {serial} already assigned to {user_id}")
            assignment = DeviceAssignment(device_serial=serial, user_id=user_id)
            self._assignments.append(assignment)
        return assignment.model_copy()

    async def unassign_device(self, serial: str, user_id: str) -> bool:
        async with self._lock:
            before = len(self._assignments)
            self._assignments = [
                a for a in self._assignments if not (a.device_serial == serial and a.user_id == user_id)
            ]
            return len(self._assignments) != before

    async def list_assignments(self, serial: str | None = None) -> list[DeviceAssignment]:
        return [a.model_copy() for a in self._assignments if serial is None or a.device_serial == serial]

    # ---- weekly schedules ----------------------------------------------

    async def get_or_create_weekly_schedule(self, school_id: str) -> WeeklySchedule:
        """Return the school's schedule, creating an empty seven-day one when missing."""
        async with self._lock:
            schedule = self._schedules.get(school_id)
            if schedule is None:
                schedule = WeeklySchedule(id=uuid.uuid4().hex, school_id=school_id)
                self._schedules[school_id] = schedule
                logger.info("%s Created empty weekly schedule for school %s", self.lp, school_id)
            return schedule.model_copy(deep=True)

    async def set_schedule_day(
        self,
        school_id: str,
        day: str,
        preset_id: str | None,
        custom_times: list[TimeEntry],
        updated_by: str | None = None,
    ) -> WeeklySchedule:
        """Replace one named day of the school's schedule and bump its modification time."""
        async with self._lock:
            if preset_id is not None and preset_id not in self._presets:
                msg = f"Preset not found: {preset_id}"
                raise ValueError(msg)
            schedule = self._schedules.get(school_id) or WeeklySchedule(id=uuid.uuid4().hex, school_id=school_id)
            updated = schedule.with_day(day, preset_id, custom_times, updated_by)
            self._schedules[school_id] = updated
            return updated.model_copy(deep=True)

    # ---- presets -------------------------------------------------------

    async def list_presets(self, school_id: str | None = None) -> list[PresetTimetable]:
        return [
            preset.model_copy(deep=True)
            for preset in self._presets.values()
            if school_id is None or preset.school_id == school_id
        ]

    async def save_preset(self, preset: PresetTimetable) -> PresetTimetable:
        async with self._lock:
            stored = preset.model_copy(deep=True, update={"updated_at": utcnow()})
            self._presets[preset.id] = stored
        return stored.model_copy(deep=True)

    async def delete_preset(self, preset_id: str) -> PresetTimetable:
        """Delete a preset unless a day of its school's weekly schedule references it.

        Raises:
            PresetInUseError: Listing the referencing day names
            KeyError: Unknown preset id

        """
        async with self._lock:
            preset = self._presets.get(preset_id)
            if preset is None:
                raise KeyError(preset_id)
            schedule = self._schedules.get(preset.school_id)
            if schedule is not None:
                days = [name for name, used in schedule.presets_in_use().items() if used == preset_id]
                if days:
                    raise PresetInUseError(preset_id, days)
            del self._presets[preset_id]
        logger.info("%s Deleted preset %s", self.lp, preset_id)
        return preset

    # ---- special days --------------------------------------------------

    async def create_special_day(self, special: SpecialDayTimetable) -> SpecialDayTimetable:
        key = (special.school_id, special.date)
        async with self._lock:
            if key in self._special_days:
                raise StoreConflictError(
                    f"special day already exists for school {special.school_id} on {special.date.isoformat()}"
                )
            self._special_days[key] = special.model_copy(deep=True)
        return special.model_copy(deep=True)

    async def delete_special_day(self, school_id: str, date: datetime.date) -> bool:
        async with self._lock:
            return self._special_days.pop((school_id, date), None) is not None

    # ---- seeding -------------------------------------------------------

    @classmethod
    def from_yaml(cls, path: str | Path) -> MemoryStore:
        """Build a store from a YAML seed file (see module docstring for the layout)."""
        seed_path = Path(path).expanduser().resolve()
        logger.debug("%s Loading seed file: %s", cls.lp, seed_path)
        try:
            with seed_path.open() as f:
                data: dict[str, Any] = yaml.safe_load(f) or {}
        except Exception:
            logger.exception("%s Failed to parse seed file: %s", cls.lp, seed_path)
            raise
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> MemoryStore:
        store = cls()
        for raw in data.get("schools") or []:
            school = School.model_validate(raw)
            store._schools[school.id] = school
        for raw in data.get("presets") or []:
            preset = PresetTimetable.model_validate(raw)
            store._presets[preset.id] = preset
        for raw in data.get("schedules") or []:
            schedule = WeeklySchedule.model_validate(raw)
            store._schedules[schedule.school_id] = schedule
        for raw in data.get("special_days") or []:
            special = SpecialDayTimetable.model_validate(raw)
            store._special_days[(special.school_id, special.date)] = special
        for raw in data.get("devices") or []:
            device = Device.model_validate(raw)
            store._devices[device.serial] = device
        logger.info(
            "%s Seeded %d school(s), %d device(s), %d preset(s), %d schedule(s), %d special day(s)",
            cls.lp,
            len(store._schools),
            len(store._devices),
            len(store._presets),
            len(store._schedules),
            len(store._special_days),
        )
        return store
