"""Builds device timetables from the store and pushes them to devices."""

from __future__ import annotations

import datetime

from bellbot_controller.exceptions import TimetableValidationError
from bellbot_controller.logging_abstraction import get_logger
from bellbot_controller.models import (
    Device,
    DeviceTimetable,
    PresetTimetable,
    School,
    SpecialDayTimetable,
    WeeklySchedule,
)
from bellbot_controller.mqtt.publisher import Publisher
from bellbot_controller.store import DeviceStore
from bellbot_controller.timetable import transform_timetable, validate_device_timetable
from bellbot_controller.utils import local_now

logger = get_logger(__name__)

# Special days this many days ahead (today included) override their weekday
SPECIAL_DAY_WINDOW = 7


class TimetableProvisioner:
    lp: str = "TimetableProvisioner:"

    def __init__(self, store: DeviceStore, publisher: Publisher, tz: datetime.tzinfo) -> None:
        self.store: DeviceStore = store
        self.publisher: Publisher = publisher
        self.tz: datetime.tzinfo = tz

    def _window(self, today: datetime.date | None) -> tuple[datetime.date, datetime.date]:
        start = today or local_now(self.tz).date()
        return start, start + datetime.timedelta(days=SPECIAL_DAY_WINDOW - 1)

    async def _load(
        self,
        school_id: str,
        today: datetime.date | None,
        schedule: WeeklySchedule | None = None,
        special_day: SpecialDayTimetable | None = None,
    ) -> tuple[WeeklySchedule, list[SpecialDayTimetable], datetime.datetime] | None:
        """Schedule, upcoming special days and the modification time of the resulting timetable."""
        schedule = schedule or await self.store.find_weekly_schedule(school_id)
        if schedule is None:
            logger.warning("%s No weekly schedule for school %s", self.lp, school_id)
            return None
        start, end = self._window(today)
        upcoming = await self.store.find_special_days(school_id, start, end)
        if special_day is not None and start <= special_day.date <= end:
            upcoming = sorted(
                [*(existing for existing in upcoming if existing.date != special_day.date), special_day],
                key=lambda special: special.date,
            )
        expired = await self.store.find_special_days(
            school_id,
            datetime.date.min,
            start - datetime.timedelta(days=1),
        )
        modified = max(
            [
                schedule.updated_at,
                *(special.updated_at for special in upcoming),
                *(self._expired_at(special) for special in expired),
            ]
        )
        return schedule, upcoming, modified

    def _expired_at(self, special: SpecialDayTimetable) -> datetime.datetime:
        # leaving the window changes the built timetable
        midnight_after = datetime.datetime.combine(
            special.date + datetime.timedelta(days=1),
            datetime.time(),
            tzinfo=self.tz,
        )
        return max(special.updated_at, midnight_after)

    async def last_modified(self, school_id: str, today: datetime.date | None = None) -> datetime.datetime | None:
        """Modification time devices compare their timetable's updatedAt against.

        The latest of the schedule, every upcoming special day and every past
        special day (counted at the midnight after its date), so the value never
        moves backwards as days roll over.
        """
        loaded = await self._load(school_id, today)
        if loaded is None:
            return None
        _schedule, _special_days, modified = loaded
        return modified

    async def build_for_school(
        self,
        school_id: str,
        today: datetime.date | None = None,
        *,
        school: School | None = None,
        schedule: WeeklySchedule | None = None,
        preset: PresetTimetable | None = None,
        special_day: SpecialDayTimetable | None = None,
    ) -> DeviceTimetable | None:
        """Resolve presets and upcoming special days and transform the school's schedule.

        ``school``, ``schedule``, ``preset`` and ``special_day`` stand in for (or add
        to) the stored documents, so a change can be checked before it is saved.

        Returns None when the school or its weekly schedule does not exist.
        """
        school = school or await self.store.find_school(school_id)
        if school is None:
            logger.warning("%s Unknown school %s", self.lp, school_id)
            return None
        loaded = await self._load(school_id, today, schedule, special_day)
        if loaded is None:
            return None
        schedule, special_days, modified = loaded

        presets: dict[str, PresetTimetable] = {}
        for preset_id in set(schedule.presets_in_use().values()):
            if preset is not None and preset.id == preset_id:
                found: PresetTimetable | None = preset
            else:
                found = await self.store.find_preset(preset_id)
            if found is not None:
                presets[preset_id] = found

        return transform_timetable(
            schedule,
            school.name,
            presets,
            document_id=schedule.id,
            special_days=special_days,
            not_before=modified,
        )

    async def check_change(
        self,
        school_id: str,
        *,
        school: School | None = None,
        schedule: WeeklySchedule | None = None,
        preset: PresetTimetable | None = None,
        special_day: SpecialDayTimetable | None = None,
    ) -> None:
        """Raise if the timetable built with an unsaved change would break a device limit.

        Raises:
            TimetableValidationError: The change would make the timetable untransmittable

        """
        timetable = await self.build_for_school(
            school_id,
            school=school,
            schedule=schedule,
            preset=preset,
            special_day=special_day,
        )
        if timetable is None:
            return
        validation = validate_device_timetable(timetable)
        if not validation.valid:
            logger.warning("%s Rejected change for school %s: %s", self.lp, school_id, "; ".join(validation.errors))
            raise TimetableValidationError(validation.errors, validation.size_bytes)

    async def push_to_device(self, device: Device, timetable: DeviceTimetable | None = None) -> bool:
        """Publish the school's current timetable to one device and record its id on success.

        Raises:
            TimetableValidationError: The built timetable breaks a device limit

        """
        timetable = timetable or await self.build_for_school(device.school_id)
        if timetable is None:
            return False
        ok = await self.publisher.push_timetable(device.serial, timetable)
        if ok:
            _ = await self.store.update_device(device.serial, current_timetable_id=timetable.id)
        return ok

    async def publish_to_school(self, school_id: str, include_legacy: bool = True) -> dict[str, bool]:
        """Push the timetable to every device of a school. Returns serial -> publish accepted.

        Validation happens once, before anything is sent.

        Raises:
            TimetableValidationError: The built timetable breaks a device limit

        """
        lp = f"{self.lp}publish_to_school:"
        timetable = await self.build_for_school(school_id)
        if timetable is None:
            return {}
        validation = validate_device_timetable(timetable)
        if not validation.valid:
            raise TimetableValidationError(validation.errors, validation.size_bytes)

        schedule = await self.store.find_weekly_schedule(school_id)
        results: dict[str, bool] = {}
        for device in await self.store.list_devices(school_id):
            results[device.serial] = await self.push_to_device(device, timetable)
            if include_legacy and schedule is not None:
                _ = await self.publisher.push_schedule(device.serial, schedule)
        logger.info(
            "%s Timetable %s published to %d/%d device(s) of school %s",
            lp,
            timetable.id,
            sum(results.values()),
            len(results),
            school_id,
        )
        return results
