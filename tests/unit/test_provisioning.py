"""Unit tests for TimetableProvisioner."""

from __future__ import annotations

import datetime
import json
from unittest.mock import AsyncMock

import pytest

from bellbot_controller.controller import BellController
from bellbot_controller.exceptions import TimetableValidationError
from bellbot_controller.models import School, SpecialDayTimetable, TimeEntry

# Matches the seeded schedule in conftest
SCHEDULE_UPDATED_AT = datetime.datetime(2024, 6, 1, 9, 15, 0, tzinfo=datetime.UTC)
MONDAY = datetime.date(2024, 6, 17)


def _special(date: datetime.date, *times: str, updated_at: datetime.datetime | None = None) -> SpecialDayTimetable:
    return SpecialDayTimetable(
        id=f"sd-{date.isoformat()}",
        school_id="sch-001",
        date=date,
        times=[TimeEntry(time=t, duration=5) for t in times],
        updated_at=updated_at or SCHEDULE_UPDATED_AT,
    )


class TestBuildForSchool:
    @pytest.mark.asyncio
    async def test_builds_from_store(self, controller: BellController):
        timetable = await controller.provisioner.build_for_school("sch-001", today=MONDAY)

        assert timetable is not None
        assert timetable.id == "Springfield_High_abc123"
        assert timetable.updated_at == "2024-06-01T09:15:00.000Z"
        assert timetable.times["1"] == ["08:30", "12:00", "15:30"]

    @pytest.mark.asyncio
    async def test_unknown_school_or_missing_schedule(self, controller: BellController):
        assert await controller.provisioner.build_for_school("sch-404") is None

        _ = await controller.store.save_school(School(id="sch-002", name="Empty"))
        assert await controller.provisioner.build_for_school("sch-002") is None

    @pytest.mark.asyncio
    async def test_special_day_inside_window_applies(self, controller: BellController):
        _ = await controller.store.create_special_day(_special(MONDAY + datetime.timedelta(days=6), "11:00"))

        timetable = await controller.provisioner.build_for_school("sch-001", today=MONDAY)

        assert timetable is not None
        assert timetable.times["0"] == ["11:00"]

    @pytest.mark.asyncio
    async def test_special_day_outside_window_ignored(self, controller: BellController):
        _ = await controller.store.create_special_day(_special(MONDAY + datetime.timedelta(days=7), "11:00"))

        timetable = await controller.provisioner.build_for_school("sch-001", today=MONDAY)

        assert timetable is not None
        assert timetable.times["1"] == ["08:30", "12:00", "15:30"]


class TestLastModified:
    @pytest.mark.asyncio
    async def test_schedule_time_without_special_days(self, controller: BellController):
        assert await controller.provisioner.last_modified("sch-001", today=MONDAY) == SCHEDULE_UPDATED_AT

    @pytest.mark.asyncio
    async def test_newer_special_day_wins(self, controller: BellController):
        newer = SCHEDULE_UPDATED_AT + datetime.timedelta(days=3)
        _ = await controller.store.create_special_day(_special(MONDAY, "10:00", updated_at=newer))

        assert await controller.provisioner.last_modified("sch-001", today=MONDAY) == newer

    @pytest.mark.asyncio
    async def test_does_not_move_back_when_special_day_expires(self, controller: BellController):
        created = datetime.datetime(2024, 6, 11, 8, 0, 0, tzinfo=datetime.UTC)
        _ = await controller.store.create_special_day(_special(MONDAY, "10:00", updated_at=created))
        pushed = await controller.provisioner.build_for_school("sch-001", today=datetime.date(2024, 6, 11))
        assert pushed is not None
        assert pushed.times["1"] == ["10:00"]

        day_after = datetime.date(2024, 6, 18)
        modified = await controller.provisioner.last_modified("sch-001", today=day_after)
        rebuilt = await controller.provisioner.build_for_school("sch-001", today=day_after)

        assert modified == datetime.datetime(2024, 6, 18, 0, 0, 0, tzinfo=datetime.UTC)
        assert modified > datetime.datetime.fromisoformat(pushed.updated_at)
        assert rebuilt is not None
        assert rebuilt.updated_at == "2024-06-18T00:00:00.000Z"
        assert rebuilt.times["1"] == ["08:30", "12:00", "15:30"]

    @pytest.mark.asyncio
    async def test_expired_special_day_counts_from_following_midnight_forever(self, controller: BellController):
        _ = await controller.store.create_special_day(_special(MONDAY, "10:00"))

        later = await controller.provisioner.last_modified("sch-001", today=MONDAY + datetime.timedelta(days=30))

        assert later == datetime.datetime(2024, 6, 18, 0, 0, 0, tzinfo=datetime.UTC)

    @pytest.mark.asyncio
    async def test_unknown_school(self, controller: BellController):
        assert await controller.provisioner.last_modified("sch-404") is None


class TestPublishToSchool:
    @pytest.mark.asyncio
    async def test_pushes_timetable_and_legacy_schedule(self, controller: BellController, broker: AsyncMock):
        results = await controller.provisioner.publish_to_school("sch-001")

        assert results == {"BELL001": True, "BELL002": True}
        topics = [call.args[0] for call in broker.publish.await_args_list]
        assert topics == [
            "bell/timetable/BELL001",
            "bellbot/BELL001/schedule",
            "bell/timetable/BELL002",
            "bellbot/BELL002/schedule",
        ]
        for serial in ("BELL001", "BELL002"):
            device = await controller.store.find_device(serial)
            assert device is not None
            assert device.current_timetable_id == "Springfield_High_abc123"

    @pytest.mark.asyncio
    async def test_without_legacy(self, controller: BellController, broker: AsyncMock):
        _ = await controller.provisioner.publish_to_school("sch-001", include_legacy=False)

        assert all(call.args[0].startswith("bell/timetable/") for call in broker.publish.await_args_list)

    @pytest.mark.asyncio
    async def test_invalid_timetable_sends_nothing(self, controller: BellController, broker: AsyncMock):
        """A school name long enough to exceed the payload limit aborts the whole publish."""
        _ = await controller.store.save_school(School(id="sch-001", name="S" * 2100))

        with pytest.raises(TimetableValidationError) as exc_info:
            _ = await controller.provisioner.publish_to_school("sch-001")

        assert exc_info.value.size_bytes > 2048
        broker.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_publish_keeps_previous_id(self, controller: BellController, broker: AsyncMock):
        broker.publish.return_value = False

        results = await controller.provisioner.publish_to_school("sch-001", include_legacy=False)

        assert results == {"BELL001": False, "BELL002": False}
        device = await controller.store.find_device("BELL001")
        assert device is not None
        assert device.current_timetable_id is None

    @pytest.mark.asyncio
    async def test_push_to_device_payload(self, controller: BellController, broker: AsyncMock):
        device = await controller.get_device("BELL002")

        assert await controller.provisioner.push_to_device(device) is True

        wire = json.loads(broker.publish.await_args.args[1])
        assert sorted(wire["times"]) == ["0", "1", "2", "3", "4", "5", "6"]
