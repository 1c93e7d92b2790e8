"""Unit tests for Publisher outbound commands and correlated requests."""

from __future__ import annotations

import datetime
import json
from unittest.mock import AsyncMock

import pytest

from bellbot_controller.exceptions import TimetableValidationError
from bellbot_controller.models import DaySchedule, DeviceTimetable, TimeEntry, WeeklySchedule
from bellbot_controller.mqtt.publisher import Publisher
from bellbot_controller.mqtt.topics import DeviceTopics
from bellbot_controller.registry import CorrelationRegistry, RequestClass
from bellbot_controller.timetable import DAY_KEYS, encode_timetable

IST = datetime.timezone(datetime.timedelta(hours=5, minutes=30))


@pytest.fixture
def registry() -> CorrelationRegistry:
    return CorrelationRegistry(timeouts=dict.fromkeys(RequestClass, 0.5))


@pytest.fixture
def publisher(broker: AsyncMock, registry: CorrelationRegistry) -> Publisher:
    return Publisher(broker, DeviceTopics("bellbot", "bell"), registry, IST)


def _timetable() -> DeviceTimetable:
    times = {key: [] for key in DAY_KEYS}
    times["1"] = ["08:30", "12:00"]
    return DeviceTimetable(id="Springfield_High_abc123", updated_at="2024-06-10T12:00:00.000Z", times=times)


class TestCommands:
    @pytest.mark.asyncio
    async def test_ring_publishes_duration(self, publisher: Publisher, broker: AsyncMock):
        assert await publisher.ring("BELL001", 7) is True

        broker.publish.assert_awaited_once_with("bell/ring/BELL001", "7", qos=1, retain=False)

    @pytest.mark.asyncio
    async def test_legacy_ring_payload(self, publisher: Publisher, broker: AsyncMock):
        _ = await publisher.ring_legacy("BELL001", 3)

        topic, payload = broker.publish.await_args.args
        data = json.loads(payload)
        assert topic == "bellbot/BELL001/ring"
        assert data["command"] == "ring"
        assert data["duration"] == 3
        assert data["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("enabled", "topic"), [(True, "bell/off/BELL001"), (False, "bell/on/BELL001")])
    async def test_silence_topics(self, publisher: Publisher, broker: AsyncMock, enabled: bool, topic: str):
        _ = await publisher.set_silence("BELL001", enabled)

        assert broker.publish.await_args.args[0] == topic

    @pytest.mark.asyncio
    async def test_broker_unavailable_returns_false(self, publisher: Publisher, broker: AsyncMock):
        broker.publish.return_value = False

        assert await publisher.ring("BELL001") is False

    @pytest.mark.asyncio
    async def test_publish_time_uses_configured_offset(self, publisher: Publisher, broker: AsyncMock):
        """The device receives local wall time in the configured offset, without the offset."""
        now = datetime.datetime(2024, 6, 10, 3, 0, 0, tzinfo=datetime.UTC)

        _ = await publisher.publish_time("BELL001", now=now)

        broker.publish.assert_awaited_once_with("bell/time/BELL001", "2024-06-10T08:30:00", qos=1, retain=False)

    @pytest.mark.asyncio
    async def test_legacy_time_sync_payload(self, publisher: Publisher, broker: AsyncMock):
        _ = await publisher.sync_time_legacy("BELL001")

        topic, payload = broker.publish.await_args.args
        assert topic == "bellbot/BELL001/time"
        assert json.loads(payload)["command"] == "sync_time"

    @pytest.mark.asyncio
    async def test_push_schedule_is_retained(self, publisher: Publisher, broker: AsyncMock):
        schedule = WeeklySchedule(
            id="sched",
            school_id="sch-001",
            days={"Monday": DaySchedule(custom_times=[TimeEntry(time="08:00", duration=5)])},
        )

        _ = await publisher.push_schedule("BELL001", schedule)

        call = broker.publish.await_args
        data = json.loads(call.args[1])
        assert call.args[0] == "bellbot/BELL001/schedule"
        assert call.kwargs["retain"] is True
        assert set(data) == {"weeklySchedule", "effectiveDate"}
        assert len(data["weeklySchedule"]) == 7
        assert data["weeklySchedule"]["Monday"]["custom_times"][0]["time"] == "08:00"


class TestPushTimetable:
    @pytest.mark.asyncio
    async def test_valid_timetable_published_retained(self, publisher: Publisher, broker: AsyncMock):
        timetable = _timetable()

        assert await publisher.push_timetable("BELL001", timetable) is True

        broker.publish.assert_awaited_once_with(
            "bell/timetable/BELL001",
            encode_timetable(timetable),
            qos=1,
            retain=True,
        )

    @pytest.mark.asyncio
    async def test_invalid_timetable_refused(self, publisher: Publisher, broker: AsyncMock):
        timetable = _timetable()
        timetable.times["3"] = ["25:00"]
        del timetable.times["6"]

        with pytest.raises(TimetableValidationError) as exc_info:
            _ = await publisher.push_timetable("BELL001", timetable)

        assert len(exc_info.value.errors) == 2
        assert exc_info.value.size_bytes > 0
        broker.publish.assert_not_awaited()


class TestRequests:
    @pytest.mark.asyncio
    async def test_registers_before_publishing(
        self,
        publisher: Publisher,
        broker: AsyncMock,
        registry: CorrelationRegistry,
    ):
        seen_pending: list[bool] = []

        async def _publish(*_args: object, **_kwargs: object) -> bool:
            seen_pending.append(registry.is_pending(("BELL001", RequestClass.STATUS)))
            return True

        broker.publish.side_effect = _publish

        future = await publisher.request_status("BELL001")

        assert future is not None
        assert seen_pending == [True]
        assert broker.publish.await_args.args[0] == "bell/checkreq/BELL001"
        _ = registry.cancel_all()

    @pytest.mark.asyncio
    async def test_failed_publish_discards_and_returns_none(
        self,
        publisher: Publisher,
        broker: AsyncMock,
        registry: CorrelationRegistry,
    ):
        broker.publish.return_value = False

        assert await publisher.request_time("BELL001") is None
        assert registry.pending_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("method", "topic"),
        [
            ("request_time", "bell/timereq/BELL001"),
            ("request_timetable", "bell/creq/BELL001"),
            ("request_legacy_status", "bellbot/BELL001/status/request"),
        ],
    )
    async def test_request_topics(
        self,
        publisher: Publisher,
        broker: AsyncMock,
        registry: CorrelationRegistry,
        method: str,
        topic: str,
    ):
        future = await getattr(publisher, method)("BELL001")

        assert future is not None
        assert broker.publish.await_args.args[0] == topic
        _ = registry.cancel_all()

    @pytest.mark.asyncio
    async def test_legacy_status_payload(self, publisher: Publisher, broker: AsyncMock, registry: CorrelationRegistry):
        _ = await publisher.request_legacy_status("BELL001")

        assert json.loads(broker.publish.await_args.args[1])["command"] == "status"
        _ = registry.cancel_all()
