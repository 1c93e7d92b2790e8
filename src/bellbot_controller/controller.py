"""Service object wiring the store, broker client, registry, publisher and dispatcher."""

from __future__ import annotations

import asyncio
import datetime
import uuid
from typing import TYPE_CHECKING, Any

from bellbot_controller.const import (
    API_SRV_START_TASK_NAME,
    BELLBOT_VERSION,
    DISPATCHER_START_TASK_NAME,
    MQTT_CLIENT_START_TASK_NAME,
)
from bellbot_controller.exceptions import DeviceNotFoundError, DeviceSilencedError, SchoolNotFoundError
from bellbot_controller.logging_abstraction import get_logger
from bellbot_controller.metrics import start_metrics_server
from bellbot_controller.models import (
    Device,
    DeviceAssignment,
    PresetTimetable,
    School,
    SpecialDayTimetable,
    TimeEntry,
    WeeklySchedule,
)
from bellbot_controller.mqtt.client import MQTTClient
from bellbot_controller.mqtt.dispatcher import MessageDispatcher
from bellbot_controller.mqtt.publisher import BrokerPublisher, Publisher
from bellbot_controller.mqtt.topics import DeviceTopics
from bellbot_controller.provisioning import TimetableProvisioner
from bellbot_controller.registry import CorrelationRegistry, CorrelationResult, RequestClass
from bellbot_controller.tracing import ensure_trace_id

if TYPE_CHECKING:
    from bellbot_controller.api import ApiServer
    from bellbot_controller.store import MemoryStore
    from bellbot_controller.structs import ControllerEnv

logger = get_logger(__name__)


class BellController:
    """Owns every runtime component; nothing here is a module-level singleton.

    ``broker`` replaces the MQTT client for publishing (tests pass a mock).
    """

    lp: str = "BellController:"

    def __init__(self, env: ControllerEnv, store: MemoryStore, broker: BrokerPublisher | None = None) -> None:
        self.env: ControllerEnv = env
        self.store: MemoryStore = store
        self.topics = DeviceTopics(env.legacy_topic, env.device_topic)
        self.registry = CorrelationRegistry(
            timeouts={
                RequestClass.LEGACY_STATUS: env.legacy_status_timeout,
                RequestClass.TIME: env.query_timeout,
                RequestClass.TIMETABLE: env.query_timeout,
                RequestClass.STATUS: env.query_timeout,
            },
        )
        self.mqtt_client = MQTTClient(env, self.topics, on_message=self._on_message)
        self.publisher = Publisher(broker or self.mqtt_client, self.topics, self.registry, env.tz)
        self.provisioner = TimetableProvisioner(store, self.publisher, env.tz)
        self.dispatcher = MessageDispatcher(
            store,
            self.registry,
            self.publisher,
            self.provisioner,
            self.topics,
            env.tz,
            max_drift_seconds=env.max_drift_seconds,
        )
        self.registry.set_expire_hook(self.dispatcher.submit_expiry)
        self.api_server: ApiServer | None = None
        self.tasks: list[asyncio.Task[None]] = []

    def _on_message(self, topic: str, payload: bytes) -> None:
        self.dispatcher.submit(topic, payload)

    # ---- lifecycle -----------------------------------------------------

    async def start(self, with_api: bool = True) -> None:
        """Run the MQTT client, dispatcher consumer and (optionally) the admin API until stopped."""
        _ = ensure_trace_id()
        logger.info("%s Starting bell controller", self.lp, extra={"version": BELLBOT_VERSION})
        if self.env.metrics_port:
            start_metrics_server(self.env.metrics_port)
            logger.info("%s Prometheus metrics exposed on port %s", self.lp, self.env.metrics_port)

        self.dispatcher.start_task = d_start = asyncio.Task(self.dispatcher.run(), name=DISPATCHER_START_TASK_NAME)
        self.mqtt_client.start_task = m_start = asyncio.Task(self.mqtt_client.start(), name=MQTT_CLIENT_START_TASK_NAME)
        self.tasks = [d_start, m_start]
        if with_api:
            from bellbot_controller.api import ApiServer

            self.api_server = ApiServer(self)
            self.api_server.start_task = a_start = asyncio.Task(self.api_server.start(), name=API_SRV_START_TASK_NAME)
            self.tasks.append(a_start)

        results = await asyncio.gather(*self.tasks, return_exceptions=True)
        for task, result in zip(self.tasks, results, strict=True):
            if isinstance(result, Exception):
                logger.error("%s Task %s ended with error: %s", self.lp, task.get_name(), result)

    async def stop(self) -> None:
        logger.info("%s Shutting down bell controller...", self.lp)
        if self.api_server is not None:
            await self.api_server.stop()
        _ = self.registry.cancel_all()
        await self.mqtt_client.stop()
        for task in self.tasks:
            if not task.done():
                logger.debug("%s Cancelling task: %s", self.lp, task.get_name())
                _ = task.cancel()
        logger.info("%s Shutdown complete", self.lp)

    # ---- device operations ---------------------------------------------

    async def get_device(self, serial: str) -> Device:
        device = await self.store.find_device(serial)
        if device is None:
            raise DeviceNotFoundError(serial)
        return device

    async def create_device(
        self,
        serial: str,
        school_id: str,
        location: str = "",
        model: str = "Standard Bell",
    ) -> Device:
        """Register a device for an existing school.

        Raises:
            SchoolNotFoundError: Unknown school id
            StoreConflictError: Serial already registered

        """
        _ = await self.get_school(school_id)
        device = Device(serial=serial, school_id=school_id, location=location, model=model)
        return await self.store.create_device(device)

    async def update_device(self, serial: str, **changes: Any) -> Device:
        """Change a device's location, model or school. Moving it pushes the new school's timetable.

        Raises:
            DeviceNotFoundError: Unknown serial
            SchoolNotFoundError: Unknown target school

        """
        current = await self.get_device(serial)
        school_id = changes.get("school_id")
        moved = school_id is not None and school_id != current.school_id
        if moved:
            _ = await self.get_school(school_id)
        device = await self.store.update_device(serial, **changes)
        if device is None:
            raise DeviceNotFoundError(serial)
        if moved:
            logger.info("%s %s moved to school %s, pushing its timetable", self.lp, serial, school_id)
            _ = await self.provisioner.push_to_device(device)
        return device

    async def assign_device(self, serial: str, user_id: str) -> DeviceAssignment:
        return await self.store.assign_device(serial, user_id)

    async def unassign_device(self, serial: str, user_id: str) -> bool:
        return await self.store.unassign_device(serial, user_id)

    async def list_assignments(self, serial: str) -> list[DeviceAssignment]:
        _ = await self.get_device(serial)
        return await self.store.list_assignments(serial)

    async def ring(self, serial: str, duration: int = 5, legacy: bool = False) -> bool:
        """Ring a bell now.

        Raises:
            DeviceNotFoundError: Unknown serial
            DeviceSilencedError: The bell is silenced

        """
        device = await self.get_device(serial)
        if device.is_silenced:
            raise DeviceSilencedError(serial)
        logger.info("%s Ringing %s for %ss", self.lp, serial, duration)
        if legacy:
            return await self.publisher.ring_legacy(serial, duration)
        return await self.publisher.ring(serial, duration)

    async def set_silence(self, serial: str, silenced: bool) -> bool:
        """Publish the silence command; the stored flag changes only when the publish was accepted."""
        _ = await self.get_device(serial)
        ok = await self.publisher.set_silence(serial, silenced)
        if ok:
            _ = await self.store.update_device(serial, is_silenced=silenced)
        return ok

    async def push_time(self, serial: str, legacy: bool = False) -> bool:
        _ = await self.get_device(serial)
        if legacy:
            return await self.publisher.sync_time_legacy(serial)
        return await self.publisher.publish_time(serial)

    async def push_timetable(self, serial: str) -> bool:
        device = await self.get_device(serial)
        return await self.provisioner.push_to_device(device)

    async def _await_request(
        self,
        serial: str,
        request: Any,
    ) -> CorrelationResult | None:
        _ = await self.get_device(serial)
        future = await request(serial)
        if future is None:
            return None
        return await future

    async def query_status(self, serial: str) -> CorrelationResult | None:
        """Ask for a comprehensive status report. None when the request could not be sent."""
        return await self._await_request(serial, self.publisher.request_status)

    async def query_legacy_status(self, serial: str) -> CorrelationResult | None:
        return await self._await_request(serial, self.publisher.request_legacy_status)

    async def query_time(self, serial: str) -> CorrelationResult | None:
        return await self._await_request(serial, self.publisher.request_time)

    async def query_timetable(self, serial: str) -> CorrelationResult | None:
        return await self._await_request(serial, self.publisher.request_timetable)

    # ---- schools -------------------------------------------------------

    async def get_school(self, school_id: str) -> School:
        school = await self.store.find_school(school_id)
        if school is None:
            raise SchoolNotFoundError(school_id)
        return school

    async def create_school(self, name: str) -> School:
        return await self.store.create_school(School(id=uuid.uuid4().hex, name=name))

    async def rename_school(self, school_id: str, name: str) -> tuple[School, dict[str, bool]]:
        """Rename a school and republish; the timetable id carries the name.

        Raises:
            SchoolNotFoundError: Unknown school id
            TimetableValidationError: The renamed timetable breaks a device limit; nothing is saved

        """
        current = await self.get_school(school_id)
        renamed = current.model_copy(update={"name": name})
        await self.provisioner.check_change(school_id, school=renamed)
        _ = await self.store.save_school(renamed)
        return renamed, await self.provisioner.publish_to_school(school_id)

    async def delete_school(self, school_id: str) -> None:
        await self.store.delete_school(school_id)

    # ---- schedule administration ---------------------------------------

    async def update_schedule_day(
        self,
        school_id: str,
        day: str,
        preset_id: str | None,
        custom_times: list[TimeEntry],
        updated_by: str | None = None,
    ) -> tuple[WeeklySchedule, dict[str, bool]]:
        """Replace one day and republish. Nothing is saved when the result would not fit a device.

        Raises:
            TimetableValidationError: The changed timetable breaks a device limit
            ValueError: Invalid day name or unknown preset

        """
        current = await self.store.find_weekly_schedule(school_id)
        base = current or WeeklySchedule(id="pending", school_id=school_id)
        candidate = base.with_day(day, preset_id, custom_times)
        await self.provisioner.check_change(school_id, schedule=candidate)
        schedule = await self.store.set_schedule_day(school_id, day, preset_id, custom_times, updated_by)
        return schedule, await self.provisioner.publish_to_school(school_id)

    async def create_preset(
        self,
        school_id: str,
        name: str,
        description: str = "",
        times: list[TimeEntry] | None = None,
    ) -> PresetTimetable:
        preset = PresetTimetable(
            id=uuid.uuid4().hex,
            school_id=school_id,
            name=name,
            description=description,
            times=list(times or []),
        )
        return await self.store.save_preset(preset)

    async def update_preset(self, preset_id: str, **changes: Any) -> tuple[PresetTimetable, dict[str, bool]]:
        """Apply changes to a preset and republish its school's timetable.

        Raises:
            KeyError: Unknown preset id
            TimetableValidationError: The changed timetable breaks a device limit; nothing is saved

        """
        current = await self.store.find_preset(preset_id)
        if current is None:
            raise KeyError(preset_id)
        updated = PresetTimetable.model_validate({**current.model_dump(), **changes})
        await self.provisioner.check_change(updated.school_id, preset=updated)
        saved = await self.store.save_preset(updated)
        return saved, await self.provisioner.publish_to_school(saved.school_id)

    async def delete_preset(self, preset_id: str) -> PresetTimetable:
        return await self.store.delete_preset(preset_id)

    async def create_special_day(
        self,
        school_id: str,
        date: datetime.date,
        times: list[TimeEntry],
        created_by: str | None = None,
    ) -> tuple[SpecialDayTimetable, dict[str, bool]]:
        special = SpecialDayTimetable(
            id=uuid.uuid4().hex,
            school_id=school_id,
            date=date,
            times=list(times),
            created_by=created_by,
        )
        await self.provisioner.check_change(school_id, special_day=special)
        saved = await self.store.create_special_day(special)
        return saved, await self.provisioner.publish_to_school(school_id)

    async def delete_special_day(self, school_id: str, date: datetime.date) -> tuple[bool, dict[str, bool]]:
        deleted = await self.store.delete_special_day(school_id, date)
        if not deleted:
            return False, {}
        return True, await self.provisioner.publish_to_school(school_id)
