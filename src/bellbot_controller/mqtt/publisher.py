"""Outbound device commands and requests.

Every publish goes out at QoS 1. A True result means the broker client accepted
the message; it never means the device acted on it. Request methods register
their correlation before transmitting and return the future to await, or None
when the publish failed.
"""

from __future__ import annotations

import asyncio
import datetime
import json
from typing import Any, Protocol

from bellbot_controller import metrics
from bellbot_controller.exceptions import TimetableValidationError
from bellbot_controller.instrumentation import timed_async
from bellbot_controller.logging_abstraction import get_logger
from bellbot_controller.models import DeviceTimetable, WeeklySchedule
from bellbot_controller.mqtt.topics import DeviceTopics
from bellbot_controller.registry import CorrelationRegistry, CorrelationResult, RequestClass
from bellbot_controller.timetable import encode_timetable, validate_device_timetable
from bellbot_controller.utils import format_device_time, iso_utc_millis, local_now

__all__ = ["BrokerPublisher", "Publisher"]

logger = get_logger(__name__)


class BrokerPublisher(Protocol):
    async def publish(self, topic: str, payload: bytes | str, qos: int = 1, retain: bool = False) -> bool: ...


def _json(data: dict[str, Any]) -> bytes:
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


class Publisher:
    lp: str = "Publisher:"

    def __init__(
        self,
        broker: BrokerPublisher,
        topics: DeviceTopics,
        registry: CorrelationRegistry,
        tz: datetime.tzinfo,
    ) -> None:
        self.broker: BrokerPublisher = broker
        self.topics: DeviceTopics = topics
        self.registry: CorrelationRegistry = registry
        self.tz: datetime.tzinfo = tz

    @timed_async("mqtt_publish")
    async def _send(self, command: str, topic: str, payload: bytes | str, retain: bool = False) -> bool:
        ok = await self.broker.publish(topic, payload, qos=1, retain=retain)
        metrics.record_publish(command, "ok" if ok else "failed")
        if ok:
            logger.debug("%s %s -> %s", self.lp, command, topic)
        else:
            logger.warning("%s %s publish to %s failed (broker unavailable)", self.lp, command, topic)
        return ok

    async def _request(
        self,
        serial: str,
        request_class: RequestClass,
        topic: str,
        payload: bytes | str = b"",
    ) -> asyncio.Future[CorrelationResult] | None:
        key = (serial, request_class)
        future = self.registry.register(key)
        if not await self._send(f"request_{request_class.value}", topic, payload):
            _ = self.registry.discard(key)
            return None
        return future

    # ---- commands ------------------------------------------------------

    async def ring(self, serial: str, duration: int = 5) -> bool:
        """Ring a current-generation bell for ``duration`` seconds."""
        return await self._send("ring", self.topics.ring(serial), str(duration))

    async def ring_legacy(self, serial: str, duration: int = 5) -> bool:
        payload = _json({"command": "ring", "duration": duration, "timestamp": iso_utc_millis()})
        return await self._send("ring_legacy", self.topics.legacy_ring(serial), payload)

    async def set_silence(self, serial: str, enabled: bool) -> bool:
        command = "silence_on" if enabled else "silence_off"
        return await self._send(command, self.topics.silence(serial, enabled), b"")

    async def push_schedule(
        self,
        serial: str,
        schedule: WeeklySchedule,
        effective_date: datetime.datetime | None = None,
    ) -> bool:
        """Legacy full-schedule push, retained so a reconnecting device picks it up."""
        payload = _json(
            {
                "weeklySchedule": schedule.model_dump(mode="json", include={"days"})["days"],
                "effectiveDate": iso_utc_millis(effective_date),
            }
        )
        return await self._send("schedule", self.topics.legacy_schedule(serial), payload, retain=True)

    async def push_timetable(self, serial: str, timetable: DeviceTimetable) -> bool:
        """Validate and publish a device timetable (retained).

        Raises:
            TimetableValidationError: The timetable breaks a device limit; nothing is sent

        """
        validation = validate_device_timetable(timetable)
        if not validation.valid:
            metrics.record_publish("timetable", "rejected")
            logger.error(
                "%s Refusing timetable %s for %s: %s",
                self.lp,
                timetable.id,
                serial,
                "; ".join(validation.errors),
                extra={"serial": serial, "size_bytes": validation.size_bytes},
            )
            raise TimetableValidationError(validation.errors, validation.size_bytes)
        logger.info(
            "%s Publishing timetable %s to %s (%d bytes)",
            self.lp,
            timetable.id,
            serial,
            validation.size_bytes,
        )
        return await self._send("timetable", self.topics.timetable(serial), encode_timetable(timetable), retain=True)

    async def publish_time(self, serial: str, now: datetime.datetime | None = None) -> bool:
        """Send the server's wall clock in the configured offset."""
        current = (now or local_now(self.tz)).astimezone(self.tz)
        return await self._send("time", self.topics.time(serial), format_device_time(current))

    async def sync_time_legacy(self, serial: str) -> bool:
        payload = _json({"command": "sync_time", "serverTime": iso_utc_millis()})
        return await self._send("time_legacy", self.topics.legacy_time(serial), payload)

    async def publish_last_updated(self, serial: str, updated_at: datetime.datetime) -> bool:
        return await self._send("updated", self.topics.last_updated(serial), iso_utc_millis(updated_at))

    # ---- requests ------------------------------------------------------

    async def request_time(self, serial: str) -> asyncio.Future[CorrelationResult] | None:
        return await self._request(serial, RequestClass.TIME, self.topics.time_request(serial))

    async def request_timetable(self, serial: str) -> asyncio.Future[CorrelationResult] | None:
        return await self._request(serial, RequestClass.TIMETABLE, self.topics.timetable_request(serial))

    async def request_status(self, serial: str) -> asyncio.Future[CorrelationResult] | None:
        return await self._request(serial, RequestClass.STATUS, self.topics.status_request(serial))

    async def request_legacy_status(self, serial: str) -> asyncio.Future[CorrelationResult] | None:
        payload = _json({"command": "status", "timestamp": iso_utc_millis()})
        return await self._request(
            serial,
            RequestClass.LEGACY_STATUS,
            self.topics.legacy_status_request(serial),
            payload,
        )
