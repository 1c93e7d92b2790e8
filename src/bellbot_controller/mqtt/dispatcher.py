"""Ordered processing of inbound device messages.

The MQTT receive loop only enqueues. A single consumer task drains the queue and
fully awaits each handler (store writes and publishes included) before taking
the next message, so handlers for the same device never interleave.
"""

from __future__ import annotations

import asyncio
import datetime
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from bellbot_controller import metrics
from bellbot_controller.exceptions import BellbotError
from bellbot_controller.instrumentation import timed_async
from bellbot_controller.logging_abstraction import get_logger
from bellbot_controller.models import Device, utcnow
from bellbot_controller.mqtt.topics import DeviceTopics, MessageClass, ParsedTopic
from bellbot_controller.registry import CorrelationKey, RequestClass
from bellbot_controller.tracing import trace_context
from bellbot_controller.utils import local_now, parse_device_time

if TYPE_CHECKING:
    from bellbot_controller.mqtt.publisher import Publisher
    from bellbot_controller.provisioning import TimetableProvisioner
    from bellbot_controller.registry import CorrelationRegistry
    from bellbot_controller.store import DeviceStore

__all__ = ["InboundMessage", "MessageDispatcher"]

logger = get_logger(__name__)

type Handler = Callable[[Device, bytes], Awaitable[None]]

# Payload problems that drop a single message without stopping the consumer
_MALFORMED = (ValueError, KeyError, TypeError)


@dataclass(slots=True)
class InboundMessage:
    topic: str
    payload: bytes = b""
    parsed: ParsedTopic | None = None
    received_at: datetime.datetime = field(default_factory=utcnow)


def _text(payload: bytes) -> str:
    return payload.decode("utf-8").strip()


def _json_object(payload: bytes) -> dict[str, Any]:
    data = json.loads(_text(payload))
    if not isinstance(data, dict):
        msg = f"expected a JSON object, got {type(data).__name__}"
        raise TypeError(msg)
    return data


class MessageDispatcher:
    lp: str = "MessageDispatcher:"
    start_task: asyncio.Task[None] | None = None

    def __init__(
        self,
        store: DeviceStore,
        registry: CorrelationRegistry,
        publisher: Publisher,
        provisioner: TimetableProvisioner,
        topics: DeviceTopics,
        tz: datetime.tzinfo,
        max_drift_seconds: int = 60,
    ) -> None:
        self.store: DeviceStore = store
        self.registry: CorrelationRegistry = registry
        self.publisher: Publisher = publisher
        self.provisioner: TimetableProvisioner = provisioner
        self.topics: DeviceTopics = topics
        self.tz: datetime.tzinfo = tz
        self.max_drift_seconds: int = max_drift_seconds
        self._queue: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self._handlers: dict[MessageClass, Handler] = {
            MessageClass.TIME_ACK: self._on_time_ack,
            MessageClass.TIME_SELF_REPORT: self._on_time_self_report,
            MessageClass.TIME_QUERY_RESPONSE: self._on_time_query_response,
            MessageClass.CURRENT_TIMETABLE: self._on_current_timetable,
            MessageClass.FRESHNESS_QUERY: self._on_freshness_query,
            MessageClass.SYNC_REQUEST: self._on_sync_request,
            MessageClass.STATUS_REPORT: self._on_status_report,
            MessageClass.LEGACY_STATUS_RESPONSE: self._on_legacy_status_response,
        }

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def submit(self, topic: str, payload: bytes) -> None:
        """Enqueue a broker message. Safe to call from the receive loop; never blocks."""
        self._queue.put_nowait(InboundMessage(topic=topic, payload=payload))
        metrics.set_queue_depth(self._queue.qsize())

    def submit_expiry(self, key: CorrelationKey) -> None:
        """Registry expiry hook: status requests that timed out mark the device offline, in order."""
        serial, request_class = key
        if request_class not in (RequestClass.STATUS, RequestClass.LEGACY_STATUS):
            return
        self._queue.put_nowait(
            InboundMessage(topic="", parsed=ParsedTopic(MessageClass.STATUS_TIMEOUT, serial)),
        )
        metrics.set_queue_depth(self._queue.qsize())

    async def join(self) -> None:
        """Wait until every message queued so far has been handled."""
        await self._queue.join()

    async def run(self) -> None:
        """Single consumer loop. Runs until cancelled."""
        lp = f"{self.lp}run:"
        logger.info("%s Dispatcher consumer started", lp)
        try:
            while True:
                message = await self._queue.get()
                metrics.set_queue_depth(self._queue.qsize())
                try:
                    await self.process(message)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("%s Unhandled error processing topic=%s", lp, message.topic)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.debug("%s Dispatcher consumer cancelled, %d message(s) left", lp, self._queue.qsize())
            raise

    @timed_async("dispatch_message")
    async def process(self, message: InboundMessage) -> None:
        """Handle one message under its own trace id."""
        lp = f"{self.lp}process:"
        with trace_context():
            parsed = message.parsed or self.topics.parse(message.topic)
            if parsed is None:
                logger.debug("%s Ignoring message on unrecognized topic %s", lp, message.topic)
                metrics.record_inbound("unknown", "ignored")
                return

            message_class, serial = parsed
            if message_class is MessageClass.STATUS_TIMEOUT:
                await self._on_status_timeout(serial)
                metrics.record_inbound(message_class.value, "ok")
                return

            device = await self.store.update_device(serial, last_seen=message.received_at)
            if device is None:
                logger.warning(
                    "%s Message %s from unknown device %s, dropping",
                    lp,
                    message_class.value,
                    serial,
                    extra={"serial": serial, "topic": message.topic},
                )
                metrics.record_inbound(message_class.value, "unknown_device")
                return

            handler = self._handlers[message_class]
            try:
                await handler(device, message.payload)
            except _MALFORMED as exc:
                logger.warning(
                    "%s Malformed %s payload from %s: %s",
                    lp,
                    message_class.value,
                    serial,
                    exc,
                    extra={"serial": serial, "payload": message.payload[:256]},
                )
                metrics.record_inbound(message_class.value, "malformed")
            except BellbotError as exc:
                logger.error("%s %s handling for %s failed: %s", lp, message_class.value, serial, exc)
                metrics.record_inbound(message_class.value, "failed")
            else:
                metrics.record_inbound(message_class.value, "ok")

    # ---- handlers ------------------------------------------------------

    def _drift_seconds(self, payload: bytes) -> tuple[str, float]:
        reported = _text(payload)
        device_time = parse_device_time(reported, self.tz)
        return reported, (device_time - local_now(self.tz)).total_seconds()

    async def _on_time_ack(self, device: Device, _payload: bytes) -> None:
        _ = await self.store.update_device(device.serial, time_synced=True)
        logger.info("%s %s acknowledged time sync", self.lp, device.serial)

    async def _on_time_self_report(self, device: Device, payload: bytes) -> None:
        lp = f"{self.lp}timesync:"
        reported, drift = self._drift_seconds(payload)
        if abs(drift) > self.max_drift_seconds:
            logger.info(
                "%s %s clock off by %.1fs (device=%s), sending corrective time",
                lp,
                device.serial,
                drift,
                reported,
            )
            _ = await self.publisher.publish_time(device.serial)
            _ = await self.store.update_device(device.serial, time_synced=False)
        else:
            logger.debug("%s %s clock within %.1fs", lp, device.serial, drift)
            _ = await self.store.update_device(device.serial, time_synced=True)

    async def _on_time_query_response(self, device: Device, payload: bytes) -> None:
        reported, drift = self._drift_seconds(payload)
        _ = self.registry.resolve(
            (device.serial, RequestClass.TIME),
            {"device_time": reported, "drift_seconds": round(drift, 3)},
        )

    async def _on_current_timetable(self, device: Device, payload: bytes) -> None:
        text = _text(payload)
        timetable_id = str(_json_object(payload)["id"]) if text.startswith("{") else text
        if not timetable_id:
            msg = "empty timetable id"
            raise ValueError(msg)
        _ = await self.store.update_device(device.serial, current_timetable_id=timetable_id)
        _ = self.registry.resolve((device.serial, RequestClass.TIMETABLE), timetable_id)

    async def _on_freshness_query(self, device: Device, _payload: bytes) -> None:
        updated_at = await self.provisioner.last_modified(device.school_id)
        if updated_at is None:
            logger.warning("%s No weekly schedule for school %s (device %s)", self.lp, device.school_id, device.serial)
            return
        _ = await self.publisher.publish_last_updated(device.serial, updated_at)

    async def _on_sync_request(self, device: Device, _payload: bytes) -> None:
        logger.info("%s %s requested a timetable sync", self.lp, device.serial)
        _ = await self.provisioner.push_to_device(device)

    async def _on_status_report(self, device: Device, payload: bytes) -> None:
        report = _json_object(payload)
        fields: dict[str, Any] = {"is_online": True, "last_status_check": utcnow()}
        if "silence" in report:
            silence = report["silence"]
            if not isinstance(silence, bool):
                msg = f"silence must be a boolean, got {silence!r}"
                raise TypeError(msg)
            fields["is_silenced"] = silence
        if report.get("id"):
            fields["current_timetable_id"] = str(report["id"])
        # persist before resolving so the waiting caller reads the new state
        _ = await self.store.update_device(device.serial, **fields)
        _ = self.registry.resolve((device.serial, RequestClass.STATUS), report)

    async def _on_legacy_status_response(self, device: Device, payload: bytes) -> None:
        report = _json_object(payload)
        _ = await self.store.update_device(device.serial, is_online=True, last_status_check=utcnow())
        _ = self.registry.resolve((device.serial, RequestClass.LEGACY_STATUS), report)

    async def _on_status_timeout(self, serial: str) -> None:
        if await self.store.update_device(serial, is_online=False) is None:
            logger.debug("%s Status timeout for unknown device %s", self.lp, serial)
            return
        logger.info("%s %s did not answer a status request, marked offline", self.lp, serial)
