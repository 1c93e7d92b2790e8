"""Topic layout for both device generations.

Legacy devices use ``{ns}/{serial}/...``; current devices use ``{devns}/{kind}/{serial}``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import NamedTuple

__all__ = [
    "DeviceTopics",
    "MessageClass",
    "ParsedTopic",
]


class MessageClass(StrEnum):
    TIME_ACK = "timeack"
    TIME_SELF_REPORT = "timesync"
    TIME_QUERY_RESPONSE = "timeres"
    CURRENT_TIMETABLE = "current"
    FRESHNESS_QUERY = "nreq"
    SYNC_REQUEST = "sync"
    STATUS_REPORT = "checkres"
    LEGACY_STATUS_RESPONSE = "legacy_status"
    # Internal, produced by the correlation registry when a status request expires
    STATUS_TIMEOUT = "status_timeout"


# Inbound kinds on the current-generation namespace
_CURRENT_INBOUND: dict[str, MessageClass] = {
    MessageClass.TIME_ACK.value: MessageClass.TIME_ACK,
    MessageClass.TIME_SELF_REPORT.value: MessageClass.TIME_SELF_REPORT,
    MessageClass.TIME_QUERY_RESPONSE.value: MessageClass.TIME_QUERY_RESPONSE,
    MessageClass.CURRENT_TIMETABLE.value: MessageClass.CURRENT_TIMETABLE,
    MessageClass.FRESHNESS_QUERY.value: MessageClass.FRESHNESS_QUERY,
    MessageClass.SYNC_REQUEST.value: MessageClass.SYNC_REQUEST,
    MessageClass.STATUS_REPORT.value: MessageClass.STATUS_REPORT,
}


class ParsedTopic(NamedTuple):
    message_class: MessageClass
    serial: str


class DeviceTopics:
    """Builds outbound topics and classifies inbound ones."""

    def __init__(self, legacy_ns: str = "bellbot", device_ns: str = "bell") -> None:
        self.legacy_ns: str = legacy_ns
        self.device_ns: str = device_ns

    def subscriptions(self) -> list[str]:
        """Topic filters covering every inbound message kind."""
        subs = [f"{self.device_ns}/{kind}/+" for kind in _CURRENT_INBOUND]
        subs.append(f"{self.legacy_ns}/+/status/response")
        return subs

    def parse(self, topic: str) -> ParsedTopic | None:
        """Map an inbound topic to (message class, serial); None when it is not ours."""
        parts = topic.split("/")
        if len(parts) == 3 and parts[0] == self.device_ns:
            message_class = _CURRENT_INBOUND.get(parts[1])
            if message_class is not None and parts[2]:
                return ParsedTopic(message_class, parts[2])
        if len(parts) == 4 and parts[0] == self.legacy_ns and parts[2:] == ["status", "response"] and parts[1]:
            return ParsedTopic(MessageClass.LEGACY_STATUS_RESPONSE, parts[1])
        return None

    # current generation, outbound

    def device(self, kind: str, serial: str) -> str:
        return f"{self.device_ns}/{kind}/{serial}"

    def ring(self, serial: str) -> str:
        return self.device("ring", serial)

    def time(self, serial: str) -> str:
        return self.device("time", serial)

    def timetable(self, serial: str) -> str:
        return self.device("timetable", serial)

    def silence(self, serial: str, enabled: bool) -> str:
        # "off" silences the bell, "on" re-enables it
        return self.device("off" if enabled else "on", serial)

    def status_request(self, serial: str) -> str:
        return self.device("checkreq", serial)

    def time_request(self, serial: str) -> str:
        return self.device("timereq", serial)

    def timetable_request(self, serial: str) -> str:
        return self.device("creq", serial)

    def last_updated(self, serial: str) -> str:
        return self.device("updated", serial)

    # legacy generation, outbound

    def legacy(self, serial: str, *suffix: str) -> str:
        return "/".join((self.legacy_ns, serial, *suffix))

    def legacy_status_request(self, serial: str) -> str:
        return self.legacy(serial, "status", "request")

    def legacy_schedule(self, serial: str) -> str:
        return self.legacy(serial, "schedule")

    def legacy_ring(self, serial: str) -> str:
        return self.legacy(serial, "ring")

    def legacy_time(self, serial: str) -> str:
        return self.legacy(serial, "time")
