from __future__ import annotations

import datetime
import os
import re
import signal

from bellbot_controller.const import LOCAL_TZ
from bellbot_controller.logging_abstraction import get_logger

logger = get_logger(__name__)

DEVICE_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
_OFFSET_RE = re.compile(r"^(?P<sign>[+-])(?P<hours>\d{2}):?(?P<minutes>\d{2})$")


def send_signal(signal_num: int):
    """Send a signal to the current process.

    Args:
        signal_num (int): The signal number to send.

    """
    try:
        logger.debug("Sending signal %s to process %s", signal_num, os.getpid())
        os.kill(os.getpid(), signal_num)
    except OSError:
        logger.exception("Failed to send signal %s to process", signal_num)
        raise


def send_sigterm():
    """Send a SIGTERM signal to the current process, requesting an orderly shutdown."""
    send_signal(signal.SIGTERM)


def host_utc_offset() -> datetime.timezone:
    """Fixed offset of the host's local zone at this moment."""
    offset = datetime.datetime.now(LOCAL_TZ).utcoffset() or datetime.timedelta(0)
    return datetime.timezone(offset)


def parse_utc_offset(value: str | None) -> datetime.timezone:
    """Parse '+05:30', '-0800', 'Z' or 'UTC' into a fixed timezone.

    Empty values fall back to the host's current offset.

    Raises:
        ValueError: The value is not a recognizable offset

    """
    if not value or not value.strip():
        return host_utc_offset()
    value = value.strip()
    if value.upper() in ("Z", "UTC"):
        return datetime.UTC
    match = _OFFSET_RE.match(value)
    if match is None:
        msg = f"Invalid UTC offset: {value!r} (expected e.g. +05:30)"
        raise ValueError(msg)
    delta = datetime.timedelta(hours=int(match["hours"]), minutes=int(match["minutes"]))
    if match["sign"] == "-":
        delta = -delta
    return datetime.timezone(delta)


def local_now(tz: datetime.tzinfo) -> datetime.datetime:
    return datetime.datetime.now(tz)


def format_device_time(value: datetime.datetime) -> str:
    """Device clock format: local wall time without offset, e.g. 2024-06-10T08:30:00."""
    return value.strftime(DEVICE_TIME_FORMAT)


def parse_device_time(value: str, tz: datetime.tzinfo) -> datetime.datetime:
    """Parse a device-reported clock string. Naive values are read in ``tz``.

    Raises:
        ValueError: Not an ISO-8601 style date-time

    """
    parsed = datetime.datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def iso_utc_millis(value: datetime.datetime | None = None) -> str:
    """ISO-8601 UTC with milliseconds and 'Z' suffix. Naive values are taken as UTC."""
    if value is None:
        value = datetime.datetime.now(datetime.UTC)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
