"""Unit tests for time helpers and ControllerEnv."""

from __future__ import annotations

import datetime
import os

import pytest

from bellbot_controller.structs import ControllerEnv
from bellbot_controller.utils import (
    format_device_time,
    host_utc_offset,
    iso_utc_millis,
    parse_device_time,
    parse_utc_offset,
)


class TestParseUtcOffset:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("+05:30", datetime.timedelta(hours=5, minutes=30)),
            ("-0800", datetime.timedelta(hours=-8)),
            ("+00:00", datetime.timedelta(0)),
            ("Z", datetime.timedelta(0)),
            ("utc", datetime.timedelta(0)),
            (" +01:00 ", datetime.timedelta(hours=1)),
        ],
    )
    def test_valid_offsets(self, value: str, expected: datetime.timedelta):
        assert parse_utc_offset(value).utcoffset(None) == expected

    @pytest.mark.parametrize("value", ["5:30", "+5", "Europe/Berlin", "+05:30:00"])
    def test_invalid_offsets(self, value: str):
        with pytest.raises(ValueError, match="Invalid UTC offset"):
            _ = parse_utc_offset(value)

    def test_empty_falls_back_to_host(self):
        assert parse_utc_offset("") == host_utc_offset()
        assert parse_utc_offset(None) == host_utc_offset()


class TestDeviceTime:
    def test_format_drops_offset_and_fraction(self):
        value = datetime.datetime(2024, 6, 10, 8, 30, 5, 123456, tzinfo=datetime.UTC)

        assert format_device_time(value) == "2024-06-10T08:30:05"

    def test_parse_naive_uses_configured_offset(self):
        tz = parse_utc_offset("+05:30")

        parsed = parse_device_time("2024-06-10T08:30:00", tz)

        assert parsed.utcoffset() == datetime.timedelta(hours=5, minutes=30)
        assert parsed.astimezone(datetime.UTC).hour == 3

    def test_parse_keeps_explicit_offset(self):
        parsed = parse_device_time("2024-06-10T08:30:00+02:00", datetime.UTC)

        assert parsed.utcoffset() == datetime.timedelta(hours=2)

    def test_parse_garbage(self):
        with pytest.raises(ValueError):
            _ = parse_device_time("not a time", datetime.UTC)


class TestIsoUtcMillis:
    def test_aware_value_converted_to_utc(self):
        value = datetime.datetime(2024, 6, 10, 14, 0, tzinfo=parse_utc_offset("+02:00"))

        assert iso_utc_millis(value) == "2024-06-10T12:00:00.000Z"

    def test_naive_value_taken_as_utc(self):
        assert iso_utc_millis(datetime.datetime(2024, 6, 10, 12, 0, 0, 250000)) == "2024-06-10T12:00:00.250Z"

    def test_default_is_now(self):
        assert iso_utc_millis().endswith("Z")


class TestControllerEnv:
    def test_from_env_reads_process_environment(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("BELLBOT_MQTT_HOST", "broker.local")
        monkeypatch.setenv("BELLBOT_MQTT_PORT", "8883")
        monkeypatch.setenv("BELLBOT_TZ_OFFSET", "+05:30")
        monkeypatch.setenv("BELLBOT_LEGACY_STATUS_TIMEOUT", "2.5")
        monkeypatch.setenv("BELLBOT_QUERY_TIMEOUT", "not-a-number")
        monkeypatch.setenv("BELLBOT_DEBUG", "yes")
        monkeypatch.delenv("BELLBOT_METRICS_PORT", raising=False)

        env = ControllerEnv.from_env()

        assert env.mqtt_host == "broker.local"
        assert env.mqtt_port == 8883
        assert env.legacy_status_timeout == 2.5
        assert env.query_timeout == 15.0
        assert env.metrics_port is None
        assert env.debug is True
        assert env.tz.utcoffset(None) == datetime.timedelta(hours=5, minutes=30)

    def test_from_env_defaults(self, monkeypatch: pytest.MonkeyPatch):
        for name in [key for key in os.environ if key.startswith("BELLBOT_")]:
            monkeypatch.delenv(name)
        monkeypatch.setenv("BELLBOT_MQTT_CONN_DELAY", "soon")

        env = ControllerEnv.from_env()

        assert env.mqtt_host == "localhost"
        assert env.mqtt_port == 1883
        assert env.mqtt_conn_delay == 5
        assert (env.legacy_topic, env.device_topic) == ("bellbot", "bell")
        assert (env.legacy_status_timeout, env.query_timeout) == (5.0, 15.0)
        assert (env.api_port, env.metrics_port, env.seed_file) == (5000, None, None)
        assert env.debug is False

    def test_invalid_offset_surfaces_on_access(self):
        env = ControllerEnv(tz_offset="somewhere")

        with pytest.raises(ValueError):
            _ = env.tz
