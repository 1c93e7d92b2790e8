import os
import zoneinfo
from typing import Any

import tzlocal

from bellbot_controller import __version__

__all__ = [
    "BELLBOT_API_PORT",
    "BELLBOT_DEBUG",
    "BELLBOT_DEVICE_TOPIC",
    "BELLBOT_LEGACY_STATUS_TIMEOUT",
    "BELLBOT_LEGACY_TOPIC",
    "BELLBOT_LOG_FORMAT",
    "BELLBOT_LOG_HUMAN_OUTPUT",
    "BELLBOT_LOG_JSON_FILE",
    "BELLBOT_MAX_DRIFT_SECONDS",
    "BELLBOT_METRICS_PORT",
    "BELLBOT_MQTT_CLIENT_ID",
    "BELLBOT_MQTT_CONN_DELAY",
    "BELLBOT_MQTT_HOST",
    "BELLBOT_MQTT_PASS",
    "BELLBOT_MQTT_PORT",
    "BELLBOT_MQTT_USER",
    "BELLBOT_PERF_THRESHOLD_MS",
    "BELLBOT_PERF_TRACKING",
    "BELLBOT_QUERY_TIMEOUT",
    "BELLBOT_SEED_FILE",
    "BELLBOT_SRV_HOST",
    "BELLBOT_TZ_OFFSET",
    "BELLBOT_VERSION",
    "DAY_NAMES",
    "DAY_INDEX",
    "DEVICE_LWT_MSG",
    "LOCAL_TZ",
    "MAX_DAY_SLOTS",
    "MAX_PAYLOAD_BYTES",
    "MQTT_CLIENT_START_TASK_NAME",
    "API_SRV_START_TASK_NAME",
    "DISPATCHER_START_TASK_NAME",
    "YES_ANSWER",
    "read_env_settings",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")
LOCAL_TZ = zoneinfo.ZoneInfo(str(tzlocal.get_localzone()))

BELLBOT_VERSION: str = __version__
DEVICE_LWT_MSG: bytes = b"offline"

# Device firmware limits
MAX_PAYLOAD_BYTES: int = 2048
MAX_DAY_SLOTS: int = 30

# Canonical week order used by the weekly schedule; device keys are 0=Sunday .. 6=Saturday
DAY_NAMES: tuple[str, ...] = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
DAY_INDEX: dict[str, str] = {
    "Sunday": "0",
    "Monday": "1",
    "Tuesday": "2",
    "Wednesday": "3",
    "Thursday": "4",
    "Friday": "5",
    "Saturday": "6",
}


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name, "")
    return int(raw) if raw.isdigit() else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def read_env_settings() -> dict[str, Any]:
    """Runtime settings from os.environ, keyed by ControllerEnv field name.

    TZ offset is a fixed offset for time payloads, e.g. "+05:30"; empty means the
    host offset captured at startup.
    """
    return {
        "mqtt_host": os.environ.get("BELLBOT_MQTT_HOST", "localhost"),
        "mqtt_port": _env_int("BELLBOT_MQTT_PORT", 1883),
        "mqtt_user": os.environ.get("BELLBOT_MQTT_USER"),
        "mqtt_pass": os.environ.get("BELLBOT_MQTT_PASS"),
        "mqtt_client_id": os.environ.get("BELLBOT_MQTT_CLIENT_ID", "bellbot-server"),
        "mqtt_conn_delay": _env_int("BELLBOT_MQTT_CONN_DELAY", 5),
        "legacy_topic": os.environ.get("BELLBOT_LEGACY_TOPIC", "bellbot"),
        "device_topic": os.environ.get("BELLBOT_DEVICE_TOPIC", "bell"),
        "tz_offset": os.environ.get("BELLBOT_TZ_OFFSET", ""),
        "legacy_status_timeout": _env_float("BELLBOT_LEGACY_STATUS_TIMEOUT", 5.0),
        "query_timeout": _env_float("BELLBOT_QUERY_TIMEOUT", 15.0),
        "max_drift_seconds": _env_int("BELLBOT_MAX_DRIFT_SECONDS", 60),
        "srv_host": os.environ.get("BELLBOT_SRV_HOST", "0.0.0.0"),
        "api_port": _env_int("BELLBOT_API_PORT", 5000),
        "seed_file": os.environ.get("BELLBOT_SEED_FILE") or None,
        "metrics_port": _env_int("BELLBOT_METRICS_PORT", None),
        "debug": os.environ.get("BELLBOT_DEBUG", "0").casefold() in YES_ANSWER,
    }


_settings = read_env_settings()
BELLBOT_MQTT_HOST: str = _settings["mqtt_host"]
BELLBOT_MQTT_PORT: int = _settings["mqtt_port"]
BELLBOT_MQTT_USER: str | None = _settings["mqtt_user"]
BELLBOT_MQTT_PASS: str | None = _settings["mqtt_pass"]
BELLBOT_MQTT_CLIENT_ID: str = _settings["mqtt_client_id"]
BELLBOT_MQTT_CONN_DELAY: int = _settings["mqtt_conn_delay"]
BELLBOT_LEGACY_TOPIC: str = _settings["legacy_topic"]
BELLBOT_DEVICE_TOPIC: str = _settings["device_topic"]
BELLBOT_TZ_OFFSET: str = _settings["tz_offset"]
BELLBOT_LEGACY_STATUS_TIMEOUT: float = _settings["legacy_status_timeout"]
BELLBOT_QUERY_TIMEOUT: float = _settings["query_timeout"]
BELLBOT_MAX_DRIFT_SECONDS: int = _settings["max_drift_seconds"]
BELLBOT_SRV_HOST: str = _settings["srv_host"]
BELLBOT_API_PORT: int = _settings["api_port"]
BELLBOT_SEED_FILE: str | None = _settings["seed_file"]
BELLBOT_METRICS_PORT: int | None = _settings["metrics_port"]
BELLBOT_DEBUG: bool = _settings["debug"]

MQTT_CLIENT_START_TASK_NAME = "MQTTClient_START"
DISPATCHER_START_TASK_NAME = "MessageDispatcher_START"
API_SRV_START_TASK_NAME = "ApiServer_START"

# Logging Configuration
BELLBOT_LOG_FORMAT: str = os.environ.get("BELLBOT_LOG_FORMAT", "human")  # "json", "human", or "both"
BELLBOT_LOG_JSON_FILE: str = os.environ.get("BELLBOT_LOG_JSON_FILE", "/var/log/bellbot_controller.json")
BELLBOT_LOG_HUMAN_OUTPUT: str = os.environ.get("BELLBOT_LOG_HUMAN_OUTPUT", "stdout")  # "stdout", "stderr", or path

# Performance Instrumentation
BELLBOT_PERF_TRACKING: bool = os.environ.get("BELLBOT_PERF_TRACKING", "true").casefold() in YES_ANSWER
_perf_threshold = os.environ.get("BELLBOT_PERF_THRESHOLD_MS", "250")
BELLBOT_PERF_THRESHOLD_MS: int = int(_perf_threshold) if _perf_threshold and _perf_threshold.isdigit() else 250
