from __future__ import annotations

import datetime
from functools import cached_property

from pydantic import BaseModel

from bellbot_controller.const import (
    BELLBOT_API_PORT,
    BELLBOT_DEBUG,
    BELLBOT_DEVICE_TOPIC,
    BELLBOT_LEGACY_STATUS_TIMEOUT,
    BELLBOT_LEGACY_TOPIC,
    BELLBOT_MAX_DRIFT_SECONDS,
    BELLBOT_METRICS_PORT,
    BELLBOT_MQTT_CLIENT_ID,
    BELLBOT_MQTT_CONN_DELAY,
    BELLBOT_MQTT_HOST,
    BELLBOT_MQTT_PASS,
    BELLBOT_MQTT_PORT,
    BELLBOT_MQTT_USER,
    BELLBOT_QUERY_TIMEOUT,
    BELLBOT_SEED_FILE,
    BELLBOT_SRV_HOST,
    BELLBOT_TZ_OFFSET,
    read_env_settings,
)
from bellbot_controller.utils import parse_utc_offset


class ControllerEnv(BaseModel):
    """Runtime settings handed to every component.

    Defaults are the const.py values read at import; ``from_env`` reads
    os.environ again so values loaded from a dotenv file after import are honored.
    """

    mqtt_host: str = BELLBOT_MQTT_HOST
    mqtt_port: int = BELLBOT_MQTT_PORT
    mqtt_user: str | None = BELLBOT_MQTT_USER
    mqtt_pass: str | None = BELLBOT_MQTT_PASS
    mqtt_client_id: str = BELLBOT_MQTT_CLIENT_ID
    mqtt_conn_delay: int = BELLBOT_MQTT_CONN_DELAY
    legacy_topic: str = BELLBOT_LEGACY_TOPIC
    device_topic: str = BELLBOT_DEVICE_TOPIC
    tz_offset: str = BELLBOT_TZ_OFFSET
    legacy_status_timeout: float = BELLBOT_LEGACY_STATUS_TIMEOUT
    query_timeout: float = BELLBOT_QUERY_TIMEOUT
    max_drift_seconds: int = BELLBOT_MAX_DRIFT_SECONDS
    srv_host: str = BELLBOT_SRV_HOST
    api_port: int = BELLBOT_API_PORT
    seed_file: str | None = BELLBOT_SEED_FILE
    metrics_port: int | None = BELLBOT_METRICS_PORT
    debug: bool = BELLBOT_DEBUG

    @cached_property
    def tz(self) -> datetime.timezone:
        """Fixed offset for every time-bearing payload, resolved once."""
        return parse_utc_offset(self.tz_offset)

    @classmethod
    def from_env(cls) -> ControllerEnv:
        """Build settings from the current process environment."""
        return cls(**read_env_settings())
