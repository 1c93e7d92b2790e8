"""MQTT broker connection for the bell controller.

Owns the aiomqtt client: connection lifecycle with retry, subscriptions, the
receive loop (which only hands messages to the dispatcher) and QoS 1 publishing.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import aiomqtt

from bellbot_controller.const import DEVICE_LWT_MSG
from bellbot_controller.logging_abstraction import get_logger
from bellbot_controller.mqtt.topics import DeviceTopics
from bellbot_controller.structs import ControllerEnv
from bellbot_controller.utils import send_sigterm

logger = get_logger(__name__)

type MessageSink = Callable[[str, bytes], None]


class MQTTClient:
    """Broker connection. ``on_message(topic, payload)`` receives every inbound message."""

    lp: str = "mqtt:"
    start_task: asyncio.Task[None] | None = None

    def __init__(self, env: ControllerEnv, topics: DeviceTopics, on_message: MessageSink) -> None:
        self.env: ControllerEnv = env
        self.topics: DeviceTopics = topics
        self._on_message: MessageSink = on_message
        self._connected: bool = False
        self.client: aiomqtt.Client | None = None
        self.status_topic: str = f"{topics.device_ns}/controller/status"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _build_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self.env.mqtt_host,
            port=self.env.mqtt_port,
            username=self.env.mqtt_user,
            password=self.env.mqtt_pass,
            identifier=self.env.mqtt_client_id,
            will=aiomqtt.Will(topic=self.status_topic, payload=DEVICE_LWT_MSG, qos=1, retain=True),
        )

    def _get_connection_delay(self, lp: str) -> int:
        delay = self.env.mqtt_conn_delay
        if delay <= 0:
            logger.debug("%s MQTT connection delay <= 0, which is probably a typo, setting to 5...", lp)
            return 5
        return delay

    async def connect(self) -> bool:
        lp = f"{self.lp}connect:"
        self._connected = False
        logger.debug("%s Connecting to MQTT broker %s:%s...", lp, self.env.mqtt_host, self.env.mqtt_port)
        self.client = self._build_client()
        try:
            _ = await self.client.__aenter__()
        except aiomqtt.MqttError as mqtt_err_exc:
            logger.exception("%s Connection failed [MqttError]", lp)
            if "code:134" in str(mqtt_err_exc):
                logger.error(
                    "%s Bad username or password, check your MQTT credentials (username: %s)",
                    lp,
                    self.env.mqtt_user,
                )
                send_sigterm()
            return False
        self._connected = True
        logger.info("%s Connected to MQTT broker: %s port: %s", lp, self.env.mqtt_host, self.env.mqtt_port)
        _ = await self.publish(self.status_topic, b"online", retain=True)
        return True

    async def _start_receiver(self) -> None:
        rcv_lp = f"{self.lp}rcv:"
        assert self.client is not None, "client must be initialized"
        subscriptions = self.topics.subscriptions()
        for topic in subscriptions:
            await self.client.subscribe(topic, qos=1)
        logger.debug("%s Subscribed to MQTT topics: %s. Waiting for MQTT messages...", rcv_lp, subscriptions)
        async for message in self.client.messages:
            payload = message.payload
            if payload is None:
                raw = b""
            elif isinstance(payload, bytes | bytearray):
                raw = bytes(payload)
            else:
                raw = str(payload).encode()
            logger.debug("%s >>> topic=%s, payload_len=%d", rcv_lp, message.topic.value, len(raw))
            self._on_message(message.topic.value, raw)

    async def start(self) -> None:
        """Connect and receive forever, reconnecting after broker errors."""
        lp = f"{self.lp}start:"
        try:
            while True:
                if await self.connect():
                    try:
                        await self._start_receiver()
                    except aiomqtt.MqttError as msg_err:
                        logger.warning("%s MQTT error: %s, reconnecting...", lp, msg_err)
                        self._connected = False
                        continue
                delay = self._get_connection_delay(lp)
                logger.info(
                    "%s connecting to MQTT broker failed, sleeping for %s seconds before re-trying...",
                    lp,
                    delay,
                )
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug("%s MQTT start task cancelled, propagating...", lp)
            raise
        except Exception:
            logger.exception("%s MQTT start() EXCEPTION", lp)

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        if self._connected:
            _ = await self.publish(self.status_topic, DEVICE_LWT_MSG, retain=True)
        try:
            if self.client is not None:
                logger.debug("%s Disconnecting from broker...", lp)
                await self.client.__aexit__(None, None, None)
        except aiomqtt.MqttError as ce:
            logger.warning("%s MQTT disconnect failed: %s", lp, ce)
        else:
            logger.info("%s Disconnected from MQTT broker", lp)
        finally:
            self._connected = False
            if self.start_task and not self.start_task.done():
                logger.debug("%s FINISHING: Cancelling start task", lp)
                _ = self.start_task.cancel()

    async def publish(self, topic: str, payload: bytes | str, qos: int = 1, retain: bool = False) -> bool:
        """Publish a message. True only when connected and the broker client accepted it."""
        lp = f"{self.lp}publish:"
        if not self._connected or self.client is None:
            logger.debug("%s Not connected, dropping publish to %s", lp, topic)
            return False
        try:
            await self.client.publish(topic, payload, qos=qos, retain=retain)
        except aiomqtt.MqttCodeError as mqtt_code_exc:
            logger.warning("%s [MqttCodeError] -> %s", lp, mqtt_code_exc)
            self._connected = False
        except aiomqtt.MqttError as mqtt_err:
            logger.warning("%s [MqttError] -> %s", lp, mqtt_err)
            self._connected = False
        else:
            return True
        return False
