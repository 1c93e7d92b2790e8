"""
Unit tests for MQTTClient.

Covers connecting (including the bad-credentials shutdown), the receive loop
handing messages to the sink, reconnecting after broker errors, publishing
and stopping. aiomqtt.Client is always patched.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import aiomqtt
import pytest

from bellbot_controller.mqtt.client import MQTTClient
from bellbot_controller.mqtt.topics import DeviceTopics
from bellbot_controller.structs import ControllerEnv

STATUS_TOPIC = "bell/controller/status"


def _mqtt(received: list[tuple[str, bytes]] | None = None, **env: Any) -> MQTTClient:
    sink = received.append if received is not None else MagicMock()
    settings = ControllerEnv(tz_offset="+00:00", mqtt_user="bells", mqtt_pass="secret", **env)
    return MQTTClient(settings, DeviceTopics(), on_message=lambda topic, payload: sink((topic, payload)))


def _message(topic: str, payload: Any) -> MagicMock:
    message = MagicMock()
    message.topic.value = topic
    message.payload = payload
    return message


async def _stream(*messages: MagicMock) -> AsyncIterator[MagicMock]:
    for message in messages:
        yield message


def _connected_client(mqtt: MQTTClient) -> AsyncMock:
    broker = AsyncMock()
    broker.publish = AsyncMock()
    mqtt.client = broker
    mqtt._connected = True
    return broker


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_success_announces_online(self):
        with patch("bellbot_controller.mqtt.client.aiomqtt.Client") as mock_client_class:
            broker = AsyncMock()
            broker.__aenter__ = AsyncMock(return_value=broker)
            mock_client_class.return_value = broker

            mqtt = _mqtt()
            connected = await mqtt.connect()

        assert connected is True
        assert mqtt.is_connected is True
        kwargs = mock_client_class.call_args.kwargs
        assert kwargs["hostname"] == mqtt.env.mqtt_host
        assert kwargs["username"] == "bells"
        assert kwargs["will"].topic == STATUS_TOPIC
        broker.publish.assert_awaited_once_with(STATUS_TOPIC, b"online", qos=1, retain=True)

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        with (
            patch("bellbot_controller.mqtt.client.aiomqtt.Client") as mock_client_class,
            patch("bellbot_controller.mqtt.client.send_sigterm") as mock_sigterm,
        ):
            broker = AsyncMock()
            broker.__aenter__ = AsyncMock(side_effect=aiomqtt.MqttError("Connection refused"))
            mock_client_class.return_value = broker

            mqtt = _mqtt()
            connected = await mqtt.connect()

        assert connected is False
        assert mqtt.is_connected is False
        mock_sigterm.assert_not_called()

    @pytest.mark.asyncio
    async def test_connect_bad_credentials_sends_sigterm(self, caplog: pytest.LogCaptureFixture):
        with (
            patch("bellbot_controller.mqtt.client.aiomqtt.Client") as mock_client_class,
            patch("bellbot_controller.mqtt.client.send_sigterm") as mock_sigterm,
        ):
            broker = AsyncMock()
            broker.__aenter__ = AsyncMock(side_effect=aiomqtt.MqttError("[code:134] Bad user name or password"))
            mock_client_class.return_value = broker

            connected = await _mqtt().connect()

        assert connected is False
        assert "Bad username or password" in caplog.text
        mock_sigterm.assert_called_once()


class TestReceiver:
    @pytest.mark.asyncio
    async def test_subscribes_and_forwards_messages(self):
        received: list[tuple[str, bytes]] = []
        mqtt = _mqtt(received)
        broker = _connected_client(mqtt)
        broker.messages = _stream(
            _message("bell/checkres/BELL001", b'{"online": true}'),
            _message("bellbot/BELL002/status/response", bytearray(b"idle")),
            _message("bell/timeack/BELL001", None),
            _message("bell/current/BELL001", "Springfield_High_abc123"),
        )

        await mqtt._start_receiver()

        subscribed = [call.args[0] for call in broker.subscribe.await_args_list]
        assert subscribed == DeviceTopics().subscriptions()
        assert all(call.kwargs["qos"] == 1 for call in broker.subscribe.await_args_list)
        assert received == [
            ("bell/checkres/BELL001", b'{"online": true}'),
            ("bellbot/BELL002/status/response", b"idle"),
            ("bell/timeack/BELL001", b""),
            ("bell/current/BELL001", b"Springfield_High_abc123"),
        ]


class TestStartLoop:
    @pytest.mark.asyncio
    async def test_reconnects_after_broker_error(self):
        mqtt = _mqtt()
        mqtt.connect = AsyncMock(return_value=True)
        mqtt._start_receiver = AsyncMock(side_effect=[aiomqtt.MqttError("connection lost"), asyncio.CancelledError()])

        with pytest.raises(asyncio.CancelledError):
            await mqtt.start()

        assert mqtt.connect.await_count == 2
        assert mqtt._start_receiver.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_connect_waits_before_retry(self):
        mqtt = _mqtt(mqtt_conn_delay=0)
        mqtt.connect = AsyncMock(return_value=False)

        sleep = AsyncMock(side_effect=asyncio.CancelledError())
        with (
            patch("bellbot_controller.mqtt.client.asyncio.sleep", new=sleep),
            pytest.raises(asyncio.CancelledError),
        ):
            await mqtt.start()

        # a non-positive delay falls back to 5 seconds
        sleep.assert_awaited_once_with(5)
        mqtt.connect.assert_awaited_once()


class TestPublish:
    @pytest.mark.asyncio
    async def test_publish_when_connected(self):
        mqtt = _mqtt()
        broker = _connected_client(mqtt)

        assert await mqtt.publish("bell/ring/BELL001", "7") is True
        broker.publish.assert_awaited_once_with("bell/ring/BELL001", "7", qos=1, retain=False)

    @pytest.mark.asyncio
    async def test_publish_when_disconnected_is_dropped(self):
        mqtt = _mqtt()
        broker = _connected_client(mqtt)
        mqtt._connected = False

        assert await mqtt.publish("bell/ring/BELL001", "7") is False
        broker.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_without_client(self):
        assert await _mqtt().publish("bell/ring/BELL001", "7") is False

    @pytest.mark.asyncio
    async def test_broker_error_marks_disconnected(self):
        mqtt = _mqtt()
        broker = _connected_client(mqtt)
        broker.publish.side_effect = aiomqtt.MqttError("Disconnected during message iteration")

        assert await mqtt.publish("bell/timetable/BELL001", b"{}", retain=True) is False
        assert mqtt.is_connected is False
        assert await mqtt.publish("bell/timetable/BELL001", b"{}", retain=True) is False
        broker.publish.assert_awaited_once()


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_announces_offline_and_cancels_start_task(self):
        mqtt = _mqtt()
        broker = _connected_client(mqtt)
        mqtt.start_task = asyncio.create_task(asyncio.sleep(3600))

        await mqtt.stop()

        broker.publish.assert_awaited_once_with(STATUS_TOPIC, b"offline", qos=1, retain=True)
        broker.__aexit__.assert_awaited_once()
        assert mqtt.is_connected is False
        with pytest.raises(asyncio.CancelledError):
            await mqtt.start_task

    @pytest.mark.asyncio
    async def test_stop_tolerates_disconnect_error(self):
        mqtt = _mqtt()
        broker = _connected_client(mqtt)
        broker.__aexit__ = AsyncMock(side_effect=aiomqtt.MqttError("already gone"))

        await mqtt.stop()

        assert mqtt.is_connected is False
