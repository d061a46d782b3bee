from unittest.mock import AsyncMock, MagicMock

import aiomqtt
import pytest

from echonet_mqtt import mqtt_client
from echonet_mqtt.exceptions import PubSubError
from echonet_mqtt.mqtt_client import MqttClient
from tests.helpers import FakePubSub


class TestInboundQueue:
    async def test_messages_are_queued(self):
        pubsub = FakePubSub()
        pubsub.on_message("light/porch/power/set", b"on")
        assert pubsub.messages.get_nowait() == ("light/porch/power/set", b"on")

    async def test_full_queue_drops(self):
        client = MqttClient("localhost", max_queue_size=1)
        client.on_message("a/b/power/set", b"on")
        client.on_message("a/b/power/set", b"off")
        assert client.messages.qsize() == 1
        assert client.messages.get_nowait()[1] == b"on"


@pytest.fixture
def fake_client(monkeypatch):
    instance = MagicMock()
    instance.__aenter__ = AsyncMock(return_value=instance)
    instance.__aexit__ = AsyncMock(return_value=False)
    instance.subscribe = AsyncMock()
    instance.publish = AsyncMock()
    factory = MagicMock(return_value=instance)
    monkeypatch.setattr(mqtt_client.aiomqtt, "Client", factory)
    return factory


class TestMqttClient:
    async def test_publish_not_connected(self):
        client = MqttClient("localhost")
        with pytest.raises(PubSubError):
            await client.publish("light/porch/power", "on")

    async def test_connect_resubscribes(self, fake_client):
        client = MqttClient("broker.local", port=1884, username="u", password="p", identifier="bridge")
        await client.subscribe("light/porch/power/set")
        await client._connect()
        assert client.connected
        fake_client.assert_called_once_with(
            hostname="broker.local", port=1884, username="u", password="p", identifier="bridge"
        )
        fake_client.return_value.subscribe.assert_awaited_once_with("light/porch/power/set", qos=0)
        await client._disconnect()
        assert not client.connected

    async def test_publish_retained(self, fake_client):
        client = MqttClient("localhost")
        await client._connect()
        await client.publish("light/porch/power", "on")
        fake_client.return_value.publish.assert_awaited_once_with("light/porch/power", "on", qos=0, retain=True)

    async def test_publish_error(self, fake_client):
        fake_client.return_value.publish.side_effect = aiomqtt.MqttError("broken pipe")
        client = MqttClient("localhost")
        await client._connect()
        with pytest.raises(PubSubError):
            await client.publish("light/porch/power", "on", retain=False)

    async def test_connect_failure(self, fake_client):
        fake_client.return_value.__aenter__.side_effect = aiomqtt.MqttError("refused")
        client = MqttClient("localhost")
        with pytest.raises(PubSubError):
            await client.start()
        assert not client.connected
