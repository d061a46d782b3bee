"""Fakes shared by the test modules."""

from __future__ import annotations

from unittest.mock import AsyncMock

from echonet_mqtt.device import DeviceConfig, DeviceKind, EchonetDevice
from echonet_mqtt.echonet_frame import EchonetFrame
from echonet_mqtt.echonet_socket import BindingRole, EchonetSocket, EchonetSocketBinding
from echonet_mqtt.exceptions import PubSubError
from echonet_mqtt.mqtt_client import PubSubClient
from echonet_mqtt.registry import DeviceRegistry

AIRCON_ADDR = "192.168.1.50"
LIGHT_ADDR = "192.168.1.51"
AIRCON_EOJ = 0x013001
LIGHT_EOJ = 0x029101


def make_aircon(name: str = "living", addr: str = AIRCON_ADDR, eoj: int = AIRCON_EOJ, sink=None) -> EchonetDevice:
    return EchonetDevice(DeviceConfig(DeviceKind.AIRCON, name, addr, eoj), event_sink=sink)


def make_light(name: str = "porch", addr: str = LIGHT_ADDR, eoj: int = LIGHT_EOJ, sink=None) -> EchonetDevice:
    return EchonetDevice(DeviceConfig(DeviceKind.LIGHT, name, addr, eoj), event_sink=sink)


def response(device: EchonetDevice, esv: int, *props: tuple) -> EchonetFrame:
    """Build a frame as `device` would send it. Each prop is (epc, edt bytes...)."""
    frame = EchonetFrame(seoj=device.eoj, deoj=0x0EF001, esv=esv)
    for epc, *edt in props:
        frame.add_property(epc, *edt)
    return frame


class FakeDatagramTransport:
    """Stands in for an asyncio datagram transport and records what was written."""

    def __init__(self, fail: bool = False):
        self.sent: list[tuple[bytes, object]] = []
        self.closed = False
        self.fail = fail

    def sendto(self, data, addr=None):
        if self.fail:
            raise OSError("network unreachable")
        self.sent.append((bytes(data), addr))

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True


def make_socket(registry: DeviceRegistry, with_multicast: bool = False) -> EchonetSocket:
    """An EchonetSocket wired to fake transports, with pacing sleeps mocked out."""
    sock = EchonetSocket(registry)
    sock._sleep = AsyncMock()
    if with_multicast:
        binding = EchonetSocketBinding(BindingRole.MULTICAST, sockname="multicast")
        binding.transport = FakeDatagramTransport()
        sock.add_socket_binding(binding)
    for device in registry:
        binding = EchonetSocketBinding(BindingRole.DEVICE, device=device)
        binding.transport = FakeDatagramTransport()
        sock.add_socket_binding(binding)
    return sock


def sent_frames(sock: EchonetSocket, device: EchonetDevice) -> list[EchonetFrame]:
    binding = sock.get_device_binding(device)
    assert binding is not None
    transport = binding.transport
    return [EchonetFrame.decode(data) for data, _ in transport.sent]


class FakePubSub(PubSubClient):
    """Records subscriptions and publishes; inbound messages are injected with on_message()."""

    def __init__(self, fail_publish: bool = False):
        super().__init__()
        self.subscriptions: list[str] = []
        self.published: list[tuple[str, str, bool]] = []
        self.fail_publish = fail_publish

    async def subscribe(self, topic: str) -> None:
        self.subscriptions.append(topic)

    async def publish(self, topic: str, payload: str, retain: bool = True) -> None:
        if self.fail_publish:
            raise PubSubError(f"Publish to {topic} failed")
        self.published.append((topic, payload, retain))

    def payloads(self) -> dict[str, str]:
        """The last payload published on each topic."""
        return {topic: payload for topic, payload, _ in self.published}
