import asyncio
import socket
from unittest.mock import AsyncMock, call

import pytest

from echonet_mqtt.constants import (
    ECHONET_MULTICAST_ADDRESS,
    ECHONET_PORT,
    EOJ_NODE_PROFILE,
    EPC_NODE_INS_LIST,
    EPC_POWER,
    ESV_GET,
    ESV_GET_RES,
)
from echonet_mqtt.echonet_frame import EchonetFrame
from echonet_mqtt.echonet_socket import BindingRole, EchonetSocket, EchonetSocketBinding
from echonet_mqtt.exceptions import TransportFailure
from echonet_mqtt.registry import DeviceRegistry
from tests.helpers import (
    FakeDatagramTransport,
    make_aircon,
    make_light,
    make_socket,
    response,
    sent_frames,
)


@pytest.fixture
def events():
    return []


@pytest.fixture
def aircon(events):
    return make_aircon(sink=events.append)


@pytest.fixture
def light(events):
    return make_light(sink=events.append)


@pytest.fixture
def registry(aircon, light):
    return DeviceRegistry([aircon, light])


class TestSend:
    async def test_assigns_transaction_ids(self, registry, light):
        sock = make_socket(registry)
        await sock.send(light, light.query_state())
        await sock.send(light, light.set_power("on"))
        frames = sent_frames(sock, light)
        assert [f.tid for f in frames] == [1, 2]
        assert frames[1].get_property(EPC_POWER).edt == b"\x30"

    async def test_wraps_transaction_id(self, registry, light):
        sock = make_socket(registry)
        light._tid = 0xFFFF
        await sock.send(light, light.query_state())
        await sock.send(light, light.query_state())
        assert [f.tid for f in sent_frames(sock, light)] == [0xFFFF, 0]

    async def test_sends_to_device_socket_only(self, registry, aircon, light):
        sock = make_socket(registry)
        await sock.send(aircon, aircon.query_state())
        assert len(sent_frames(sock, aircon)) == 1
        assert sent_frames(sock, light) == []

    async def test_pacing_interval_per_kind(self, registry, aircon, light):
        sock = make_socket(registry)
        await sock.send(aircon, aircon.query_state())
        await sock.send(light, light.query_state())
        assert sock._sleep.await_args_list == [call(0.7), call(0.6)]

    async def test_sends_are_serialized(self, registry, aircon, light):
        sock = make_socket(registry)
        release = asyncio.Event()
        order = []

        async def slow_sleep(interval):
            order.append(("sleep", interval))
            await release.wait()

        sock._sleep = slow_sleep
        first = asyncio.create_task(sock.send(aircon, aircon.query_state()))
        second = asyncio.create_task(sock.send(light, light.query_state()))
        await asyncio.sleep(0.01)
        # the second frame may not leave while the first still holds the lock
        assert len(sent_frames(sock, aircon)) == 1
        assert sent_frames(sock, light) == []
        release.set()
        await asyncio.gather(first, second)
        assert len(sent_frames(sock, light)) == 1
        assert order == [("sleep", 0.7), ("sleep", 0.6)]

    async def test_missing_binding(self, aircon):
        sock = make_socket(DeviceRegistry())
        with pytest.raises(TransportFailure):
            await sock.send(aircon, aircon.query_state())
        # the transaction id is not consumed by a frame that was never sent
        assert aircon.next_tid() == 1
        sock._sleep.assert_not_awaited()

    async def test_write_error(self, registry, light):
        sock = make_socket(registry)
        sock.get_device_binding(light).transport = FakeDatagramTransport(fail=True)
        with pytest.raises(TransportFailure):
            await sock.send(light, light.query_state())

    async def test_closed_binding(self, registry, light):
        sock = make_socket(registry)
        sock.get_device_binding(light).close()
        with pytest.raises(TransportFailure):
            await sock.send(light, light.query_state())

    async def test_announce(self, registry):
        sock = make_socket(registry, with_multicast=True)
        await sock.send_announce()
        data, addr = sock.multicast_binding.transport.sent[0]
        frame = EchonetFrame.decode(data)
        assert addr == (ECHONET_MULTICAST_ADDRESS, ECHONET_PORT)
        assert frame.esv == ESV_GET
        assert frame.seoj == EOJ_NODE_PROFILE
        assert frame.deoj == EOJ_NODE_PROFILE
        assert frame.epcs == [EPC_NODE_INS_LIST]
        sock._sleep.assert_awaited_once_with(0.25)

    async def test_announce_without_multicast(self, registry):
        sock = make_socket(registry)
        with pytest.raises(TransportFailure):
            await sock.send_announce()


class TestReceive:
    def test_dispatches_to_source_device(self, registry, aircon, light, events):
        sock = make_socket(registry)
        frame = response(light, ESV_GET_RES, (EPC_POWER, 0x30))
        sock.datagram_received(sock.socket_bindings[0], (light.addr, ECHONET_PORT), frame.encode())
        assert light.power is True
        assert aircon.power is False
        assert len(events) == 1
        assert events[0].device is light

    def test_matches_on_address_and_eoj(self, registry, light, events):
        sock = make_socket(registry)
        frame = response(light, ESV_GET_RES, (EPC_POWER, 0x30))
        binding = sock.socket_bindings[0]
        sock.datagram_received(binding, ("192.168.1.200", ECHONET_PORT), frame.encode())
        frame.seoj = 0x029102
        sock.datagram_received(binding, (light.addr, ECHONET_PORT), frame.encode())
        assert events == []

    def test_malformed_dropped(self, registry, events):
        sock = make_socket(registry)
        sock.datagram_received(sock.socket_bindings[0], ("192.168.1.51", ECHONET_PORT), b"\x10\x81\x00")
        assert events == []

    def test_handler_exception_does_not_propagate(self, registry, light):
        def bad_sink(event):
            raise RuntimeError("boom")

        light.event_sink = bad_sink
        sock = make_socket(registry)
        frame = response(light, ESV_GET_RES, (EPC_POWER, 0x30))
        sock.datagram_received(sock.socket_bindings[0], (light.addr, ECHONET_PORT), frame.encode())
        assert light.power is True


class TestReconnect:
    async def test_reconnect_replaces_binding(self, registry, light):
        sock = make_socket(registry)
        old = sock.get_device_binding(light)
        old_transport = old.transport
        new = EchonetSocketBinding(BindingRole.DEVICE, device=light)
        new.transport = FakeDatagramTransport()
        sock._open_device_binding = AsyncMock(return_value=new)
        await sock.reconnect(light)
        assert sock.get_device_binding(light) is new
        assert new.index == old.index
        assert old_transport.closed
        await sock.send(light, light.query_state())
        assert len(new.transport.sent) == 1

    async def test_reconnect_failure(self, registry, light):
        sock = make_socket(registry)
        sock._open_device_binding = AsyncMock(side_effect=TransportFailure("no route"))
        with pytest.raises(TransportFailure):
            await sock.reconnect(light)

    async def test_deliberate_close_is_not_reopened(self, registry, light):
        sock = make_socket(registry)
        sock._started = True
        binding = sock.get_device_binding(light)
        binding.close()
        sock.connection_lost(binding, None)
        assert sock._background_tasks == set()

    async def test_lost_device_socket_is_reopened(self, registry, light):
        sock = make_socket(registry)
        sock._started = True
        new = EchonetSocketBinding(BindingRole.DEVICE, device=light)
        new.transport = FakeDatagramTransport()
        sock._open_device_binding = AsyncMock(return_value=new)
        binding = sock.get_device_binding(light)
        sock.connection_lost(binding, OSError("gone"))
        await asyncio.gather(*sock._background_tasks)
        assert sock.get_device_binding(light) is new

    async def test_stop_closes_everything(self, registry):
        sock = make_socket(registry, with_multicast=True)
        transports = [b.transport for b in sock.socket_bindings]
        await sock.stop()
        assert all(t.closed for t in transports)
        assert all(not b.is_open for b in sock.socket_bindings)


def resolves_to(monkeypatch, *addrs):
    loop = asyncio.get_running_loop()
    getaddrinfo = AsyncMock(
        return_value=[(socket.AF_INET, socket.SOCK_DGRAM, 17, "", (addr, ECHONET_PORT)) for addr in addrs]
    )
    monkeypatch.setattr(loop, "getaddrinfo", getaddrinfo)
    return getaddrinfo


class TestAddressResolution:
    async def test_hostname_device_matched_after_resolution(self, monkeypatch, events):
        aircon = make_aircon(addr="aircon.local", sink=events.append)
        sock = make_socket(DeviceRegistry([aircon]))
        frame = response(aircon, ESV_GET_RES, (EPC_POWER, 0x30))
        binding = sock.socket_bindings[0]
        sock.datagram_received(binding, ("192.168.1.77", ECHONET_PORT), frame.encode())
        assert events == []
        getaddrinfo = resolves_to(monkeypatch, "192.168.1.77")
        assert await sock.resolve_device_address(aircon) == "192.168.1.77"
        getaddrinfo.assert_awaited_once()
        assert getaddrinfo.await_args.args[0] == "aircon.local"
        sock.datagram_received(binding, ("192.168.1.77", ECHONET_PORT), frame.encode())
        assert len(events) == 1
        assert aircon.power is True

    async def test_numeric_address_not_looked_up(self, monkeypatch, registry, light):
        sock = make_socket(registry)
        getaddrinfo = resolves_to(monkeypatch, "10.0.0.1")
        assert await sock.resolve_device_address(light) == light.addr
        getaddrinfo.assert_not_awaited()

    async def test_lookup_failure(self, monkeypatch):
        aircon = make_aircon(addr="nowhere.invalid")
        sock = make_socket(DeviceRegistry([aircon]))
        loop = asyncio.get_running_loop()
        monkeypatch.setattr(loop, "getaddrinfo", AsyncMock(side_effect=socket.gaierror(-2, "Name or service not known")))
        with pytest.raises(TransportFailure):
            await sock.resolve_device_address(aircon)
        assert aircon.ip_address is None

    async def test_no_addresses(self, monkeypatch):
        aircon = make_aircon(addr="aircon.local")
        sock = make_socket(DeviceRegistry([aircon]))
        resolves_to(monkeypatch)
        with pytest.raises(TransportFailure):
            await sock.resolve_device_address(aircon)

    async def test_resolves_to_address_of_another_device(self, monkeypatch, light):
        other = make_light(name="garden", addr="garden-light.local")
        sock = make_socket(DeviceRegistry([light, other]))
        resolves_to(monkeypatch, light.addr)
        with pytest.raises(TransportFailure):
            await sock.resolve_device_address(other)


class TestStart:
    async def test_bind_failure_closes_opened_sockets(self, monkeypatch):
        sock = EchonetSocket(DeviceRegistry(), port=0, interface_addresses=[])

        def fail_unicast(bind_address):
            raise OSError("address in use")

        monkeypatch.setattr(sock, "create_unicast_socket", fail_unicast)
        with pytest.raises(TransportFailure):
            await sock.start()
        multicast = sock.multicast_binding
        assert multicast is not None
        assert not multicast.is_open
        assert multicast.sock is None
        assert not sock._started

    async def test_start_and_stop(self):
        sock = EchonetSocket(DeviceRegistry(), port=0, unicast_bind_address="127.0.0.1", interface_addresses=[])
        async with sock:
            assert [b.role for b in sock.socket_bindings] == [BindingRole.MULTICAST, BindingRole.UNICAST]
            assert all(b.is_open for b in sock.socket_bindings)
        assert all(not b.is_open for b in sock.socket_bindings)

    async def test_lost_listener_is_restarted_in_place(self, registry):
        sock = make_socket(registry, with_multicast=True)
        sock._started = True
        old = sock.multicast_binding
        new = EchonetSocketBinding(BindingRole.MULTICAST, sockname="multicast")
        new.transport = FakeDatagramTransport()
        sock._open_listener = AsyncMock(side_effect=[TransportFailure("busy"), new])
        sock._retry_sleep = AsyncMock()
        sock.connection_lost(old, OSError("gone"))
        await asyncio.gather(*sock._background_tasks)
        assert sock.socket_bindings[old.index] is new
        assert new.index == old.index
        assert sock.multicast_binding is new
        assert sock._open_listener.await_args_list == [call(BindingRole.MULTICAST)] * 2
        assert sock._retry_sleep.await_args_list == [call(1.0), call(2.0)]
