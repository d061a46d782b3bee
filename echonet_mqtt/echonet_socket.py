#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
EchonetSocket -- the ECHONET Lite transport. It:

  1. Listens on the ECHONET Lite multicast group (224.0.23.0:3610), joined on every eligible interface
  2. Listens on a local unicast address
  3. Keeps one connected UDP socket per registered device, used to send it commands and queries
  4. Decodes every received datagram and hands it to the device that sent it, matched on
     (source IP address, SEOJ)
  5. Serializes all outbound frames behind a single lock, assigning transaction ids and pausing after
     each send so that no two frames leave closer together than the pacing interval

  Sockets that close unexpectedly are reopened; runtime socket errors never stop the process.
"""

from __future__ import annotations

import asyncio
import socket
import sys
from enum import Enum

from .internal_types import *
from .pkg_logging import logger
from .exceptions import MalformedFrame, TransportFailure, DuplicateDevice
from .echonet_frame import EchonetFrame
from .device import EchonetDevice, DeviceKind
from .registry import DeviceRegistry
from .util import get_multicast_interfaces
from .constants import (
    ECHONET_MULTICAST_ADDRESS,
    ECHONET_PORT,
    EOJ_NODE_PROFILE,
    ESV_GET,
    EPC_NODE_INS_LIST,
  )

DEFAULT_SEND_INTERVALS: Dict[DeviceKind, float] = {
    DeviceKind.AIRCON: 0.7,
    DeviceKind.LIGHT: 0.6,
}
"""Seconds to hold the send lock after writing a frame to a device of each kind. Gateways for these
   devices drop frames that arrive in quick succession."""

DEFAULT_SEND_INTERVAL = 0.7

ANNOUNCE_SEND_INTERVAL = 0.25

DEFAULT_UNICAST_BIND_ADDRESS = "127.0.0.1"

LISTENER_RETRY_INTERVAL = 1.0
MAX_LISTENER_RETRY_INTERVAL = 60.0

class BindingRole(Enum):
    MULTICAST = "multicast"
    UNICAST = "unicast"
    DEVICE = "device"

class EchonetSocketBinding:
    """
    An encapsulation of one low-level datagram socket used by an EchonetSocket, together with the
    asyncio transport created for it. There is one binding per listener, and one per registered device.
    """

    role: BindingRole

    device: Optional[EchonetDevice] = None
    """For DEVICE bindings, the device this socket is connected to"""

    sock: Optional[socket.socket] = None
    """The low-level socket, if it was created by us rather than by asyncio"""

    index: int = -1
    """The index of this socket binding within EchonetSocket. Set to -1 until this socket binding is added."""

    sockname: str
    """The name of the socket as it should be displayed in logs, etc"""

    _transport: Optional[asyncio.DatagramTransport] = None
    _protocol: Optional[_EchonetSocketProtocol] = None

    def __init__(
            self,
            role: BindingRole,
            sock: Optional[socket.socket]=None,
            device: Optional[EchonetDevice]=None,
            sockname: Optional[str]=None,
          ):
        self.role = role
        self.sock = sock
        self.device = device
        if sockname is None:
            if not device is None:
                sockname = f"{role.value}->{device.addr}:{ECHONET_PORT}"
            elif not sock is None:
                sockname = f"{role.value}@{sock.getsockname()}"
            else:
                sockname = role.value
        self.sockname = sockname

    @property
    def transport(self) -> Optional[asyncio.DatagramTransport]:
        return self._transport

    @transport.setter
    def transport(self, transport: Optional[asyncio.DatagramTransport]) -> None:
        self._transport = transport

    @property
    def protocol(self) -> Optional[_EchonetSocketProtocol]:
        return self._protocol

    @protocol.setter
    def protocol(self, protocol: Optional[_EchonetSocketProtocol]) -> None:
        self._protocol = protocol

    @property
    def is_open(self) -> bool:
        return not self._transport is None and not self._transport.is_closing()

    def sendto(self, data: bytes, addr: Optional[HostAndPort]=None) -> None:
        if not self.is_open:
            raise TransportFailure(f"Socket {self} is not open")
        assert not self._transport is None
        try:
            if addr is None:
                self._transport.sendto(data)
            else:
                self._transport.sendto(data, addr)
        except OSError as e:
            raise TransportFailure(f"send failed on {self}: {e}") from e

    def close(self) -> None:
        if not self._transport is None:
            try:
                self._transport.close()
            except Exception as e:
                logger.error(f"Error closing transport on {self}: {e}")
            self._transport = None
        if not self.sock is None:
            try:
                self.sock.close()
            except OSError as e:
                logger.error(f"Error closing socket on {self}: {e}")
            self.sock = None

    def __str__(self) -> str:
        return f"EchonetSocketBinding({self.index}: {self.sockname})"

    def __repr__(self) -> str:
        return str(self)

class _EchonetSocketProtocol(asyncio.DatagramProtocol):
    """An adapter between an asyncio datagram transport and EchonetSocket. There is one instance of this
       class for each socket binding."""

    echonet_socket: EchonetSocket
    socket_binding: EchonetSocketBinding

    def __init__(self, echonet_socket: EchonetSocket, socket_binding: EchonetSocketBinding):
        self.echonet_socket = echonet_socket
        self.socket_binding = socket_binding
        socket_binding.protocol = self

    def connection_made(self, transport: asyncio.BaseTransport):
        # asyncio datagram transports do not inherit from asyncio.DatagramTransport, though they implement it
        self.socket_binding.transport = transport # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        self.echonet_socket.datagram_received(self.socket_binding, addr, data)

    def error_received(self, exc: Exception):
        self.echonet_socket.error_received(self.socket_binding, exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.echonet_socket.connection_lost(self.socket_binding, exc)

class EchonetSocket(AsyncContextManager['EchonetSocket']):
    """The ECHONET Lite transport shared by all registered devices."""

    registry: DeviceRegistry

    multicast_address: str = ECHONET_MULTICAST_ADDRESS
    port: int = ECHONET_PORT

    unicast_bind_address: Optional[str] = DEFAULT_UNICAST_BIND_ADDRESS
    """The local address of the unicast listener, or None to not create one."""

    interface_addresses: Optional[List[str]] = None
    """The local interface addresses on which to join the multicast group. If None, all eligible
       interfaces are discovered at startup."""

    send_intervals: Dict[DeviceKind, float]

    socket_bindings: List[EchonetSocketBinding]
    """All bindings, in the order they were added"""

    _device_bindings: Dict[EchonetDevice, EchonetSocketBinding]
    _send_lock: asyncio.Lock
    _announce_tid: int = 1
    _stopping: bool = False
    _started: bool = False
    _background_tasks: Set[asyncio.Task[None]]

    listener_retry_interval: float = LISTENER_RETRY_INTERVAL
    """Seconds before the first attempt to reopen a lost socket; doubled after each failure"""

    def __init__(
            self,
            registry: DeviceRegistry,
            multicast_address: str=ECHONET_MULTICAST_ADDRESS,
            port: int=ECHONET_PORT,
            unicast_bind_address: Optional[str]=DEFAULT_UNICAST_BIND_ADDRESS,
            interface_addresses: Optional[Iterable[str]]=None,
            send_intervals: Optional[Mapping[DeviceKind, float]]=None,
          ):
        self.registry = registry
        self.multicast_address = multicast_address
        self.port = port
        self.unicast_bind_address = unicast_bind_address
        self.interface_addresses = None if interface_addresses is None else list(interface_addresses)
        self.send_intervals = dict(DEFAULT_SEND_INTERVALS)
        if not send_intervals is None:
            self.send_intervals.update(send_intervals)
        self.socket_bindings = []
        self._device_bindings = {}
        self._send_lock = asyncio.Lock()
        self._background_tasks = set()
        self.listener_retry_interval = LISTENER_RETRY_INTERVAL
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
        self._retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    # ======================= Bindings

    def add_socket_binding(self, socket_binding: EchonetSocketBinding) -> None:
        if socket_binding.index >= 0:
            raise TransportFailure(f"Attempt to reattach EchonetSocketBinding: {socket_binding}")
        socket_binding.index = len(self.socket_bindings)
        self.socket_bindings.append(socket_binding)
        if socket_binding.role == BindingRole.DEVICE:
            assert not socket_binding.device is None
            self._device_bindings[socket_binding.device] = socket_binding
        logger.debug(f"Added socket binding {socket_binding}")

    def _replace_socket_binding(self, old: EchonetSocketBinding, new: EchonetSocketBinding) -> None:
        new.index = old.index
        self.socket_bindings[old.index] = new
        if new.role == BindingRole.DEVICE:
            assert not new.device is None
            self._device_bindings[new.device] = new

    def get_device_binding(self, device: EchonetDevice) -> Optional[EchonetSocketBinding]:
        return self._device_bindings.get(device)

    @property
    def multicast_binding(self) -> Optional[EchonetSocketBinding]:
        for socket_binding in self.socket_bindings:
            if socket_binding.role == BindingRole.MULTICAST:
                return socket_binding
        return None

    def create_multicast_socket(self) -> socket.socket:
        """Creates a socket bound to the ECHONET port and joined to the multicast group on every
           eligible interface."""
        interface_addresses = self.interface_addresses
        if interface_addresses is None:
            interface_addresses = [ ip for ip, _ in get_multicast_interfaces() ]
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            # On Linux SO_REUSEPORT would load-balance unicast datagrams between sockets bound to the port
            if sys.platform == 'darwin' or 'bsd' in sys.platform:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            # Multicast listeners MUST bind to 0.0.0.0:<port> to receive multicast packets
            sock.bind(('', self.port))
            group_bin = socket.inet_aton(self.multicast_address)
            joined = 0
            for interface_address in interface_addresses:
                mreq = group_bin + socket.inet_aton(interface_address)
                try:
                    sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
                except OSError as e:
                    logger.warning(f"Unable to join multicast group {self.multicast_address} on {interface_address}: {e}")
                    continue
                logger.debug(f"Joined multicast group {self.multicast_address} on {interface_address}")
                joined += 1
            if joined == 0:
                logger.warning(f"Multicast group {self.multicast_address} was not joined on any interface")
            sock.setblocking(False)
        except BaseException:
            sock.close()
            raise
        return sock

    def create_unicast_socket(self, bind_address: str) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((bind_address, self.port))
            sock.setblocking(False)
        except BaseException:
            sock.close()
            raise
        return sock

    async def _attach_sock(self, socket_binding: EchonetSocketBinding) -> None:
        loop = asyncio.get_running_loop()
        untyped_transport, protocol = await loop.create_datagram_endpoint(
            lambda: _EchonetSocketProtocol(self, socket_binding),
            sock=socket_binding.sock
          )
        socket_binding.transport = untyped_transport # type: ignore[assignment]
        logger.debug(f"Created datagram endpoint for {socket_binding}")

    async def _open_listener(self, role: BindingRole) -> EchonetSocketBinding:
        try:
            if role == BindingRole.MULTICAST:
                sock = self.create_multicast_socket()
            else:
                assert not self.unicast_bind_address is None
                sock = self.create_unicast_socket(self.unicast_bind_address)
        except OSError as e:
            raise TransportFailure(f"Unable to bind {role.value} listener on port {self.port}: {e}") from e
        socket_binding = EchonetSocketBinding(role, sock=sock)
        try:
            await self._attach_sock(socket_binding)
        except OSError as e:
            socket_binding.close()
            raise TransportFailure(f"Unable to start {socket_binding}: {e}") from e
        return socket_binding

    async def resolve_device_address(self, device: EchonetDevice) -> str:
        """Resolves the configured address of a device to a numeric IPv4 address and records it in the
           registry, so that frames from the device can be matched to it. Raises TransportFailure."""
        if not device.ip_address is None and device.ip_address == device.addr:
            return device.ip_address
        loop = asyncio.get_running_loop()
        try:
            addrinfos = await loop.getaddrinfo(device.addr, self.port, family=socket.AF_INET, type=socket.SOCK_DGRAM)
        except OSError as e:
            raise TransportFailure(f"Unable to resolve address of {device}: {e}") from e
        if len(addrinfos) == 0:
            raise TransportFailure(f"No IPv4 address found for {device}")
        ip_address: str = addrinfos[0][4][0]
        try:
            self.registry.set_source_address(device, ip_address)
        except DuplicateDevice as e:
            raise TransportFailure(f"{e}") from e
        return ip_address

    async def _open_device_binding(self, device: EchonetDevice) -> EchonetSocketBinding:
        ip_address = await self.resolve_device_address(device)
        loop = asyncio.get_running_loop()
        socket_binding = EchonetSocketBinding(BindingRole.DEVICE, device=device)
        try:
            untyped_transport, protocol = await loop.create_datagram_endpoint(
                lambda: _EchonetSocketProtocol(self, socket_binding),
                remote_addr=(ip_address, self.port),
                family=socket.AF_INET,
              )
        except OSError as e:
            raise TransportFailure(f"Unable to open socket to {device}: {e}") from e
        socket_binding.transport = untyped_transport # type: ignore[assignment]
        logger.debug(f"Created datagram endpoint for {socket_binding}")
        return socket_binding

    # ======================= Lifecycle

    async def start(self) -> None:
        """Binds the listeners and opens a socket to every registered device.

        Raises TransportFailure if a socket cannot be bound; the bridge cannot run without them.
        """
        self._stopping = False
        try:
            self.add_socket_binding(await self._open_listener(BindingRole.MULTICAST))
            if not self.unicast_bind_address is None:
                self.add_socket_binding(await self._open_listener(BindingRole.UNICAST))
            for device in self.registry:
                self.add_socket_binding(await self._open_device_binding(device))
        except BaseException:
            await self.stop()
            raise
        self._started = True
        logger.info(f"Echonet transport started with {len(self.socket_bindings)} sockets")

    async def stop(self) -> None:
        """Closes every socket. Reconnection attempts in progress are cancelled."""
        self._stopping = True
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Exception while cancelling reconnect task: {e}")
        for socket_binding in self.socket_bindings:
            socket_binding.close()
        self._started = False

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self.stop()
        return False

    # ======================= Receiving

    def datagram_received(self, socket_binding: EchonetSocketBinding, addr: HostAndPort, data: bytes) -> None:
        """Decodes a received datagram and passes it to the device that sent it."""
        try:
            frame = EchonetFrame.decode(data)
        except MalformedFrame as e:
            logger.debug(f"Dropping malformed datagram from {addr} on {socket_binding}, raw=[{data!r}]: {e}")
            return
        src = addr[0]
        logger.debug(f"Recv: {src} ({socket_binding.sockname}) {frame}")
        device = self.registry.find_by_source(src, frame.seoj)
        if device is None:
            logger.debug(f"No device registered for {src}:{frame.seoj:06x}; dropping frame")
            return
        try:
            device.handle_response(frame)
        except Exception as e:
            logger.warning(f"{device} raised exception processing frame {frame}: {e}")

    def error_received(self, socket_binding: EchonetSocketBinding, exc: Exception) -> None:
        """Called when a send or receive operation raises an OSError.

        (Other than BlockingIOError or InterruptedError.) For a connected device socket this is
        usually an ICMP port-unreachable from a device that is switched off; the socket stays usable.
        """
        logger.info(f"Error received from transport {socket_binding}: {exc}")

    def connection_lost(self, socket_binding: EchonetSocketBinding, exc: Optional[Exception]) -> None:
        """Called when a transport is closed. Unless we are stopping, the socket is reopened."""
        if self._stopping or not self._started:
            return
        if socket_binding.transport is None or not socket_binding in self.socket_bindings:
            # closed deliberately, or already replaced
            return
        logger.warning(f"Connection to transport lost on {socket_binding}, exc={exc}; reopening")
        socket_binding.transport = None
        if socket_binding.role == BindingRole.DEVICE:
            assert not socket_binding.device is None
            self._spawn(self._reconnect_with_retry(socket_binding.device))
        else:
            self._spawn(self._restart_listener(socket_binding))

    # ======================= Reconnection

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def reconnect(self, device: EchonetDevice) -> None:
        """Closes and reopens the socket used to send to a device. Raises TransportFailure."""
        old_binding = self._device_bindings.get(device)
        new_binding = await self._open_device_binding(device)
        if old_binding is None:
            self.add_socket_binding(new_binding)
        else:
            self._replace_socket_binding(old_binding, new_binding)
            old_binding.close()
        logger.info(f"Reopened {new_binding}")

    async def _reconnect_with_retry(self, device: EchonetDevice) -> None:
        delay = self.listener_retry_interval
        while not self._stopping:
            try:
                await self.reconnect(device)
                return
            except TransportFailure as e:
                logger.warning(f"{e}; retrying in {delay} seconds")
            await self._retry_sleep(delay)
            delay = min(delay * 2, MAX_LISTENER_RETRY_INTERVAL)

    async def _restart_listener(self, old_binding: EchonetSocketBinding) -> None:
        delay = self.listener_retry_interval
        old_binding.close()
        while not self._stopping:
            await self._retry_sleep(delay)
            try:
                new_binding = await self._open_listener(old_binding.role)
            except TransportFailure as e:
                delay = min(delay * 2, MAX_LISTENER_RETRY_INTERVAL)
                logger.warning(f"{e}; retrying in {delay} seconds")
                continue
            self._replace_socket_binding(old_binding, new_binding)
            logger.info(f"Restarted {new_binding}")
            return

    # ======================= Sending

    def send_interval(self, device: EchonetDevice) -> float:
        return self.send_intervals.get(device.kind, DEFAULT_SEND_INTERVAL)

    async def send(self, device: EchonetDevice, frame: EchonetFrame) -> None:
        """Sends a frame to a device.

        The frame is assigned the device's next transaction id. The send lock is held for the device's
        pacing interval after the write, so frames from all devices are spaced apart.

        Raises TransportFailure if the device's socket is closed or the write fails.
        """
        async with self._send_lock:
            socket_binding = self._device_bindings.get(device)
            if socket_binding is None:
                raise TransportFailure(f"No socket open to {device}")
            frame.tid = device.next_tid()
            socket_binding.sendto(frame.encode())
            logger.debug(f"Send: {device.addr} {frame}")
            await self._sleep(self.send_interval(device))

    async def send_announce(self) -> None:
        """Multicasts a node profile request for the instance list, asking every node to identify itself."""
        frame = EchonetFrame(seoj=EOJ_NODE_PROFILE, deoj=EOJ_NODE_PROFILE, esv=ESV_GET)
        frame.add_property(EPC_NODE_INS_LIST)
        async with self._send_lock:
            frame.tid = self._announce_tid
            self._announce_tid = (self._announce_tid + 1) & 0xffff
            socket_binding = self.multicast_binding
            if socket_binding is None:
                raise TransportFailure("No multicast socket is open")
            socket_binding.sendto(frame.encode(), (self.multicast_address, self.port))
            logger.debug(f"Send: {self.multicast_address} {frame}")
            await self._sleep(ANNOUNCE_SEND_INTERVAL)
