#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
EchonetBridge -- the control loop that connects ECHONET Lite devices to a pub/sub broker. It:

  1. Publishes the state of a device each time the device processes a response or notification
  2. Translates "<kind>/<name>/<attribute>/set" messages into device commands
  3. Polls every device for its full state periodically (every 5 minutes by default)
  4. Re-queries the devices touched by recent commands once commands stop arriving for a short
     while (1 second by default), so a burst of commands costs one confirming Get per device

  All device commands and queries are issued from the single control loop task. A failure affecting
  one device or one command is logged (and, for rejected commands, published on the device's error
  topic) without affecting the others.
"""

from __future__ import annotations

import asyncio
from collections import deque

from .internal_types import *
from .pkg_logging import logger
from .exceptions import InvalidArgument, TransportFailure, UnsupportedDeviceKind, PubSubError
from .echonet_frame import EchonetFrame
from .device import EchonetDevice, DeviceEvent, DeviceChangedEvent, DeviceDeniedEvent
from .registry import DeviceRegistry
from .echonet_socket import EchonetSocket
from .mqtt_client import PubSubClient
from .topics import (
    TopicCommand,
    WRITABLE_ATTRIBUTES,
    command_topics,
    error_topic,
    parse_number,
    state_messages,
  )

DEFAULT_POLL_INTERVAL = 300.0
"""Seconds between full state polls of every device"""

DEFAULT_FLUSH_INTERVAL = 1.0
"""Seconds without further commands after which touched devices are re-queried"""

MAX_PENDING_ERRORS = 32
"""Denials waiting to be published beyond this number are dropped, oldest first"""

class EchonetBridge(AsyncContextManager['EchonetBridge']):
    registry: DeviceRegistry
    transport: EchonetSocket
    pubsub: PubSubClient

    poll_interval: float = DEFAULT_POLL_INTERVAL
    flush_interval: float = DEFAULT_FLUSH_INTERVAL

    retain: bool = True
    """Whether state topics are published as retained messages"""

    announce: bool = False
    """If True, a multicast instance list request is sent at startup"""

    pending_devices: Dict[EchonetDevice, None]
    """Devices whose state changed since it was last published, in order of first change. Each device
       appears once however many frames it sent; its state is read when it is published."""

    pending_errors: Deque[DeviceDeniedEvent]
    """Denials reported by devices, waiting to be published"""

    touched_devices: List[EchonetDevice]
    """Devices that received a command since the last flush, in order of first command"""

    loop_task: Optional[asyncio.Task[None]] = None

    _stop_requested: asyncio.Event
    _events_ready: asyncio.Event

    def __init__(
            self,
            registry: DeviceRegistry,
            transport: EchonetSocket,
            pubsub: PubSubClient,
            poll_interval: float=DEFAULT_POLL_INTERVAL,
            flush_interval: float=DEFAULT_FLUSH_INTERVAL,
            retain: bool=True,
            announce: bool=False,
            max_pending_errors: int=MAX_PENDING_ERRORS,
          ):
        self.registry = registry
        self.transport = transport
        self.pubsub = pubsub
        self.poll_interval = poll_interval
        self.flush_interval = flush_interval
        self.retain = retain
        self.announce = announce
        self.pending_devices = {}
        self.pending_errors = deque(maxlen=max_pending_errors)
        self.touched_devices = []
        self._stop_requested = asyncio.Event()
        self._events_ready = asyncio.Event()
        for device in registry:
            device.event_sink = self.on_device_event

    def on_device_event(self, event: DeviceEvent) -> None:
        """Event sink installed on every registered device. Never blocks."""
        if isinstance(event, DeviceChangedEvent):
            self.pending_devices[event.device] = None
        elif isinstance(event, DeviceDeniedEvent):
            if len(self.pending_errors) == self.pending_errors.maxlen:
                logger.warning(f"Too many unpublished errors, dropping {self.pending_errors[0]}")
            self.pending_errors.append(event)
        else:
            return
        self._events_ready.set()

    # ======================= Lifecycle

    async def start(self) -> None:
        for device in self.registry:
            for topic in command_topics(device):
                await self.pubsub.subscribe(topic)
        if self.announce:
            try:
                await self.transport.send_announce()
            except TransportFailure as e:
                logger.warning(f"Announce failed: {e}")
        for device in self.registry:
            await self.send_frame(device, device.query_property_maps())
        await self.poll_all()
        self._stop_requested.clear()
        self.loop_task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._stop_requested.set()
        await self.wait_for_done()

    async def wait_for_done(self) -> None:
        if not self.loop_task is None:
            await self.loop_task

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        if self.loop_task is None or self.loop_task.done():
            return False
        if exc is None:
            await self.stop()
        else:
            self.loop_task.cancel()
            try:
                await self.loop_task
            except asyncio.CancelledError:
                pass
        return False

    # ======================= Control loop

    async def run(self) -> None:
        """The control loop. Runs until stop() is called."""
        loop = asyncio.get_running_loop()
        next_poll = loop.time() + self.poll_interval
        next_flush: Optional[float] = None
        events_wait: Optional[asyncio.Task[Literal[True]]] = None
        message_get: Optional[asyncio.Task[Tuple[str, bytes]]] = None
        stop_wait = asyncio.create_task(self._stop_requested.wait())
        logger.debug("Bridge control loop starting")
        try:
            while not self._stop_requested.is_set():
                if next_flush is None and len(self.touched_devices) > 0:
                    # devices whose send failed are re-queried on the next flush
                    next_flush = loop.time() + self.flush_interval
                if events_wait is None:
                    events_wait = asyncio.create_task(self._events_ready.wait())
                if message_get is None:
                    message_get = asyncio.create_task(self.pubsub.messages.get())
                deadline = next_poll if next_flush is None else min(next_poll, next_flush)
                timeout = max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    { events_wait, message_get, stop_wait },
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED
                  )
                if stop_wait in done:
                    break
                if events_wait in done:
                    events_wait = None
                    await self.publish_pending()
                if message_get in done:
                    topic, payload = message_get.result()
                    message_get = None
                    if await self.handle_message(topic, payload):
                        next_flush = loop.time() + self.flush_interval
                now = loop.time()
                if not next_flush is None and now >= next_flush:
                    next_flush = None
                    await self.flush_touched()
                if now >= next_poll:
                    next_poll = now + self.poll_interval
                    await self.poll_all()
        except asyncio.CancelledError:
            logger.debug("Bridge control loop cancelled; exiting")
            raise
        finally:
            for task in (events_wait, message_get, stop_wait):
                if not task is None and not task.done():
                    task.cancel()
        logger.debug("Bridge control loop exiting")

    # ======================= Device events

    async def publish_pending(self) -> None:
        """Publishes the current state of every changed device, and every pending denial."""
        self._events_ready.clear()
        while len(self.pending_errors) > 0 or len(self.pending_devices) > 0:
            if len(self.pending_errors) > 0:
                event = self.pending_errors.popleft()
                await self.publish_error(event.device, str(event.error))
                continue
            device = next(iter(self.pending_devices))
            del self.pending_devices[device]
            await self.publish_state(device)

    async def publish_state(self, device: EchonetDevice) -> None:
        for topic, payload in state_messages(device, device.snapshot()):
            await self._publish(topic, payload, self.retain)

    async def _publish(self, topic: str, payload: str, retain: bool) -> None:
        try:
            await self.pubsub.publish(topic, payload, retain=retain)
        except PubSubError as e:
            logger.warning(f"{e}")

    async def publish_error(self, device: EchonetDevice, message: str) -> None:
        """Reports a rejected command on the device's error topic."""
        await self._publish(error_topic(device), message, False)

    # ======================= Commands

    def build_command(self, device: EchonetDevice, command: TopicCommand) -> Optional[EchonetFrame]:
        """Returns the frame that carries out a command, or None if nothing needs to be sent.

        Raises InvalidArgument (or OutOfRange) if the attribute or value is not accepted.
        """
        attribute = command.attribute
        if not attribute in WRITABLE_ATTRIBUTES[device.kind]:
            raise InvalidArgument(f"invalid attribute: {attribute}")
        payload = command.payload
        if attribute == "power":
            return device.set_power(payload.lower())
        if attribute == "mode":
            return device.set_mode(payload.lower())
        if attribute == "temperature":
            return device.set_target_temperature(parse_number(payload))
        if attribute == "humidity":
            return device.set_target_humidity(parse_number(payload))
        if attribute == "fan":
            return device.set_fan(payload.lower())
        assert attribute == "swing"
        return device.set_swing(payload.lower())

    async def handle_message(self, topic: str, payload: bytes) -> bool:
        """Carries out a command received from the broker. Returns True if a frame was sent."""
        logger.debug(f"recv_mqtt: {topic} {payload!r}")
        try:
            command = TopicCommand.parse(topic, payload)
        except InvalidArgument as e:
            logger.warning(f"Ignoring message: {e}")
            return False
        device = self.registry.find(command.kind, command.name)
        if device is None:
            logger.warning(f"Ignoring message for unknown device: {topic}")
            return False
        try:
            frame = self.build_command(device, command)
        except InvalidArgument as e:
            logger.warning(f"{device}: rejected {command.attribute}={command.payload!r}: {e}")
            await self.publish_error(device, f"{command.attribute}: {e}")
            return False
        if frame is None:
            return False
        await self.send_frame(device, frame)
        self.touch(device)
        return True

    def touch(self, device: EchonetDevice) -> None:
        if not device in self.touched_devices:
            self.touched_devices.append(device)

    async def flush_touched(self) -> None:
        """Sends one state query to each device touched since the last flush."""
        devices = self.touched_devices
        self.touched_devices = []
        for device in devices:
            await self.query_device(device)

    # ======================= Sending

    async def send_frame(self, device: EchonetDevice, frame: EchonetFrame) -> bool:
        """Sends a frame to a device. On a transport failure the device's socket is reopened and the
           device is marked for re-query; returns False."""
        try:
            await self.transport.send(device, frame)
            return True
        except TransportFailure as e:
            logger.error(f"{device}: {e}")
        try:
            await self.transport.reconnect(device)
        except TransportFailure as e:
            logger.error(f"{device}: reconnect failed: {e}")
        self.touch(device)
        return False

    async def query_device(self, device: EchonetDevice) -> bool:
        try:
            frame = device.query_state()
        except UnsupportedDeviceKind as e:
            logger.warning(f"{device}: {e}")
            return False
        return await self.send_frame(device, frame)

    async def poll_all(self) -> None:
        """Queries the full state of every registered device."""
        for device in self.registry:
            await self.query_device(device)
