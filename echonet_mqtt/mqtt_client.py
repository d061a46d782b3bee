#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
MqttClient -- the pub/sub side of the bridge, built on aiomqtt. It:

  1. Connects to an MQTT broker, and reconnects (resubscribing) whenever the connection drops
  2. Publishes state topics, retained by default
  3. Queues every received message as a (topic, payload) tuple for the bridge to consume
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import aiomqtt

from .internal_types import *
from .pkg_logging import logger
from .exceptions import PubSubError

MAX_QUEUE_SIZE = 32

DEFAULT_MQTT_PORT = 1883

DEFAULT_RECONNECT_DELAY = 5.0

InboundMessage = Tuple[str, bytes]
"""A received (topic, payload) pair"""

class PubSubClient(ABC):
    """The interface the bridge needs from a publish/subscribe transport."""

    messages: asyncio.Queue[InboundMessage]
    """Messages received on subscribed topics"""

    def __init__(self, max_queue_size: int=MAX_QUEUE_SIZE):
        self.messages = asyncio.Queue(max_queue_size)

    def on_message(self, topic: str, payload: bytes) -> None:
        try:
            self.messages.put_nowait((topic, payload))
        except asyncio.QueueFull:
            logger.warning(f"Queue full, dropping message on {topic}: {payload!r}")

    @abstractmethod
    async def subscribe(self, topic: str) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def publish(self, topic: str, payload: str, retain: bool=True) -> None:
        """Publishes a message. Raises PubSubError."""
        raise NotImplementedError()

class MqttClient(PubSubClient, AsyncContextManager['MqttClient']):
    hostname: str
    port: int
    username: Optional[str]
    password: Optional[str]
    identifier: Optional[str]
    reconnect_delay: float

    client: Optional[aiomqtt.Client] = None

    subscriptions: List[str]
    """Topics to (re)subscribe to each time a connection is established"""

    receiver_task: Optional[asyncio.Task[None]] = None

    _connected: bool = False

    def __init__(
            self,
            hostname: str,
            port: int=DEFAULT_MQTT_PORT,
            username: Optional[str]=None,
            password: Optional[str]=None,
            identifier: Optional[str]=None,
            reconnect_delay: float=DEFAULT_RECONNECT_DELAY,
            max_queue_size: int=MAX_QUEUE_SIZE,
          ):
        super().__init__(max_queue_size=max_queue_size)
        self.hostname = hostname
        self.port = port
        self.username = username
        self.password = password
        self.identifier = identifier
        self.reconnect_delay = reconnect_delay
        self.subscriptions = []

    @property
    def connected(self) -> bool:
        return self._connected

    async def _connect(self) -> None:
        client = aiomqtt.Client(
            hostname=self.hostname,
            port=self.port,
            username=self.username,
            password=self.password,
            identifier=self.identifier,
          )
        try:
            await client.__aenter__()
        except aiomqtt.MqttError as e:
            raise PubSubError(f"Connection to MQTT broker {self.hostname}:{self.port} failed: {e}") from e
        self.client = client
        self._connected = True
        logger.info(f"Connected to MQTT broker: {self.hostname} port: {self.port}")
        for topic in self.subscriptions:
            await client.subscribe(topic, qos=0)
            logger.debug(f"Subscribed to {topic}")

    async def _disconnect(self) -> None:
        client = self.client
        self.client = None
        self._connected = False
        if not client is None:
            try:
                await client.__aexit__(None, None, None)
            except aiomqtt.MqttError as e:
                logger.debug(f"Error disconnecting from MQTT broker: {e}")

    async def start(self) -> None:
        """Connects to the broker. A failure to connect the first time raises PubSubError; later
           disconnections are retried indefinitely."""
        await self._connect()
        self.receiver_task = asyncio.create_task(self._run_receiver_task())

    async def stop(self) -> None:
        if not self.receiver_task is None:
            self.receiver_task.cancel()
            try:
                await self.receiver_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Exception while cancelling MQTT receiver task: {e}")
            self.receiver_task = None
        await self._disconnect()

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

    async def _run_receiver_task(self) -> None:
        logger.debug("MQTT receiver task starting")
        try:
            while True:
                if self.client is None:
                    try:
                        await self._connect()
                    except (PubSubError, aiomqtt.MqttError) as e:
                        logger.info(f"{e}; sleeping for {self.reconnect_delay} seconds before re-trying")
                        await self._disconnect()
                        await asyncio.sleep(self.reconnect_delay)
                        continue
                client = self.client
                assert not client is None
                try:
                    async for message in client.messages:
                        payload = message.payload
                        if isinstance(payload, str):
                            payload = payload.encode('utf-8')
                        elif not isinstance(payload, (bytes, bytearray)):
                            payload = b'' if payload is None else str(payload).encode('utf-8')
                        logger.debug(f"recv_mqtt: {message.topic.value} {payload!r}")
                        self.on_message(message.topic.value, bytes(payload))
                except aiomqtt.MqttError as e:
                    logger.warning(f"Lost connection to MQTT broker: {e}")
                await self._disconnect()
                await asyncio.sleep(self.reconnect_delay)
        except asyncio.CancelledError:
            logger.debug("MQTT receiver task cancelled; exiting")
            raise

    async def subscribe(self, topic: str) -> None:
        if not topic in self.subscriptions:
            self.subscriptions.append(topic)
        client = self.client
        if not client is None:
            try:
                await client.subscribe(topic, qos=0)
            except aiomqtt.MqttError as e:
                raise PubSubError(f"Subscribe to {topic} failed: {e}") from e
            logger.debug(f"Subscribed to {topic}")

    async def publish(self, topic: str, payload: str, retain: bool=True) -> None:
        client = self.client
        if client is None:
            raise PubSubError(f"Not connected to MQTT broker; cannot publish {topic}")
        try:
            await client.publish(topic, payload, qos=0, retain=retain)
        except aiomqtt.MqttError as e:
            raise PubSubError(f"Publish to {topic} failed: {e}") from e
