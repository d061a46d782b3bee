# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Package echonet_mqtt bridges ECHONET Lite home appliances to an MQTT broker.

ECHONET Lite is a UDP protocol (port 3610, multicast group 224.0.23.0) used by
many Japanese home appliances. Each appliance exposes one or more objects
identified by a 3-byte object code (EOJ), and each object exposes numbered
properties (EPCs) that are read with Get requests, written with Set requests,
and announced by the appliance with INF notifications.

This package models two object classes, lights and home air conditioners. It
keeps a cached state for each configured device, publishes that state to
"<kind>/<name>/<attribute>" topics, and turns messages on
"<kind>/<name>/<attribute>/set" topics into Set requests.
"""

from .version import __version__

from .internal_types import Jsonable, JsonableDict

from .exceptions import (
    EchonetError,
    MalformedFrame,
    UnknownDevice,
    InvalidArgument,
    OutOfRange,
    DuplicateDevice,
    UnsupportedDeviceKind,
    TransportFailure,
    ConfigError,
    DeviceDenied,
    PubSubError,
  )

from .echonet_frame import EchonetFrame, EchonetProperty, decode_property_map, esv_name
from .device import (
    EchonetDevice,
    DeviceConfig,
    DeviceKind,
    DeviceState,
    DeviceEvent,
    DeviceChangedEvent,
    DeviceDeniedEvent,
  )
from .registry import DeviceRegistry
from .echonet_socket import EchonetSocket, EchonetSocketBinding
from .mqtt_client import PubSubClient, MqttClient
from .topics import TopicCommand
from .bridge import EchonetBridge
from .config import BridgeConfig, parse_broker_url
from .util import get_multicast_interfaces
from .constants import ECHONET_MULTICAST_ADDRESS, ECHONET_PORT

__all__ = [
    '__version__',
    'Jsonable', 'JsonableDict',
    'EchonetError', 'MalformedFrame', 'UnknownDevice', 'InvalidArgument', 'OutOfRange',
    'DuplicateDevice', 'UnsupportedDeviceKind', 'TransportFailure', 'ConfigError',
    'DeviceDenied', 'PubSubError',
    'EchonetFrame', 'EchonetProperty', 'decode_property_map', 'esv_name',
    'EchonetDevice', 'DeviceConfig', 'DeviceKind', 'DeviceState',
    'DeviceEvent', 'DeviceChangedEvent', 'DeviceDeniedEvent',
    'DeviceRegistry',
    'EchonetSocket', 'EchonetSocketBinding',
    'PubSubClient', 'MqttClient',
    'TopicCommand',
    'EchonetBridge',
    'BridgeConfig', 'parse_broker_url',
    'get_multicast_interfaces',
    'ECHONET_MULTICAST_ADDRESS', 'ECHONET_PORT',
]
