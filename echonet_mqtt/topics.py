#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Topic names published and subscribed by the bridge, and parsing of inbound command messages.

    <kind>/<name>/<attribute>            device state, e.g. aircon/living/mode
    sensor/<kind>/<name>/<attribute>     read-only measurements, e.g. sensor/aircon/living/temperature
    <kind>/<name>/<attribute>/set        commands, e.g. light/porch/power/set
    <kind>/<name>/error                  rejected commands
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from .internal_types import *
from .exceptions import InvalidArgument
from .device import EchonetDevice, DeviceKind, DeviceState

SET_SUFFIX = "set"
SENSOR_PREFIX = "sensor"
ERROR_ATTRIBUTE = "error"

WRITABLE_ATTRIBUTES: Dict[DeviceKind, Tuple[str, ...]] = {
    DeviceKind.LIGHT: ("power",),
    DeviceKind.AIRCON: ("power", "mode", "temperature", "humidity", "fan", "swing"),
}

def device_topic(device: EchonetDevice, attribute: str) -> str:
    return f"{device.kind.value}/{device.name}/{attribute}"

def sensor_topic(device: EchonetDevice, attribute: str) -> str:
    return f"{SENSOR_PREFIX}/{device.kind.value}/{device.name}/{attribute}"

def error_topic(device: EchonetDevice) -> str:
    return device_topic(device, ERROR_ATTRIBUTE)

def command_topics(device: EchonetDevice) -> List[str]:
    """Returns the topics on which commands for a device are accepted."""
    return [ f"{device_topic(device, attribute)}/{SET_SUFFIX}" for attribute in WRITABLE_ATTRIBUTES[device.kind] ]

def state_messages(device: EchonetDevice, state: DeviceState) -> List[Tuple[str, str]]:
    """Returns the (topic, payload) pairs that report a device state."""
    if device.kind == DeviceKind.LIGHT:
        return [ (device_topic(device, "power"), state.power_str) ]
    messages = [
        (device_topic(device, "power"), state.power_str),
        (device_topic(device, "mode"), state.mode),
        (device_topic(device, "temperature"), str(state.target_temperature)),
        (sensor_topic(device, "temperature"), str(state.room_temperature)),
        (sensor_topic(device, "outtemp"), str(state.outdoor_temperature)),
        (device_topic(device, "humidity"), str(state.target_humidity)),
        (sensor_topic(device, "humidity"), str(state.room_humidity)),
        (device_topic(device, "fan"), state.fan),
        (device_topic(device, "swing"), state.swing),
      ]
    if not state.watt is None:
        messages.append((sensor_topic(device, "watt"), str(state.watt)))
    return messages

def parse_number(payload: str) -> int:
    """Parses a decimal payload such as "24" or "24.5", truncating toward zero. Raises InvalidArgument."""
    try:
        value = float(payload)
    except ValueError:
        raise InvalidArgument(f"invalid number: {payload!r}") from None
    if math.isnan(value) or math.isinf(value):
        raise InvalidArgument(f"invalid number: {payload!r}")
    return int(value)

@dataclass(frozen=True)
class TopicCommand:
    """An inbound command message, split into its topic parts. Built once, by parse(), when a message
       arrives."""

    kind: str
    name: str
    attribute: str
    payload: str

    @property
    def topic(self) -> str:
        return f"{self.kind}/{self.name}/{self.attribute}/{SET_SUFFIX}"

    @classmethod
    def parse(cls, topic: str, payload: Union[str, bytes, bytearray]) -> TopicCommand:
        """Parses a "<kind>/<name>/<attribute>[/set]" topic and its payload. Raises InvalidArgument."""
        parts = topic.split('/')
        if len(parts) == 4 and parts[3] == SET_SUFFIX:
            parts = parts[:3]
        if len(parts) != 3 or any(part == '' for part in parts):
            raise InvalidArgument(f"invalid topic: {topic}")
        if isinstance(payload, (bytes, bytearray)):
            try:
                payload = bytes(payload).decode('utf-8')
            except UnicodeDecodeError:
                raise InvalidArgument(f"invalid payload on {topic}: {payload!r}") from None
        return cls(kind=parts[0], name=parts[1], attribute=parts[2], payload=payload.strip())
