#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
EchonetDevice -- the local model of one configured ECHONET Lite object (a light or an air conditioner):

  1. Builds the Set/Get frames that control and poll the device
  2. Caches the device state reported in Get_Res, SetGet_Res and INF frames
  3. Reports every state update (and every request the device denied) to an event sink

Frames are only built here; sending them, and assigning their transaction ids, is the job of
EchonetSocket.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from ipaddress import IPv4Address

from .internal_types import *
from .pkg_logging import logger
from .exceptions import InvalidArgument, OutOfRange, UnsupportedDeviceKind, DeviceDenied, ConfigError
from .echonet_frame import EchonetFrame, EchonetProperty, decode_property_map, esv_name
from .constants import (
    EOJ_NODE_PROFILE,
    ESV_SETI,
    ESV_GET,
    ESV_GET_RES,
    ESV_SETGET_RES,
    ESV_INF,
    EPC_POWER,
    EPC_WATT,
    EPC_INF_PROPMAP,
    EPC_SET_PROPMAP,
    EPC_GET_PROPMAP,
    EPC_FAN,
    EPC_SWING,
    EPC_MODE,
    EPC_TARGET_TEMP,
    EPC_TARGET_HUMIDITY,
    EPC_ROOM_HUMIDITY,
    EPC_ROOM_TEMP,
    EPC_OUTDOOR_TEMP,
    EPC_HUMIDIFY,
    EPC_HUMIDIFY_LEVEL,
    EDT_ON,
    EDT_OFF,
    EDT_AUTO,
    TARGET_TEMP_AUTO,
  )

POWER_OFF_OVERRIDES_MODE = True
"""If True, a device whose power is off reports mode "off" regardless of the last MODE value it sent.
   If False, the last known operating mode is retained while the device is off."""

INVALID_TEMPERATURE_FALLBACK = 20
"""Reported in place of a room/outdoor temperature outside [-127, 125] (0x7e "not measurable",
   0x7f overflow, 0x80 underflow). A placeholder; it is not defined by the protocol."""

MIN_VALID_TEMPERATURE = -127
MAX_VALID_TEMPERATURE = 125

MIN_TARGET_TEMPERATURE = 0
MAX_TARGET_TEMPERATURE = 50
MIN_TARGET_HUMIDITY = 0
MAX_TARGET_HUMIDITY = 100

STATE_ESVS = frozenset((ESV_GET_RES, ESV_SETGET_RES, ESV_INF))
"""Service codes whose properties carry device state"""

MODES = ('off', 'auto', 'cool', 'heat', 'dry', 'fan', 'other')

MODE_EDT: Dict[str, int] = {
    'auto': EDT_AUTO,
    'cool': 0x42,
    'heat': 0x43,
    'dry': 0x44,
    'fan': 0x45,
}

EDT_MODE: Dict[int, str] = {
    0x41: 'auto',
    0x42: 'cool',
    0x43: 'heat',
    0x44: 'dry',
    0x45: 'fan',
    0x46: 'other',
}

FAN_EDT: Dict[str, int] = {
    'auto': EDT_AUTO,
    'low': 0x31,
    'medium': 0x33,
    'high': 0x35,
}

# Devices report eight fan levels; several map to the same name
EDT_FAN: Dict[int, str] = {
    EDT_AUTO: 'auto',
    0x31: 'low',
    0x32: 'low',
    0x33: 'medium',
    0x34: 'medium',
    0x35: 'high',
    0x36: 'high',
    0x37: 'high',
    0x38: 'high',
}
DEFAULT_FAN_NAME = 'auto'

SWING_EDT: Dict[str, int] = {
    'off': EDT_OFF,
    'ud': 0x41,
    'lr': 0x42,
    'on': 0x43,
}

EDT_SWING: Dict[int, str] = {
    EDT_OFF: 'off',
    0x41: 'ud',
    0x42: 'lr',
    0x43: 'on',
}
DEFAULT_SWING_NAME = 'off'

AIRCON_STATE_EPCS = (
    EPC_POWER,
    EPC_MODE,
    EPC_TARGET_TEMP,
    EPC_TARGET_HUMIDITY,
    EPC_ROOM_HUMIDITY,
    EPC_ROOM_TEMP,
    EPC_OUTDOOR_TEMP,
    EPC_FAN,
    EPC_SWING,
  )

LIGHT_STATE_EPCS = (EPC_POWER,)

class DeviceKind(Enum):
    """The kinds of device this package knows how to control. Values are used in topics and config files."""
    LIGHT = "light"
    AIRCON = "aircon"

def parse_device_kind(value: Union[str, DeviceKind]) -> DeviceKind:
    """Converts a config/topic kind string to a DeviceKind. Raises UnsupportedDeviceKind."""
    if isinstance(value, DeviceKind):
        return value
    try:
        return DeviceKind(value)
    except ValueError:
        raise UnsupportedDeviceKind(f"Unsupported device type: {value!r}") from None

def parse_eoj(value: Union[str, int]) -> int:
    """Parses an object code given either as an int or as a hex string such as "013001"."""
    if isinstance(value, bool):
        raise ConfigError(f"Invalid EOJ: {value!r}")
    if isinstance(value, int):
        eoj = value
    elif isinstance(value, str):
        try:
            eoj = int(value, 16)
        except ValueError:
            raise ConfigError(f"Invalid EOJ: {value!r}") from None
    else:
        raise ConfigError(f"Invalid EOJ: {value!r}")
    if not 0 <= eoj <= 0xffffff:
        raise ConfigError(f"EOJ out of 24-bit range: {value!r}")
    return eoj

@dataclass(frozen=True)
class DeviceConfig:
    """Static description of a device, as found in the configuration file."""

    kind: DeviceKind
    name: str
    addr: str
    eoj: int

    @classmethod
    def from_json(cls, obj: Mapping[str, Any]) -> DeviceConfig:
        """Builds a DeviceConfig from a {"type", "name", "addr", "eoj"} object."""
        try:
            kind = parse_device_kind(obj['type'])
            name = obj['name']
            addr = obj['addr']
            eoj = parse_eoj(obj['eoj'])
        except KeyError as e:
            raise ConfigError(f"Device entry is missing required key {e}: {dict(obj)}") from None
        if not isinstance(name, str) or name == '' or '/' in name:
            raise ConfigError(f"Invalid device name: {name!r}")
        if not isinstance(addr, str) or addr == '':
            raise ConfigError(f"Invalid device address: {addr!r}")
        return cls(kind=kind, name=name, addr=addr, eoj=eoj)

    def __str__(self) -> str:
        return f"{self.addr}:{self.eoj:06x} {self.kind.value} {self.name}"

@dataclass(frozen=True)
class DeviceState:
    """An immutable copy of a device's state, as it should be reported externally."""

    power: bool = False
    mode: str = 'off'
    target_temperature: int = 0
    target_humidity: int = 0
    room_humidity: int = 0
    room_temperature: int = 0
    outdoor_temperature: int = 0
    fan: str = DEFAULT_FAN_NAME
    swing: str = DEFAULT_SWING_NAME
    watt: Optional[int] = None

    @property
    def power_str(self) -> str:
        return "on" if self.power else "off"

class DeviceEvent:
    """Base class for events reported by an EchonetDevice to its event sink."""

    device: EchonetDevice

    def __init__(self, device: EchonetDevice):
        self.device = device

class DeviceChangedEvent(DeviceEvent):
    """The device processed a state-bearing frame. `state` is a snapshot taken right after."""

    state: DeviceState

    def __init__(self, device: EchonetDevice, state: DeviceState):
        super().__init__(device)
        self.state = state

    def __str__(self) -> str:
        return f"DeviceChangedEvent({self.device}: {self.state})"

class DeviceDeniedEvent(DeviceEvent):
    """The device rejected a request with an SNA response."""

    error: DeviceDenied

    def __init__(self, device: EchonetDevice, error: DeviceDenied):
        super().__init__(device)
        self.error = error

    def __str__(self) -> str:
        return f"DeviceDeniedEvent({self.device}: {self.error})"

DeviceEventSink = Callable[[DeviceEvent], None]
"""A callback that receives DeviceEvents. It is called from the receive path and must not block."""

def numeric_ipv4_address(addr: str) -> Optional[str]:
    """Returns addr in canonical dotted-quad form if it is a numeric IPv4 address, else None."""
    try:
        return str(IPv4Address(addr))
    except ValueError:
        return None

def _signed_temperature(value: int) -> int:
    if value >= 0x80:
        value -= 0x100
    if value < MIN_VALID_TEMPERATURE or value > MAX_VALID_TEMPERATURE:
        return INVALID_TEMPERATURE_FALLBACK
    return value

class EchonetDevice:
    """A configured ECHONET Lite object, its transaction counter, and its cached state.

    Cached fields hold raw protocol values and are guarded by a per-device lock; use snapshot() or the
    read-only properties to read them.
    """

    config: DeviceConfig

    event_sink: Optional[DeviceEventSink] = None
    """Receives a DeviceChangedEvent for every processed state-bearing frame"""

    get_property_map: List[int]
    """EPCs the device reports as readable (from EPC 0x9f), or [] if not yet known"""

    set_property_map: List[int]
    announce_property_map: List[int]

    ip_address: Optional[str] = None
    """The numeric IPv4 address the device sends from. Equal to addr when addr is numeric; otherwise
       None until the transport resolves the host name."""

    _lock: threading.Lock
    _tid: int = 1

    _power: bool = False
    _mode: str = 'off'
    _target_temp: int = 0
    _target_humidity: int = 0
    _room_humidity: int = 0
    _room_temp: int = 0
    _outdoor_temp: int = 0
    _fan: int = 0
    _swing: int = 0
    _watt: Optional[int] = None

    def __init__(self, config: DeviceConfig, event_sink: Optional[DeviceEventSink]=None):
        self.config = config
        self.event_sink = event_sink
        self.get_property_map = []
        self.set_property_map = []
        self.announce_property_map = []
        self.ip_address = numeric_ipv4_address(config.addr)
        self._lock = threading.Lock()

    @property
    def kind(self) -> DeviceKind:
        return self.config.kind

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def addr(self) -> str:
        return self.config.addr

    @property
    def eoj(self) -> int:
        return self.config.eoj

    def __str__(self) -> str:
        return f"EchonetDevice({self.config})"

    def __repr__(self) -> str:
        return str(self)

    # ======================= Transaction ids

    @property
    def tid(self) -> int:
        """The transaction id that will be assigned to the next frame sent to this device"""
        return self._tid

    def next_tid(self) -> int:
        """Returns the next transaction id and advances the counter, wrapping from 0xffff to 0."""
        with self._lock:
            tid = self._tid
            self._tid = (tid + 1) & 0xffff
        return tid

    # ======================= Frame builders

    def _new_frame(self, esv: int) -> EchonetFrame:
        return EchonetFrame(seoj=EOJ_NODE_PROFILE, deoj=self.eoj, esv=esv)

    def set_power(self, power: Union[str, bool]) -> EchonetFrame:
        if power is True or power == 'on':
            edt = EDT_ON
        elif power is False or power == 'off':
            edt = EDT_OFF
        else:
            raise InvalidArgument(f"invalid power: {power!r}")
        frame = self._new_frame(ESV_SETI)
        frame.add_property(EPC_POWER, edt)
        return frame

    def set_mode(self, mode: str) -> EchonetFrame:
        if mode == 'off':
            frame = self._new_frame(ESV_SETI)
            frame.add_property(EPC_POWER, EDT_OFF)
            return frame
        mode_edt = MODE_EDT.get(mode)
        if mode_edt is None:
            raise InvalidArgument(f"invalid mode: {mode!r}")
        frame = self._new_frame(ESV_SETI)
        frame.add_property(EPC_POWER, EDT_ON)
        frame.add_property(EPC_MODE, mode_edt)
        if mode == 'heat':
            frame.add_property(EPC_HUMIDIFY, EDT_AUTO)
            frame.add_property(EPC_HUMIDIFY_LEVEL, EDT_AUTO)
        return frame

    def set_fan(self, fan: str) -> EchonetFrame:
        edt = FAN_EDT.get(fan)
        if edt is None:
            raise InvalidArgument(f"invalid fan: {fan!r}")
        frame = self._new_frame(ESV_SETI)
        frame.add_property(EPC_FAN, edt)
        return frame

    def set_swing(self, swing: str) -> EchonetFrame:
        edt = SWING_EDT.get(swing)
        if edt is None:
            raise InvalidArgument(f"invalid swing: {swing!r}")
        frame = self._new_frame(ESV_SETI)
        frame.add_property(EPC_SWING, edt)
        return frame

    def set_target_temperature(self, temp: int) -> Optional[EchonetFrame]:
        """Builds a frame setting the target temperature.

        Raises OutOfRange unless 0 <= temp <= 50. Returns None, and nothing should be sent, while the
        device reports an automatic target temperature (0xfd); it does not accept explicit targets then.
        """
        if temp < MIN_TARGET_TEMPERATURE or temp > MAX_TARGET_TEMPERATURE:
            raise OutOfRange(f"invalid temperature {temp}")
        with self._lock:
            target_is_auto = self._target_temp == TARGET_TEMP_AUTO
        if target_is_auto:
            logger.debug(f"{self}: target temperature is automatic; ignoring request for {temp}")
            return None
        frame = self._new_frame(ESV_SETI)
        frame.add_property(EPC_TARGET_TEMP, temp)
        return frame

    def set_target_humidity(self, humidity: int) -> EchonetFrame:
        if humidity < MIN_TARGET_HUMIDITY or humidity > MAX_TARGET_HUMIDITY:
            raise OutOfRange(f"invalid humidity {humidity}")
        frame = self._new_frame(ESV_SETI)
        frame.add_property(EPC_TARGET_HUMIDITY, humidity)
        return frame

    def query_state(self) -> EchonetFrame:
        """Builds a Get frame for every property that is published for this kind of device."""
        frame = self._new_frame(ESV_GET)
        if self.kind == DeviceKind.AIRCON:
            for epc in AIRCON_STATE_EPCS:
                frame.add_property(epc)
            if EPC_WATT in self.get_property_map:
                frame.add_property(EPC_WATT)
        elif self.kind == DeviceKind.LIGHT:
            for epc in LIGHT_STATE_EPCS:
                frame.add_property(epc)
        else:
            raise UnsupportedDeviceKind(f"invalid type: {self.kind}")
        return frame

    def query_property_maps(self) -> EchonetFrame:
        """Builds a Get frame for the announce, set and get property maps."""
        frame = self._new_frame(ESV_GET)
        frame.add_property(EPC_INF_PROPMAP)
        frame.add_property(EPC_SET_PROPMAP)
        frame.add_property(EPC_GET_PROPMAP)
        return frame

    # ======================= Response handling

    def _emit(self, event: DeviceEvent) -> None:
        if not self.event_sink is None:
            self.event_sink(event)

    def _apply_property(self, prop: EchonetProperty) -> None:
        if prop.pdc == 0:
            return
        epc = prop.epc
        value = prop.edt[0]
        if epc == EPC_POWER:
            self._power = value == EDT_ON
        elif epc == EPC_MODE:
            # Unknown mode codes leave the previous mode in place
            mode = EDT_MODE.get(value)
            if not mode is None:
                self._mode = mode
        elif epc == EPC_TARGET_TEMP:
            self._target_temp = value
        elif epc == EPC_ROOM_TEMP:
            self._room_temp = _signed_temperature(value)
        elif epc == EPC_OUTDOOR_TEMP:
            self._outdoor_temp = _signed_temperature(value)
        elif epc == EPC_ROOM_HUMIDITY:
            self._room_humidity = value
        elif epc == EPC_TARGET_HUMIDITY:
            self._target_humidity = value
        elif epc == EPC_FAN:
            self._fan = value
        elif epc == EPC_SWING:
            self._swing = value
        elif epc == EPC_WATT:
            if prop.pdc >= 2:
                self._watt = (prop.edt[0] << 8) | prop.edt[1]
        elif epc == EPC_GET_PROPMAP:
            self.get_property_map = decode_property_map(prop)
        elif epc == EPC_SET_PROPMAP:
            self.set_property_map = decode_property_map(prop)
        elif epc == EPC_INF_PROPMAP:
            self.announce_property_map = decode_property_map(prop)

    def handle_response(self, frame: EchonetFrame) -> bool:
        """Updates cached state from a frame sent by this device.

        Only Get_Res, SetGet_Res and INF frames change state; each of them results in exactly one
        DeviceChangedEvent. An SNA frame results in a DeviceDeniedEvent and leaves the state alone.
        Any other frame is ignored.

        Returns True if the cached state was updated.
        """
        if frame.is_denied:
            error = DeviceDenied(frame.esv, frame.epcs)
            logger.warning(f"{self}: {esv_name(frame.esv)}: {error}")
            self._emit(DeviceDeniedEvent(self, error))
            return False
        if not frame.esv in STATE_ESVS:
            return False
        with self._lock:
            for prop in frame.props:
                self._apply_property(prop)
            if POWER_OFF_OVERRIDES_MODE and not self._power:
                self._mode = 'off'
            state = self._snapshot_locked()
        self._emit(DeviceChangedEvent(self, state))
        return True

    # ======================= State access

    def _snapshot_locked(self) -> DeviceState:
        target_temp = self._target_temp
        if target_temp == TARGET_TEMP_AUTO:
            target_temp = self._room_temp
        return DeviceState(
            power=self._power,
            mode=self._mode,
            target_temperature=target_temp,
            target_humidity=self._target_humidity,
            room_humidity=self._room_humidity,
            room_temperature=self._room_temp,
            outdoor_temperature=self._outdoor_temp,
            fan=EDT_FAN.get(self._fan, DEFAULT_FAN_NAME),
            swing=EDT_SWING.get(self._swing, DEFAULT_SWING_NAME),
            watt=self._watt,
          )

    def snapshot(self) -> DeviceState:
        with self._lock:
            return self._snapshot_locked()

    @property
    def power(self) -> bool:
        return self.snapshot().power

    @property
    def mode(self) -> str:
        return self.snapshot().mode

    @property
    def fan(self) -> str:
        return self.snapshot().fan

    @property
    def swing(self) -> str:
        return self.snapshot().swing

    @property
    def target_temperature(self) -> int:
        """The target temperature, or the room temperature while the target is automatic"""
        return self.snapshot().target_temperature

    @property
    def raw_target_temperature(self) -> int:
        """The cached target temperature byte, which may be the automatic sentinel 0xfd"""
        with self._lock:
            return self._target_temp

    @property
    def target_humidity(self) -> int:
        return self.snapshot().target_humidity

    @property
    def room_humidity(self) -> int:
        return self.snapshot().room_humidity

    @property
    def room_temperature(self) -> int:
        return self.snapshot().room_temperature

    @property
    def outdoor_temperature(self) -> int:
        return self.snapshot().outdoor_temperature

    @property
    def watt(self) -> Optional[int]:
        return self.snapshot().watt
