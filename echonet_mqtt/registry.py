#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
DeviceRegistry -- the ordered set of configured EchonetDevices.

Devices are looked up by (kind, name) when handling topic commands, and by
(source IP address, source object code) when handling received frames. Both keys
must be unique, so registration rejects a device that would make either lookup
ambiguous. A device configured by host name only gets a source key once the
transport has resolved its address.
"""

from __future__ import annotations

from .internal_types import *
from .pkg_logging import logger
from .exceptions import DuplicateDevice, UnknownDevice
from .device import EchonetDevice, DeviceConfig, DeviceKind, DeviceEventSink

class DeviceRegistry:
    _devices: List[EchonetDevice]
    _by_name: Dict[Tuple[DeviceKind, str], EchonetDevice]
    _by_source: Dict[Tuple[str, int], EchonetDevice]

    def __init__(self, devices: Optional[Iterable[EchonetDevice]]=None):
        self._devices = []
        self._by_name = {}
        self._by_source = {}
        if not devices is None:
            for device in devices:
                self.add(device)

    def _check_source(self, device: EchonetDevice, ip_address: str) -> None:
        other = self._by_source.get((ip_address, device.eoj))
        if not other is None and not other is device:
            raise DuplicateDevice(
                f"Device {device.kind.value}/{device.name} has the same address and EOJ "
                f"({ip_address}:{device.eoj:06x}) as {other}")

    def add(self, device: EchonetDevice) -> EchonetDevice:
        """Registers a device. Raises DuplicateDevice if its (kind, name) or (address, eoj) is already in use."""
        name_key = (device.kind, device.name)
        if name_key in self._by_name:
            raise DuplicateDevice(f"Duplicate device {device.kind.value}/{device.name}")
        if not device.ip_address is None:
            self._check_source(device, device.ip_address)
            self._by_source[(device.ip_address, device.eoj)] = device
        self._devices.append(device)
        self._by_name[name_key] = device
        logger.info(f"added {device.addr}:{device.eoj:06x} {device.kind.value} {device.name}")
        return device

    def add_config(self, config: DeviceConfig, event_sink: Optional[DeviceEventSink]=None) -> EchonetDevice:
        """Creates a device from its configuration and registers it."""
        return self.add(EchonetDevice(config, event_sink=event_sink))

    def set_source_address(self, device: EchonetDevice, ip_address: str) -> None:
        """Records the numeric address a registered device sends from, replacing any previous one.
           Raises DuplicateDevice if another device already sends from that address with the same EOJ."""
        self._check_source(device, ip_address)
        old_address = device.ip_address
        if old_address == ip_address:
            return
        if not old_address is None and self._by_source.get((old_address, device.eoj)) is device:
            del self._by_source[(old_address, device.eoj)]
        device.ip_address = ip_address
        self._by_source[(ip_address, device.eoj)] = device
        logger.info(f"{device.addr} resolved to {ip_address}")

    def find(self, kind: Union[str, DeviceKind], name: str) -> Optional[EchonetDevice]:
        """Returns the device with the given kind and name, or None."""
        if isinstance(kind, str):
            try:
                kind = DeviceKind(kind)
            except ValueError:
                return None
        return self._by_name.get((kind, name))

    def lookup(self, kind: Union[str, DeviceKind], name: str) -> EchonetDevice:
        """Like find(), but raises UnknownDevice if there is no match."""
        device = self.find(kind, name)
        if device is None:
            kind_str = kind.value if isinstance(kind, DeviceKind) else kind
            raise UnknownDevice(f"Unknown device {kind_str}/{name}")
        return device

    def find_by_source(self, ip_address: str, eoj: int) -> Optional[EchonetDevice]:
        """Returns the device that sends frames from numeric IP address `ip_address` with SEOJ `eoj`, or None."""
        return self._by_source.get((ip_address, eoj))

    def __iter__(self) -> Iterator[EchonetDevice]:
        return iter(list(self._devices))

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device: object) -> bool:
        return device in self._devices
