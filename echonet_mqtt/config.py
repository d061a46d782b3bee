#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
The bridge configuration file. A JSON object such as:

    {
      "broker": "tcp://192.168.1.10:1883",
      "list": [
        { "type": "aircon", "name": "living", "addr": "192.168.1.50", "eoj": "013001" },
        { "type": "light", "name": "porch", "addr": "192.168.1.51", "eoj": "029101" }
      ],
      "poll_interval": 300,
      "announce": false
    }

Only "broker" and "list" are required.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from .internal_types import *
from .exceptions import ConfigError
from .device import DeviceConfig
from .echonet_socket import DEFAULT_UNICAST_BIND_ADDRESS
from .mqtt_client import DEFAULT_MQTT_PORT
from .bridge import DEFAULT_POLL_INTERVAL, DEFAULT_FLUSH_INTERVAL

BROKER_SCHEMES = ('tcp', 'mqtt')

def parse_broker_url(url: str) -> Tuple[str, int]:
    """Converts "tcp://host:port", "mqtt://host:port" or "host[:port]" into (host, port).
       The port defaults to 1883. Raises ConfigError."""
    if not isinstance(url, str) or url.strip() == '':
        raise ConfigError(f"Invalid broker URL: {url!r}")
    url = url.strip()
    if not '://' in url:
        url = f"tcp://{url}"
    parts = urlsplit(url)
    if not parts.scheme in BROKER_SCHEMES:
        raise ConfigError(f"Unsupported broker URL scheme {parts.scheme!r} in {url!r}")
    try:
        host = parts.hostname
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"Invalid broker URL {url!r}: {e}") from None
    if host is None or host == '':
        raise ConfigError(f"Broker URL has no host: {url!r}")
    return (host, DEFAULT_MQTT_PORT if port is None else port)

def _get_typed(obj: Mapping[str, Any], key: str, types: Union[type, Tuple[type, ...]], default: Any) -> Any:
    value = obj.get(key, default)
    if value is None:
        return default
    # bool is a subclass of int; do not accept it where a number is expected
    if isinstance(value, bool) and not bool in (types if isinstance(types, tuple) else (types,)):
        raise ConfigError(f"Config key {key!r} has invalid value {value!r}")
    if not isinstance(value, types):
        raise ConfigError(f"Config key {key!r} has invalid value {value!r}")
    return value

@dataclass
class BridgeConfig:
    broker_host: str
    broker_port: int = DEFAULT_MQTT_PORT
    devices: List[DeviceConfig] = field(default_factory=list)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    flush_interval: float = DEFAULT_FLUSH_INTERVAL
    announce: bool = False
    bind_address: Optional[str] = DEFAULT_UNICAST_BIND_ADDRESS
    interfaces: Optional[List[str]] = None
    """Local interface addresses on which to join the multicast group; None to discover them"""
    client_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    retain: bool = True

    @classmethod
    def from_json(cls, obj: Any) -> BridgeConfig:
        """Builds a BridgeConfig from a parsed JSON object. Raises ConfigError."""
        if not isinstance(obj, dict):
            raise ConfigError("Configuration must be a JSON object")
        if not 'broker' in obj:
            raise ConfigError("Configuration is missing required key 'broker'")
        broker_host, broker_port = parse_broker_url(obj['broker'])
        device_list = obj.get('list')
        if not isinstance(device_list, list):
            raise ConfigError("Configuration key 'list' must be a list of devices")
        devices: List[DeviceConfig] = []
        for entry in device_list:
            if not isinstance(entry, dict):
                raise ConfigError(f"Invalid device entry: {entry!r}")
            devices.append(DeviceConfig.from_json(entry))

        poll_interval = float(_get_typed(obj, 'poll_interval', (int, float), DEFAULT_POLL_INTERVAL))
        flush_interval = float(_get_typed(obj, 'flush_interval', (int, float), DEFAULT_FLUSH_INTERVAL))
        if poll_interval <= 0 or flush_interval <= 0:
            raise ConfigError("poll_interval and flush_interval must be positive")

        interfaces = _get_typed(obj, 'interfaces', list, None)
        if not interfaces is None:
            if not all(isinstance(x, str) for x in interfaces):
                raise ConfigError(f"Config key 'interfaces' must be a list of addresses: {interfaces!r}")
            interfaces = list(interfaces)

        bind_address: Optional[str] = DEFAULT_UNICAST_BIND_ADDRESS
        if 'bind_address' in obj:
            # an explicit null disables the unicast listener
            bind_address = obj['bind_address']
            if not bind_address is None and not isinstance(bind_address, str):
                raise ConfigError(f"Config key 'bind_address' has invalid value {bind_address!r}")

        return cls(
            broker_host=broker_host,
            broker_port=broker_port,
            devices=devices,
            poll_interval=poll_interval,
            flush_interval=flush_interval,
            announce=_get_typed(obj, 'announce', bool, False),
            bind_address=bind_address,
            interfaces=interfaces,
            client_id=_get_typed(obj, 'client_id', str, None),
            username=_get_typed(obj, 'username', str, None),
            password=_get_typed(obj, 'password', str, None),
            retain=_get_typed(obj, 'retain', bool, True),
          )

    @classmethod
    def loads(cls, text: str) -> BridgeConfig:
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in configuration: {e}") from None
        return cls.from_json(obj)

    @classmethod
    def load(cls, path: str) -> BridgeConfig:
        """Reads a configuration file. Raises ConfigError."""
        path = os.path.expanduser(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise ConfigError(f"Unable to read configuration file {path}: {e}") from None
        return cls.loads(text)
