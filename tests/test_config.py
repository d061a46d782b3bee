import json

import pytest

from echonet_mqtt.config import BridgeConfig, parse_broker_url
from echonet_mqtt.device import DeviceKind
from echonet_mqtt.exceptions import ConfigError

CONFIG = {
    "broker": "tcp://192.168.1.10:1884",
    "list": [
        {"type": "aircon", "name": "living", "addr": "192.168.1.50", "eoj": "013001"},
        {"type": "light", "name": "porch", "addr": "192.168.1.51", "eoj": "029101"},
    ],
}


class TestParseBrokerUrl:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("tcp://broker.local:1884", ("broker.local", 1884)),
            ("mqtt://broker.local", ("broker.local", 1883)),
            ("broker.local", ("broker.local", 1883)),
            ("10.0.0.2:8883", ("10.0.0.2", 8883)),
        ],
    )
    def test_valid(self, url, expected):
        assert parse_broker_url(url) == expected

    @pytest.mark.parametrize("url", ["", "http://broker.local", "tcp://", "tcp://host:notaport"])
    def test_invalid(self, url):
        with pytest.raises(ConfigError):
            parse_broker_url(url)


class TestBridgeConfig:
    def test_minimal(self):
        config = BridgeConfig.from_json(CONFIG)
        assert config.broker_host == "192.168.1.10"
        assert config.broker_port == 1884
        assert [d.kind for d in config.devices] == [DeviceKind.AIRCON, DeviceKind.LIGHT]
        assert config.devices[0].eoj == 0x013001
        assert config.poll_interval == 300.0
        assert config.flush_interval == 1.0
        assert config.retain is True
        assert config.announce is False
        assert config.bind_address == "127.0.0.1"
        assert config.interfaces is None

    def test_optional_keys(self):
        obj = dict(
            CONFIG,
            poll_interval=60,
            flush_interval=0.5,
            announce=True,
            bind_address=None,
            interfaces=["192.168.1.2"],
            client_id="bridge",
            username="u",
            password="p",
            retain=False,
        )
        config = BridgeConfig.from_json(obj)
        assert config.poll_interval == 60.0
        assert config.flush_interval == 0.5
        assert config.announce is True
        assert config.bind_address is None
        assert config.interfaces == ["192.168.1.2"]
        assert (config.client_id, config.username, config.password) == ("bridge", "u", "p")
        assert config.retain is False

    def test_missing_broker(self):
        with pytest.raises(ConfigError):
            BridgeConfig.from_json({"list": []})

    def test_missing_list(self):
        with pytest.raises(ConfigError):
            BridgeConfig.from_json({"broker": "localhost"})

    def test_not_an_object(self):
        with pytest.raises(ConfigError):
            BridgeConfig.from_json([])

    @pytest.mark.parametrize(
        "key,value", [("poll_interval", "fast"), ("poll_interval", 0), ("announce", "yes"), ("retain", 1)]
    )
    def test_ill_typed(self, key, value):
        with pytest.raises(ConfigError):
            BridgeConfig.from_json(dict(CONFIG, **{key: value}))

    def test_bad_device(self):
        with pytest.raises(ConfigError):
            BridgeConfig.from_json(dict(CONFIG, list=[{"type": "light"}]))

    def test_load(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(CONFIG))
        config = BridgeConfig.load(str(path))
        assert len(config.devices) == 2

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            BridgeConfig.load(str(tmp_path / "nope.json"))

    def test_invalid_json(self):
        with pytest.raises(ConfigError):
            BridgeConfig.loads("{not json")
