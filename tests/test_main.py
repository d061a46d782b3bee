import json

import pytest

from echonet_mqtt import __version__
from echonet_mqtt import __main__ as main_module
from echonet_mqtt.__main__ import run
from echonet_mqtt.bridge import EchonetBridge
from tests.helpers import FakePubSub


class FakeTransport:
    def __init__(self, registry, **kwargs):
        self.registry = registry

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeBrokerClient(FakePubSub):
    def __init__(self, hostname, **kwargs):
        super().__init__()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"broker": "mqtt://localhost:1883", "list": []}))
    return str(path)

class TestCommandLine:
    def test_version(self, capsys):
        assert run(["version"]) == 0
        assert capsys.readouterr().out.strip() == __version__

    def test_decode(self, capsys):
        assert run(["decode", "1081000701300105ff017201", "800130"]) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["tid"] == 7
        assert summary["seoj"] == "013001"
        assert summary["deoj"] == "05ff01"
        assert summary["esv"] == "Get_Res"
        assert summary["properties"] == [{"epc": "80", "edt": "30"}]

    def test_decode_property_map(self, capsys):
        assert run(["decode", "10810001013001" "0ef001" "72" "01" "9f" "03" "028084"]) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["properties"][0]["map"] == ["80", "84"]

    def test_decode_malformed(self, capsys):
        assert run(["decode", "1081"]) == 1
        assert "error" in capsys.readouterr().err

    def test_no_command(self, capsys):
        assert run([]) == 1

    def test_bad_option(self, capsys):
        assert run(["--log-level", "loud", "version"]) == 2

    def test_run_missing_config(self, tmp_path, capsys):
        assert run(["run", str(tmp_path / "missing.json")]) == 1
        assert "Unable to read configuration file" in capsys.readouterr().err

    def test_run_control_loop_failure_sets_exit_code(self, config_path, monkeypatch, capsys):
        async def failing_run(self):
            raise RuntimeError("boom")

        monkeypatch.setattr(main_module, "EchonetSocket", FakeTransport)
        monkeypatch.setattr(main_module, "MqttClient", FakeBrokerClient)
        monkeypatch.setattr(EchonetBridge, "run", failing_run)
        assert run(["run", config_path]) == 1
        assert "boom" in capsys.readouterr().err
