from unittest.mock import MagicMock

import pytest

from echonet_mqtt import util
from echonet_mqtt.util import (
    IFF_LOOPBACK,
    IFF_MULTICAST,
    IFF_POINTOPOINT,
    IFF_UP,
    get_multicast_interfaces,
    is_excluded_interface_name,
)

AF_INET = 2

UP_MULTICAST = IFF_UP | IFF_MULTICAST

ADDRESSES = {
    "lo": {AF_INET: [{"addr": "127.0.0.1", "netmask": "255.0.0.0"}]},
    "eth0": {AF_INET: [{"addr": "192.168.1.10", "netmask": "255.255.255.0"}]},
    "wlan0": {AF_INET: [{"addr": "10.0.0.5", "netmask": "255.255.255.0"}, {"addr": "10.0.0.6"}]},
    "ppp0": {AF_INET: [{"addr": "100.64.0.1", "peer": "100.64.0.2"}]},
    "utun3": {AF_INET: [{"addr": "10.8.0.2"}]},
    "eth1": {},
    "down0": {AF_INET: [{"addr": "172.16.0.1"}]},
}

FLAGS = {
    "lo": IFF_UP | IFF_LOOPBACK,
    "eth0": UP_MULTICAST,
    "wlan0": UP_MULTICAST,
    "ppp0": IFF_UP | IFF_POINTOPOINT | IFF_MULTICAST,
    "utun3": UP_MULTICAST,
    "eth1": UP_MULTICAST,
    "down0": IFF_MULTICAST,
}


@pytest.fixture
def fake_netifaces(monkeypatch):
    fake = MagicMock()
    fake.AF_INET = AF_INET
    fake.AF_INET6 = 10
    fake.interfaces.return_value = list(ADDRESSES)
    fake.ifaddresses.side_effect = lambda ifname: ADDRESSES[ifname]
    fake.gateways.return_value = {"default": {AF_INET: ("10.0.0.1", "wlan0")}}
    monkeypatch.setattr(util, "netifaces", fake)
    return fake


class TestMulticastInterfaces:
    def test_eligible_interfaces(self, fake_netifaces):
        result = get_multicast_interfaces(flags_reader=FLAGS.get)
        # default gateway interface first, one address per interface
        assert result == [("10.0.0.5", "wlan0"), ("192.168.1.10", "eth0")]

    def test_without_flags(self, fake_netifaces):
        result = get_multicast_interfaces(flags_reader=lambda ifname: None)
        names = [ifname for _, ifname in result]
        assert names[0] == "wlan0"
        assert "lo" not in names
        assert "ppp0" not in names
        assert "utun3" not in names
        assert "down0" in names

    def test_no_default_gateway(self, fake_netifaces):
        fake_netifaces.gateways.return_value = {}
        result = get_multicast_interfaces(flags_reader=FLAGS.get)
        assert sorted(result) == [("10.0.0.5", "wlan0"), ("192.168.1.10", "eth0")]


class TestExcludedNames:
    @pytest.mark.parametrize("ifname", ["utun0", "llw0", "awdl0"])
    def test_excluded(self, ifname):
        assert is_excluded_interface_name(ifname)

    @pytest.mark.parametrize("ifname", ["eth0", "en0", "wlan0", "tun0"])
    def test_allowed(self, ifname):
        assert not is_excluded_interface_name(ifname)
