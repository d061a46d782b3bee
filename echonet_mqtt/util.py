#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Simple utility functions used by this package
"""

from __future__ import annotations

import re
import socket
from ipaddress import IPv4Address

import netifaces

from .internal_types import *
from .pkg_logging import logger

# Flag bits from <net/if.h>, as exposed in /sys/class/net/<ifname>/flags on Linux
IFF_UP = 0x1
IFF_LOOPBACK = 0x8
IFF_POINTOPOINT = 0x10
IFF_MULTICAST = 0x1000

EXCLUDED_INTERFACE_PATTERNS: List[re.Pattern[str]] = [
    re.compile(r'^utun'),
    re.compile(r'^llw'),
    re.compile(r'^awdl'),
  ]
"""Virtual adapters (VPN tunnels, Apple wireless direct link) on which multicast memberships
   are either duplicated or unreachable."""

InterfaceFlagsReader = Callable[[str], Optional[int]]

def read_sysfs_interface_flags(ifname: str) -> Optional[int]:
    """Returns the IFF_* flags of a network interface, or None if they cannot be determined
       (e.g., on platforms without /sys/class/net)."""
    try:
        with open(f"/sys/class/net/{ifname}/flags", "r") as f:
            return int(f.read().strip(), 16)
    except (OSError, ValueError):
        return None

def is_excluded_interface_name(ifname: str) -> bool:
    return any(pattern.match(ifname) for pattern in EXCLUDED_INTERFACE_PATTERNS)

def get_default_ip_gateway(address_family: socket.AddressFamily | int=socket.AF_INET) -> Tuple[Optional[str], Optional[str]]:
    """Returns the (gateway_ip_address: str, gateway_interface_name: str) for the default IP gateway in the
       requested family, if any.
       returns (None, None) if there is no default gateway in the requested family."""
    assert int(address_family) in (int(socket.AF_INET), int(socket.AF_INET6))
    netiface_family = netifaces.AF_INET if int(address_family) == int(socket.AF_INET) else netifaces.AF_INET6
    gws = netifaces.gateways()
    if "default" in gws:
        default_gateway_infos = gws["default"]
        if netiface_family in default_gateway_infos:
            gw_ip, gw_interface_name = default_gateway_infos[netiface_family][:2]
            return (gw_ip, gw_interface_name)
    return (None, None)

def get_multicast_interfaces(flags_reader: InterfaceFlagsReader=read_sysfs_interface_flags) -> List[Tuple[str, str]]:
    """Returns a list of Tuple[ip_address: str, interface_name: str], one per network interface on which
       the ECHONET Lite multicast group should be joined.

       An interface is eligible if it is up, is not a loopback, supports multicast, is not
       point-to-point, has an IPv4 address, and its name does not match EXCLUDED_INTERFACE_PATTERNS.
       Where the interface flags are unavailable, loopback and point-to-point interfaces are still
       recognized from their addresses.

       The interface holding the default gateway, if any, is listed first.
    """
    result_with_priority: List[Tuple[int, str, str]] = []
    _, default_gateway_ifname = get_default_ip_gateway(socket.AF_INET)
    for ifname in netifaces.interfaces():
        if is_excluded_interface_name(ifname):
            logger.debug(f"Skipping excluded interface {ifname}")
            continue
        flags = flags_reader(ifname)
        if not flags is None:
            if flags & IFF_UP == 0:
                continue
            if flags & IFF_LOOPBACK != 0:
                continue
            if flags & IFF_MULTICAST == 0:
                continue
            if flags & IFF_POINTOPOINT != 0:
                continue
        ifinfo = netifaces.ifaddresses(ifname)
        for addrinfo in ifinfo.get(netifaces.AF_INET, []):
            ip_str = addrinfo.get('addr')
            if not isinstance(ip_str, str) or ip_str == '':
                continue
            if IPv4Address(ip_str).is_loopback:
                continue
            if 'peer' in addrinfo:
                # point-to-point link
                continue
            priority = 0 if ifname == default_gateway_ifname else 1
            result_with_priority.append((priority, ip_str, ifname))
            # one membership per interface is enough
            break
    return [ (ip, ifname) for _, ip, ifname in sorted(result_with_priority)]
