#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Exceptions defined by this package"""

from __future__ import annotations

from typing import Iterable, List, Optional

class EchonetError(Exception):
    """Base class for all error exceptions defined by this package."""
    pass

class MalformedFrame(EchonetError):
    """A received datagram could not be decoded as an ECHONET Lite frame."""
    pass

class UnknownDevice(EchonetError):
    """No registered device matches a lookup."""
    pass

class InvalidArgument(EchonetError):
    """A command value was not recognized."""
    pass

class OutOfRange(InvalidArgument):
    """A numeric command value was outside the range the device accepts."""
    pass

class DuplicateDevice(InvalidArgument):
    """A device was registered with a (kind, name) or (address, eoj) already in use."""
    pass

class UnsupportedDeviceKind(EchonetError):
    pass

class TransportFailure(EchonetError):
    """A socket could not be bound, written or reopened."""
    pass

class ConfigError(EchonetError):
    pass

class DeviceDenied(EchonetError):
    """A device answered a request with one of the SNA (service not available) service codes."""

    esv: int
    epcs: List[int]

    def __init__(self, esv: int, epcs: Iterable[int]=(), msg: Optional[str]=None):
        self.esv = esv
        self.epcs = list(epcs)
        if msg is None:
            epc_str = ' '.join(f"{epc:02x}" for epc in self.epcs)
            msg = f"Request denied by device (ESV=0x{esv:02x}, EPC=[{epc_str}])"
        super().__init__(msg)

class PubSubError(EchonetError):
    """The pub/sub client could not connect, subscribe or publish."""
    pass
