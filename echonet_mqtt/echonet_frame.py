#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Abstraction of an ECHONET Lite frame.

All integers are big-endian. The wire layout is:

    offset  size  field
    ------  ----  -----
         0     2  EHD (always 0x1081)
         2     2  TID (transaction id)
         4     3  SEOJ (source object code)
         7     3  DEOJ (destination object code)
        10     1  ESV (service code)
        11     1  OPC (property count)
        12   var  OPC x (EPC:1, PDC:1, EDT:PDC)
"""

from __future__ import annotations

from .internal_types import *
from .exceptions import MalformedFrame
from .constants import (
    ECHONET_EHD,
    FRAME_HEADER_LENGTH,
    PROPERTY_MAP_EPCS,
    ESV_SETI_SNA,
    ESV_SETC_SNA,
    ESV_GET_SNA,
    ESV_INF_SNA,
    ESV_SETGET_SNA,
    ESV_SETI,
    ESV_SETC,
    ESV_GET,
    ESV_INF_REQ,
    ESV_SETGET,
    ESV_SET_RES,
    ESV_GET_RES,
    ESV_INF,
    ESV_INFC,
    ESV_INFC_RES,
    ESV_SETGET_RES,
  )

ESV_NAMES: Dict[int, str] = {
    ESV_SETI: "SetI",
    ESV_SETC: "SetC",
    ESV_GET: "Get",
    ESV_INF_REQ: "INF_REQ",
    ESV_SETGET: "SetGet",
    ESV_SET_RES: "Set_Res",
    ESV_GET_RES: "Get_Res",
    ESV_INF: "INF",
    ESV_INFC: "INFC",
    ESV_INFC_RES: "INFC_Res",
    ESV_SETGET_RES: "SetGet_Res",
    ESV_SETI_SNA: "SetI_SNA",
    ESV_SETC_SNA: "SetC_SNA",
    ESV_GET_SNA: "Get_SNA",
    ESV_INF_SNA: "INF_SNA",
    ESV_SETGET_SNA: "SetGet_SNA",
}

DENIED_ESVS = frozenset((ESV_SETI_SNA, ESV_SETC_SNA, ESV_GET_SNA, ESV_INF_SNA, ESV_SETGET_SNA))

PROPERTY_MAP_BITMAP_LENGTH = 17
"""A property map PDC of this length carries a count byte followed by a 16-byte bitmap."""

def esv_name(esv: int) -> str:
    """Returns a short display name for a service code, e.g. "Get_Res", or "0x.." if unknown."""
    name = ESV_NAMES.get(esv)
    if name is None:
        name = f"0x{esv:02x}"
    return name

def is_denied_esv(esv: int) -> bool:
    """True if the service code is one of the SNA responses a device sends when it rejects a request."""
    return esv in DENIED_ESVS

class EchonetProperty:
    """One (EPC, PDC, EDT) triple within a frame. PDC is always len(edt)."""

    epc: int
    """The property code"""

    edt: bytes
    """The property data. Empty for the properties of a Get request."""

    def __init__(self, epc: int, edt: Union[bytes, Iterable[int]]=b''):
        if not 0 <= epc <= 0xff:
            raise ValueError(f"EPC out of range: {epc}")
        self.epc = epc
        self.edt = bytes(edt)
        if len(self.edt) > 0xff:
            raise ValueError(f"EDT too long for EPC 0x{epc:02x}: {len(self.edt)} bytes")

    @property
    def pdc(self) -> int:
        return len(self.edt)

    def encode(self) -> bytes:
        return bytes((self.epc, self.pdc)) + self.edt

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EchonetProperty):
            return NotImplemented
        return self.epc == other.epc and self.edt == other.edt

    def __str__(self) -> str:
        values = self.edt
        if self.epc in PROPERTY_MAP_EPCS:
            values = bytes(decode_property_map(self))
        return "(" + ' '.join([f"{self.epc:02x}"] + [f"{b:02x}" for b in values]) + ")"

    def __repr__(self) -> str:
        return f"EchonetProperty(0x{self.epc:02x}, {self.edt!r})"

def decode_property_map(prop: EchonetProperty) -> List[int]:
    """Returns the list of property codes advertised by a property map property (0x9d, 0x9e, 0x9f).

    A property map has two encodings. If PDC is 17, byte 0 is the number of properties and bytes 1-16
    are a bitmap in which bit i of byte 1+j flags EPC 0x80 + i*0x10 + j. Otherwise the bytes following
    the count are the property codes themselves and are returned as-is.

    Returns [] for properties that are not property maps, or that carry no data.
    """
    if not prop.epc in PROPERTY_MAP_EPCS or prop.pdc == 0:
        return []
    edt = prop.edt
    if prop.pdc != PROPERTY_MAP_BITMAP_LENGTH:
        return list(edt[1:])
    # The bitmap is scanned row by row so the resulting codes come out in ascending order.
    result: List[int] = []
    for i in range(8):
        for j in range(16):
            if edt[1 + j] & (1 << i) != 0:
                result.append(0x80 + i * 0x10 + j)
    return result

class EchonetFrame:
    """An ECHONET Lite frame, either built locally for sending or decoded from a received datagram.

    Properties are kept in insertion order, and OPC is counted up as they are added; it always
    equals len(props).
    """

    ehd: int = ECHONET_EHD
    """The frame header constant"""

    tid: int = 0
    """The transaction id. Assigned by the sender immediately before transmission."""

    seoj: int = 0
    """The 24-bit source object code"""

    deoj: int = 0
    """The 24-bit destination object code"""

    esv: int = 0
    """The service code"""

    props: List[EchonetProperty]
    """The properties, in wire order"""

    def __init__(
            self,
            seoj: int=0,
            deoj: int=0,
            esv: int=0,
            tid: int=0,
            props: Optional[Iterable[EchonetProperty]]=None,
          ):
        self.seoj = seoj & 0xffffff
        self.deoj = deoj & 0xffffff
        self.esv = esv
        self.tid = tid & 0xffff
        self.props = []
        if not props is None:
            for prop in props:
                self.props.append(prop)

    @property
    def opc(self) -> int:
        """The property count"""
        return len(self.props)

    def add_property(self, epc: int, *edt: int) -> EchonetProperty:
        """Appends a property with the given data bytes (none for a Get request) and returns it."""
        prop = EchonetProperty(epc, edt)
        self.props.append(prop)
        return prop

    def get_property(self, epc: int) -> Optional[EchonetProperty]:
        """Returns the first property with the given EPC, or None."""
        for prop in self.props:
            if prop.epc == epc:
                return prop
        return None

    @property
    def epcs(self) -> List[int]:
        return [prop.epc for prop in self.props]

    @property
    def is_denied(self) -> bool:
        return is_denied_esv(self.esv)

    def encode(self) -> bytes:
        """Serializes the frame to its wire representation."""
        header = bytes((
            (self.ehd >> 8) & 0xff,
            self.ehd & 0xff,
            (self.tid >> 8) & 0xff,
            self.tid & 0xff,
            (self.seoj >> 16) & 0xff,
            (self.seoj >> 8) & 0xff,
            self.seoj & 0xff,
            (self.deoj >> 16) & 0xff,
            (self.deoj >> 8) & 0xff,
            self.deoj & 0xff,
            self.esv,
            self.opc,
          ))
        return header + b''.join(prop.encode() for prop in self.props)

    @property
    def raw_data(self) -> bytes:
        return self.encode()

    @classmethod
    def decode(cls, data: bytes) -> EchonetFrame:
        """Decodes a received datagram.

        Raises MalformedFrame if the datagram is shorter than the header, carries the wrong EHD, or
        declares more property data than it contains.
        """
        length = len(data)
        if length < FRAME_HEADER_LENGTH:
            raise MalformedFrame(f"invalid length: {length}")
        ehd = (data[0] << 8) | data[1]
        if ehd != ECHONET_EHD:
            raise MalformedFrame(f"invalid EHD: 0x{ehd:04x}")
        frame = cls(
            tid=(data[2] << 8) | data[3],
            seoj=(data[4] << 16) | (data[5] << 8) | data[6],
            deoj=(data[7] << 16) | (data[8] << 8) | data[9],
            esv=data[10],
          )
        opc = data[11]
        idx = FRAME_HEADER_LENGTH
        for i in range(opc):
            if idx + 2 > length:
                raise MalformedFrame(f"truncated property header {i} of {opc} at offset {idx}")
            epc = data[idx]
            pdc = data[idx + 1]
            idx += 2
            if idx + pdc > length:
                raise MalformedFrame(f"truncated data for EPC 0x{epc:02x}: need {pdc} bytes, have {length - idx}")
            frame.props.append(EchonetProperty(epc, data[idx:idx + pdc]))
            idx += pdc
        return frame

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EchonetFrame):
            return NotImplemented
        return (
            self.ehd == other.ehd and
            self.tid == other.tid and
            self.seoj == other.seoj and
            self.deoj == other.deoj and
            self.esv == other.esv and
            self.props == other.props
          )

    def __str__(self) -> str:
        s = f"EOJ:{self.seoj:06x}=>{self.deoj:06x} TID:{self.tid} {esv_name(self.esv)}"
        for prop in self.props:
            s += f" {prop}"
        return s

    def __repr__(self) -> str:
        return f"EchonetFrame({self})"
