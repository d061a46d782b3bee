# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Constants used by this package"""

ECHONET_MULTICAST_ADDRESS = "224.0.23.0"
"""The multicast group used by ECHONET Lite for UDP announcements."""

ECHONET_PORT = 3610
"""The UDP port number used by ECHONET Lite, both unicast and multicast."""

ECHONET_EHD = 0x1081
"""The fixed EHD1/EHD2 header of an ECHONET Lite frame using the specified message format."""

FRAME_HEADER_LENGTH = 12
"""The number of bytes preceding the property list in a frame."""

EOJ_NODE_PROFILE = 0x0ef001
"""The node profile object. Used as the source object of every frame we send."""

MAX_DATAGRAM_SIZE = 1500

# ESV (service codes)
ESV_SETI_SNA = 0x50
ESV_SETC_SNA = 0x51
ESV_GET_SNA = 0x52
ESV_INF_SNA = 0x53
ESV_SETGET_SNA = 0x5e

ESV_SETI = 0x60
ESV_SETC = 0x61
ESV_GET = 0x62
ESV_INF_REQ = 0x63
ESV_SETGET = 0x6e
ESV_SET_RES = 0x71
ESV_GET_RES = 0x72
ESV_INF = 0x73
ESV_INFC = 0x74
ESV_INFC_RES = 0x7a
ESV_SETGET_RES = 0x7e

# EPC (property codes), super class
EPC_POWER = 0x80
EPC_WATT = 0x84
EPC_INF_PROPMAP = 0x9d
EPC_SET_PROPMAP = 0x9e
EPC_GET_PROPMAP = 0x9f
EPC_NODE_INS_LIST = 0xd6

# EPC, home air conditioner class
EPC_FAN = 0xa0
EPC_SWING = 0xa3
EPC_MODE = 0xb0
EPC_TARGET_TEMP = 0xb3
EPC_TARGET_HUMIDITY = 0xb4
EPC_ROOM_HUMIDITY = 0xba
EPC_ROOM_TEMP = 0xbb
EPC_OUTDOOR_TEMP = 0xbe
EPC_HUMIDIFY = 0xc1
EPC_HUMIDIFY_LEVEL = 0xc4

PROPERTY_MAP_EPCS = (EPC_INF_PROPMAP, EPC_SET_PROPMAP, EPC_GET_PROPMAP)

# EDT values
EDT_ON = 0x30
EDT_OFF = 0x31
EDT_AUTO = 0x41

TARGET_TEMP_AUTO = 0xfd
"""Target temperature reported while the unit chooses its own target."""
