"""Wire header for tunnel packets: encoding, parsing and naming."""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from enum import IntEnum

VERSION = 1
HEADER_LEN = 16

_HEADER_STRUCT = struct.Struct(">BBHIQ")


class HeaderTooShortError(ValueError):
    """Raised when fewer than HEADER_LEN bytes are given to parse."""

    def __init__(self) -> None:
        super().__init__("header is too short")


class MessageType(IntEnum):
    HANDSHAKE = 0
    MESSAGE = 1
    RECV_ERROR = 2
    LIGHT_HOUSE = 3
    TEST = 4
    CLOSE_TUNNEL = 5
    # Deprecated, kept so old peers are still named correctly.
    TEST_REMOTE = 6
    TEST_REMOTE_REPLY = 7


HANDSHAKE_IX_PSK0 = 0
HANDSHAKE_XX_PSK0 = 1

TEST_REQUEST = 0
TEST_REPLY = 1

TYPE_NAMES: dict[int, str] = {
    MessageType.HANDSHAKE: "handshake",
    MessageType.MESSAGE: "message",
    MessageType.RECV_ERROR: "recvError",
    MessageType.LIGHT_HOUSE: "lightHouse",
    MessageType.TEST: "test",
    MessageType.CLOSE_TUNNEL: "closeTunnel",
    MessageType.TEST_REMOTE: "testRemote",
    MessageType.TEST_REMOTE_REPLY: "testRemoteReply",
}

_SUBTYPE_TEST_NAMES: dict[int, str] = {TEST_REQUEST: "testRequest", TEST_REPLY: "testReply"}
_SUBTYPE_NONE_NAMES: dict[int, str] = {0: "none"}

SUBTYPE_NAMES: dict[int, dict[int, str]] = {
    MessageType.MESSAGE: _SUBTYPE_NONE_NAMES,
    MessageType.RECV_ERROR: _SUBTYPE_NONE_NAMES,
    MessageType.LIGHT_HOUSE: _SUBTYPE_NONE_NAMES,
    MessageType.TEST: _SUBTYPE_TEST_NAMES,
    MessageType.CLOSE_TUNNEL: _SUBTYPE_NONE_NAMES,
    MessageType.HANDSHAKE: {HANDSHAKE_IX_PSK0: "ix_psk0"},
    MessageType.TEST_REMOTE: _SUBTYPE_NONE_NAMES,
    MessageType.TEST_REMOTE_REPLY: _SUBTYPE_NONE_NAMES,
}


def header_encode(
    version: int, message_type: int, subtype: int, remote_index: int, counter: int
) -> bytes:
    """Encode header fields into HEADER_LEN bytes; the reserved field is always zero."""
    first = ((version << 4) | (message_type & 0x0F)) & 0xFF
    return _HEADER_STRUCT.pack(
        first,
        subtype & 0xFF,
        0,
        remote_index & 0xFFFFFFFF,
        counter & 0xFFFFFFFFFFFFFFFF,
    )


def type_name(message_type: int) -> str:
    """Human readable name of a message type, or "unknown"."""
    return TYPE_NAMES.get(message_type, "unknown")


def sub_type_name(message_type: int, subtype: int) -> str:
    """Human readable name of a message subtype, or "unknown"."""
    names = SUBTYPE_NAMES.get(message_type)
    if names is None:
        return "unknown"
    return names.get(subtype, "unknown")


@dataclass
class Header:
    version: int = 0
    type: int = 0
    subtype: int = 0
    reserved: int = 0
    remote_index: int = 0
    message_counter: int = 0

    def encode(self) -> bytes:
        """Encode this header into its wire form."""
        return header_encode(
            self.version, self.type, self.subtype, self.remote_index, self.message_counter
        )

    @classmethod
    def parse(cls, data: bytes) -> "Header":
        """Parse the first HEADER_LEN bytes of data into a header."""
        if len(data) < HEADER_LEN:
            raise HeaderTooShortError()
        first, subtype, reserved, remote_index, counter = _HEADER_STRUCT.unpack_from(data)
        return cls(
            version=(first >> 4) & 0x0F,
            type=first & 0x0F,
            subtype=subtype,
            reserved=reserved,
            remote_index=remote_index,
            message_counter=counter,
        )

    def type_name(self) -> str:
        return type_name(self.type)

    def sub_type_name(self) -> str:
        return sub_type_name(self.type, self.subtype)

    def to_json(self) -> str:
        """Compact JSON object with sorted keys."""
        return json.dumps(
            {
                "version": self.version,
                "type": self.type_name(),
                "subType": self.sub_type_name(),
                "reserved": self.reserved,
                "remoteIndex": self.remote_index,
                "messageCounter": self.message_counter,
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    def __str__(self) -> str:
        return (
            f"ver={self.version} type={self.type_name()} subtype={self.sub_type_name()} "
            f"reserved={self.reserved:#x} remoteindex={self.remote_index} "
            f"messagecounter={self.message_counter}"
        )