"""
WebSocket Framing

Minimal RFC 6455 pieces for the traffic monitor's hand-built server:
the opening-handshake accept key and single-frame encode/decode.

Server frames are unmasked. Length is a single byte below 126, 0x7E plus a
16-bit big-endian length below 65536, otherwise 0x7F plus a 64-bit
big-endian length.
"""

import base64
import hashlib
import struct
from dataclasses import dataclass
from typing import Optional, Union

from shared.constants import WEBSOCKET_GUID

OP_CONTINUATION = 0x0
OP_TEXT = 0x1
OP_BINARY = 0x2
OP_CLOSE = 0x8
OP_PING = 0x9
OP_PONG = 0xA

PONG_FRAME = b"\x8a\x00"


def compute_accept_key(key: str) -> str:
    """base64(sha1(key + GUID)) for the Sec-WebSocket-Accept header"""
    digest = hashlib.sha1((key.strip() + WEBSOCKET_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def frame_encode(payload: Union[bytes, str], opcode: int = OP_TEXT) -> bytes:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    first = 0x80 | opcode
    length = len(payload)
    if length < 126:
        head = struct.pack("!BB", first, length)
    elif length < 65536:
        head = struct.pack("!BBH", first, 0x7E, length)
    else:
        head = struct.pack("!BBQ", first, 0x7F, length)
    return head + payload


@dataclass
class Frame:
    fin: bool
    opcode: int
    payload: bytes
    consumed: int

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8")


def frame_decode(data: bytes) -> Optional[Frame]:
    """Decode one frame from the front of data.

    Returns None when data does not yet hold a complete frame. Masked
    (client) frames are unmasked.
    """
    if len(data) < 2:
        return None
    first, second = data[0], data[1]
    masked = bool(second & 0x80)
    length = second & 0x7F
    pos = 2
    if length == 126:
        if len(data) < pos + 2:
            return None
        (length,) = struct.unpack("!H", data[pos:pos + 2])
        pos += 2
    elif length == 127:
        if len(data) < pos + 8:
            return None
        (length,) = struct.unpack("!Q", data[pos:pos + 8])
        pos += 8

    mask = b""
    if masked:
        if len(data) < pos + 4:
            return None
        mask = data[pos:pos + 4]
        pos += 4

    if len(data) < pos + length:
        return None
    payload = data[pos:pos + length]
    if masked:
        payload = bytes(b ^ mask[i % 4] for i, b in enumerate(payload))

    return Frame(fin=bool(first & 0x80), opcode=first & 0x0F, payload=payload, consumed=pos + length)
