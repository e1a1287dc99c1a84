"""Serial framing of Z-Stack packets: encoding, checksums and stream decoding."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import reduce
from operator import xor

PACKET_FLAG = 0xFE
SKIP_BOOTLOADER = 0xEF

_HEADER_SIZE = 4  # flag, length, two command bytes
_FRAME_OVERHEAD = _HEADER_SIZE + 1

log = logging.getLogger(__name__)


class FrameError(ValueError):
    """A frame cannot be built from the given data."""


@dataclass(frozen=True)
class Frame:
    """A decoded packet: its command identifier and its data."""

    command: int
    data: bytes = b""

    @property
    def is_sync_response(self) -> bool:
        return bool(self.command & 0x2000)

    def answers(self, request_command: int) -> bool:
        """Whether this frame is the synchronous reply to ``request_command``."""
        return self.is_sync_response and (self.command ^ 0x4000) == request_command

    def encode(self) -> bytes:
        return encode_frame(self.command, self.data)


def checksum(data: bytes) -> int:
    """XOR of all bytes."""
    return reduce(xor, data, 0)


def encode_frame(command: int, data: bytes = b"") -> bytes:
    """Build the wire form of a packet, checksum included."""
    if len(data) > 0xFF:
        raise FrameError(f"frame data is {len(data)} bytes long, at most 255 allowed")
    if not 0 <= command <= 0xFFFF:
        raise FrameError(f"command 0x{command:x} does not fit in two bytes")
    body = bytes([len(data)]) + command.to_bytes(2, "big") + data
    return bytes([PACKET_FLAG]) + body + bytes([checksum(body)])


class FrameDecoder:
    """Collects serial bytes and yields complete frames.

    A buffer that does not start with the packet flag, or holds fewer bytes
    than a minimal frame, is discarded; so is one whose checksum is wrong.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def buffered(self) -> bytes:
        return bytes(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()

    def feed(self, data: bytes) -> list[Frame]:
        self._buffer += data
        frames: list[Frame] = []

        while self._buffer:
            if self._buffer[0] == 0:
                del self._buffer[0]

            if len(self._buffer) < _FRAME_OVERHEAD or self._buffer[0] != PACKET_FLAG:
                self._buffer.clear()
                break

            end = self._buffer[1] + _FRAME_OVERHEAD
            if len(self._buffer) < end:
                break

            raw = bytes(self._buffer[:end])
            log.debug("frame received: %s", raw.hex(":"))

            if checksum(raw[1:-1]) != raw[-1]:
                log.warning("frame %s FCS mismatch", raw.hex(":"))
                self._buffer.clear()
                break

            frames.append(Frame(int.from_bytes(raw[2:4], "big"), raw[_HEADER_SIZE:-1]))
            del self._buffer[:end]

        return frames