"""HID packet framing for APDU exchange.

Every packet is ``PACKET_SIZE`` bytes: channel (2, BE), tag (1), sequence
index (2, BE) and payload. The first packet of a message additionally carries
the total payload length (2, BE). Short packets are zero padded.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterable

from ledgerctl.core.errors import ProtocolError, TransportError
from ledgerctl.core.model import Command, Response

PACKET_SIZE = 64
CHANNEL = 0x0101
TAG_APDU = 0x05
_HEADER = struct.Struct(">HBH")
_LENGTH = struct.Struct(">H")
_FIRST_CHUNK = PACKET_SIZE - _HEADER.size - _LENGTH.size
_NEXT_CHUNK = PACKET_SIZE - _HEADER.size
MAX_MESSAGE = 0xFFFF
STATUS_WORD_SIZE = 2
LOGGER = logging.getLogger(__name__)


def wrap(payload: bytes, *, channel: int = CHANNEL) -> list[bytes]:
    if len(payload) > MAX_MESSAGE:
        raise TransportError(f"message of {len(payload)} bytes exceeds {MAX_MESSAGE}")

    packets: list[bytes] = []
    offset = 0
    sequence = 0
    while True:
        header = _HEADER.pack(channel, TAG_APDU, sequence)
        if sequence == 0:
            chunk = payload[:_FIRST_CHUNK]
            body = header + _LENGTH.pack(len(payload)) + chunk
        else:
            chunk = payload[offset : offset + _NEXT_CHUNK]
            body = header + chunk
        offset += len(chunk)
        packets.append(body.ljust(PACKET_SIZE, b"\x00"))
        sequence += 1
        if offset >= len(payload):
            return packets


class Reassembler:
    """Rebuilds one message from packets fed in arrival order."""

    def __init__(self, *, channel: int = CHANNEL) -> None:
        self._channel = channel
        self._expected_sequence = 0
        self._length: int | None = None
        self._buffer = bytearray()

    @property
    def complete(self) -> bool:
        return self._length is not None and len(self._buffer) >= self._length

    def feed(self, packet: bytes) -> bool:
        if self.complete:
            raise TransportError("received a packet after the message was complete")
        if len(packet) > PACKET_SIZE:
            raise TransportError(f"packet of {len(packet)} bytes exceeds {PACKET_SIZE}")
        if len(packet) < _HEADER.size:
            raise TransportError(f"packet of {len(packet)} bytes is shorter than its header")

        channel, tag, sequence = _HEADER.unpack_from(packet)
        if channel != self._channel:
            raise TransportError(f"unexpected channel {channel:#06x}")
        if tag != TAG_APDU:
            raise TransportError(f"unexpected packet tag {tag:#04x}")
        if sequence != self._expected_sequence:
            raise TransportError(
                f"packet sequence gap: expected {self._expected_sequence}, got {sequence}"
            )

        body = packet[_HEADER.size :]
        length = self._length
        if sequence == 0:
            if len(body) < _LENGTH.size:
                raise TransportError("first packet is missing the message length")
            (length,) = _LENGTH.unpack_from(body)
            self._length = length
            body = body[_LENGTH.size :]
        if length is None:
            raise TransportError("continuation packet arrived before the message length")

        remaining = length - len(self._buffer)
        self._buffer.extend(body[:remaining])
        self._expected_sequence += 1
        return self.complete

    @property
    def payload(self) -> bytes:
        if not self.complete:
            raise TransportError("message is incomplete")
        return bytes(self._buffer)


def unwrap(packets: Iterable[bytes], *, channel: int = CHANNEL) -> bytes:
    reassembler = Reassembler(channel=channel)
    for packet in packets:
        if reassembler.feed(packet):
            break
    return reassembler.payload


def encode(command: Command) -> list[bytes]:
    apdu = command.to_bytes()
    LOGGER.debug("=> %s", apdu.hex())
    return wrap(apdu)


def parse_response(payload: bytes) -> Response:
    if len(payload) < STATUS_WORD_SIZE:
        raise ProtocolError(
            f"response of {len(payload)} bytes is shorter than a status word"
        )
    LOGGER.debug("<= %s", payload.hex())
    sw = int.from_bytes(payload[-STATUS_WORD_SIZE:], "big")
    return Response(sw=sw, data=payload[:-STATUS_WORD_SIZE])


def decode(packets: Iterable[bytes]) -> Response:
    return parse_response(unwrap(packets))
