"""Real-time UDP packet framing using construct.

This module provides sans-io building and parsing of the version 1 real-time
datagram. One datagram carries one complete frame:

    offset 0        version      (0x01)
    offset 1..N     session token (N bytes, device-determined)
    offset 1+N      pixel count  (uint8)
    offset 2+N..    RGB payload  (pixel count * 3 bytes)
"""

from __future__ import annotations

from typing import Sequence, Union, cast

from construct import (
    Bytes,
    Check,
    Const,
    Container,
    Construct,
    Int8ub,
    Rebuild,
    Struct,
)

from pyxled.device import RGB, Frame
from pyxled.errors import FrameSizeError, FrameTooLargeError

# Protocol constants
PROTOCOL_VERSION = 0x01
REALTIME_PORT = 7777
MAX_PIXELS_PER_PACKET = 0xFF  # pixel count is a single byte
HEADER_OVERHEAD = 2  # version(1) + pixel_count(1)

PixelInput = Union[Sequence[RGB], bytes, bytearray, memoryview]


RealtimePacket: Construct = Struct(
    "version" / Const(PROTOCOL_VERSION, Int8ub),
    "token" / Bytes(lambda this: this._params.token_length),
    "pixel_count" / Rebuild(Int8ub, lambda this: len(this.payload) // 3),
    "payload" / Bytes(lambda this: this.pixel_count * 3),
    Check(lambda this: len(this.payload) == this.pixel_count * 3),
)


def pack_pixels(pixels: Sequence[RGB]) -> bytes:
    """Flatten RGB triples into an interleaved R,G,B byte string.

    Args:
        pixels: Sequence of (r, g, b) tuples, each channel 0-255

    Returns:
        Bytes of length ``len(pixels) * 3``

    Raises:
        ValueError: If a pixel is not a triple or a channel is out of range
    """
    payload = bytearray(len(pixels) * 3)
    for i, pixel in enumerate(pixels):
        if len(pixel) != 3:
            raise ValueError(f"Pixel {i} has {len(pixel)} channels, expected 3")
        r, g, b = pixel
        if not (0 <= r <= 255 and 0 <= g <= 255 and 0 <= b <= 255):
            raise ValueError(f"Pixel {i} has channel values outside 0-255: {tuple(pixel)}")
        offset = i * 3
        payload[offset] = r
        payload[offset + 1] = g
        payload[offset + 2] = b
    return bytes(payload)


def unpack_pixels(payload: bytes) -> Frame:
    """Split an interleaved RGB byte string back into pixel triples.

    Args:
        payload: Raw RGB bytes, length must be a multiple of 3

    Returns:
        Tuple of (r, g, b) tuples in pixel order

    Raises:
        FrameSizeError: If the payload length is not a multiple of 3
    """
    _check_whole_pixels(payload)
    return tuple(
        (payload[i], payload[i + 1], payload[i + 2]) for i in range(0, len(payload), 3)
    )


def _check_whole_pixels(payload: bytes) -> None:
    if len(payload) % 3:
        raise FrameSizeError(
            expected=len(payload) - len(payload) % 3,
            actual=len(payload),
            message=f"Raw frame of {len(payload)} bytes is not a whole number of RGB pixels",
        )


def _payload_bytes(pixels: PixelInput) -> bytes:
    if isinstance(pixels, (bytes, bytearray, memoryview)):
        payload = bytes(pixels)
        _check_whole_pixels(payload)
        return payload
    return pack_pixels(pixels)


def build_realtime_packet(token: bytes, pixels: PixelInput) -> bytes:
    """Build one real-time datagram for a frame.

    Args:
        token: Raw (base64-decoded) session token bytes
        pixels: Frame as RGB triples, or raw interleaved RGB bytes

    Returns:
        Complete datagram ready to send

    Raises:
        FrameTooLargeError: If the frame holds more than 255 pixels
        FrameSizeError: If raw bytes are not a whole number of pixels
    """
    if isinstance(pixels, (bytes, bytearray, memoryview)):
        pixel_count = len(pixels) // 3
    else:
        pixel_count = len(pixels)
    if pixel_count > MAX_PIXELS_PER_PACKET:
        raise FrameTooLargeError(pixel_count, MAX_PIXELS_PER_PACKET)

    msg = Container(token=bytes(token), payload=_payload_bytes(pixels))
    return cast(bytes, RealtimePacket.build(msg, token_length=len(token)))


def parse_realtime_packet(data: bytes, token_length: int) -> Container:
    """Parse a real-time datagram.

    Args:
        data: Raw datagram bytes
        token_length: Length of the session token carried in the packet

    Returns:
        construct Container with version, token, pixel_count and payload

    Raises:
        ValueError: If the datagram is shorter than its header
        construct exceptions if the version byte or payload length is wrong
    """
    if len(data) < HEADER_OVERHEAD + token_length:
        raise ValueError(f"Packet too short: {len(data)} bytes")
    return RealtimePacket.parse(data, token_length=token_length)


def packet_size(token_length: int, pixel_count: int) -> int:
    """Size in bytes of a datagram carrying ``pixel_count`` pixels."""
    return HEADER_OVERHEAD + token_length + pixel_count * 3
