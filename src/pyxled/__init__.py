"""pyxled - Real-time streaming driver for networked RGB LED strips.

This library authenticates against the device control API, turns still images
into frames (one pixel row per frame, one column per LED), and streams them to
the device over UDP with a rotating session token.

Example:
    >>> from pyxled import FrameSource, XledClient
    >>> with XledClient("192.168.1.42") as client:
    ...     with client.start_realtime_stream() as sink:
    ...         frames = FrameSource.for_profile("rainbow.png", sink.profile)
    ...         sink.play(frames, fps=25, loop=True)
"""

import importlib.metadata as _importlib_metadata
import logging as _logging

from pyxled.client import XledClient
from pyxled.device import RGB, DeviceProfile, Frame, Mode
from pyxled.errors import (
    ApiError,
    AuthError,
    DecodeError,
    DimensionError,
    FrameSizeError,
    FrameTooLargeError,
    StreamClosedError,
    TransportError,
    XledError,
)
from pyxled.frames import FrameSource
from pyxled.protocol import (
    MAX_PIXELS_PER_PACKET,
    PROTOCOL_VERSION,
    REALTIME_PORT,
    build_realtime_packet,
    pack_pixels,
    parse_realtime_packet,
    unpack_pixels,
)
from pyxled.session import SessionManager, SessionState, SessionToken, TokenGrant
from pyxled.sink import SinkState, StreamingSink

__version__: str = _importlib_metadata.version(__package__ or __name__)

_logging.getLogger(__name__).addHandler(_logging.NullHandler())

__all__ = [
    # Version
    "__version__",
    # Client (REST)
    "XledClient",
    # Device types
    "DeviceProfile",
    "Mode",
    "RGB",
    "Frame",
    # Frames
    "FrameSource",
    # Protocol (low-level)
    "build_realtime_packet",
    "parse_realtime_packet",
    "pack_pixels",
    "unpack_pixels",
    "PROTOCOL_VERSION",
    "REALTIME_PORT",
    "MAX_PIXELS_PER_PACKET",
    # Session
    "SessionManager",
    "SessionState",
    "SessionToken",
    "TokenGrant",
    # Streaming
    "StreamingSink",
    "SinkState",
    # Errors
    "XledError",
    "DecodeError",
    "DimensionError",
    "FrameSizeError",
    "FrameTooLargeError",
    "AuthError",
    "ApiError",
    "TransportError",
    "StreamClosedError",
]
