"""Exception hierarchy for pyxled.

Every error carries the layer that failed (decode, auth, framing, transport
or api) so callers can tell where a fatal error came from.
"""

from __future__ import annotations


class XledError(Exception):
    """Base class for all pyxled errors."""

    layer = "device"

    def __str__(self) -> str:
        return f"[{self.layer}] {super().__str__()}"


class DecodeError(XledError):
    """Image could not be read as a pixel grid."""

    layer = "decode"


class DimensionError(DecodeError, ValueError):
    """Image shape does not fit the device profile."""

    def __init__(self, message: str, expected: object = None, actual: object = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class FrameSizeError(XledError, ValueError):
    """Frame does not hold exactly one pixel per LED."""

    layer = "framing"

    def __init__(self, expected: int, actual: int, message: str | None = None) -> None:
        super().__init__(message or f"Frame has {actual} pixels, device expects {expected}")
        self.expected = expected
        self.actual = actual


class FrameTooLargeError(XledError, ValueError):
    """Frame exceeds the 255 pixel ceiling of the real-time packet."""

    layer = "framing"

    def __init__(self, actual: int, maximum: int = 255) -> None:
        super().__init__(f"Frame has {actual} pixels, real-time packets carry at most {maximum}")
        self.expected = maximum
        self.actual = actual


class AuthError(XledError):
    """Login or verify handshake failed."""

    layer = "auth"


class ApiError(XledError):
    """A REST call returned a non-success status or an unexpected body."""

    layer = "api"

    def __init__(self, message: str, status: int | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class TransportError(XledError):
    """Sending a real-time datagram failed."""

    layer = "transport"

    def __init__(self, message: str, os_error: OSError | None = None) -> None:
        super().__init__(message)
        self.os_error = os_error


class StreamClosedError(XledError):
    """Frame pushed into a sink that is closing or closed."""

    layer = "transport"
