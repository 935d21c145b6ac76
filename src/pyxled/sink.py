"""Real-time streaming sink.

A :class:`StreamingSink` pushes frames to the device over UDP, one datagram
per frame, using the token its :class:`~pyxled.session.SessionManager` keeps
fresh in the background. Closing the sink always releases the socket, stops
token renewal and puts the device back into movie mode.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from enum import Enum
from typing import IO, TYPE_CHECKING, Callable, Iterable, Protocol, Sequence, Union

from PIL import Image

from pyxled.device import RGB, DeviceProfile, Mode
from pyxled.errors import (
    ApiError,
    AuthError,
    FrameSizeError,
    FrameTooLargeError,
    StreamClosedError,
    TransportError,
    XledError,
)
from pyxled.frames import FrameSource
from pyxled.protocol import (
    MAX_PIXELS_PER_PACKET,
    REALTIME_PORT,
    build_realtime_packet,
    pack_pixels,
)
from pyxled.session import SessionManager, SessionState

if TYPE_CHECKING:
    from PIL.Image import Image as PILImage

FrameInput = Union[
    Sequence[RGB], bytes, bytearray, memoryview, str, "os.PathLike[str]", IO[bytes], "PILImage"
]
SendCallback = Callable[[Union[TransportError, None]], None]

logger = logging.getLogger(__name__)


class SinkState(Enum):
    """Lifecycle states of a :class:`StreamingSink`."""

    OPEN = "open"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


class ModeController(Protocol):
    """Anything that can switch the device operating mode."""

    def set_mode(self, mode: Mode) -> Mode | str: ...


def _udp_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_DGRAM)


class StreamingSink:
    """Push-based consumer streaming frames to the device.

    Example:
        >>> with client.start_realtime_stream() as sink:
        ...     for frame in FrameSource.for_profile("rainbow.png", sink.profile):
        ...         sink.accept(frame)
    """

    def __init__(
        self,
        profile: DeviceProfile,
        host: str,
        session: SessionManager,
        modes: ModeController,
        port: int = REALTIME_PORT,
        renew_interval: float | None = None,
        socket_factory: Callable[[], socket.socket] = _udp_socket,
        restore_mode: Mode = Mode.MOVIE,
        on_close_error: Callable[[XledError], None] | None = None,
    ) -> None:
        """Open the UDP socket and start token renewal.

        Args:
            profile: Device snapshot taken right before streaming
            host: Device IP address
            session: Session manager holding an active token
            modes: Used on close to switch the device out of real-time mode
            port: Destination UDP port
            renew_interval: Token renewal cadence, defaults to a fraction of the token lifetime
            socket_factory: Creates the datagram socket
            restore_mode: Mode the device is put in when the sink closes
            on_close_error: Called when restoring the device mode fails

        Raises:
            FrameTooLargeError: If the device has more LEDs than one packet can carry
            AuthError: If the session is not active
            TransportError: If the UDP socket cannot be opened
        """
        if profile.led_count > MAX_PIXELS_PER_PACKET:
            raise FrameTooLargeError(profile.led_count, MAX_PIXELS_PER_PACKET)
        if session.state is not SessionState.ACTIVE:
            raise AuthError(f"Streaming needs an active session, session is {session.state.value}")

        self.profile = profile
        self.address = (host, port)
        self.session = session
        self.modes = modes
        self.restore_mode = restore_mode
        self.on_close_error = on_close_error
        self.frames_sent = 0
        self.close_error: XledError | None = None

        self._state = SinkState.OPEN
        self._state_lock = threading.Lock()
        try:
            self._socket = socket_factory()
        except OSError as err:
            raise TransportError(f"Cannot open real-time socket: {err}", os_error=err) from err
        try:
            session.start_auto_renew(renew_interval)
        except BaseException:
            self._socket.close()
            raise
        logger.debug("Opened real-time sink to %s:%d", host, port)

    @property
    def state(self) -> SinkState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state in (SinkState.CLOSING, SinkState.CLOSED)

    def _frame_payload(self, frame_input: FrameInput) -> bytes:
        expected = self.profile.led_count
        if isinstance(frame_input, (bytes, bytearray, memoryview)):
            payload = bytes(frame_input)
            if len(payload) != expected * 3:
                raise FrameSizeError(
                    expected,
                    len(payload) // 3,
                    message=f"Raw frame has {len(payload)} bytes, device expects {expected * 3}",
                )
            return payload

        if isinstance(frame_input, (str, os.PathLike, Image.Image)) or hasattr(frame_input, "read"):
            # Decoding a whole image per frame is slow; raw frames keep the frame rate up
            source = FrameSource.for_profile(frame_input, self.profile)  # type: ignore[arg-type]
            return source.frame_bytes(0)

        if len(frame_input) != expected:
            raise FrameSizeError(expected, len(frame_input))
        return pack_pixels(frame_input)

    def accept(self, frame_input: FrameInput, callback: SendCallback | None = None) -> int:
        """Send one frame to the device.

        Returns once the OS send call has completed. The device does not
        acknowledge real-time packets.

        Args:
            frame_input: Frame as RGB triples, raw RGB bytes, or an image
                reference whose first row is used
            callback: Called with None after the send, or with the TransportError

        Returns:
            Number of bytes sent, 0 if the sink was closed while sending

        Raises:
            StreamClosedError: If the sink is closing or closed
            FrameSizeError: If the frame does not have one pixel per LED
            DimensionError: If an image reference does not fit the device
            TransportError: If the send failed; the sink is closed before raising
        """
        if self.closed:
            raise StreamClosedError("Sink is closed")

        payload = self._frame_payload(frame_input)
        packet = build_realtime_packet(self.session.current_token().raw, payload)

        with self._state_lock:
            if self._state is SinkState.OPEN:
                self._state = SinkState.STREAMING

        try:
            sent = self._socket.sendto(packet, self.address)
        except OSError as err:
            if self.closed:
                return 0
            host, port = self.address
            error = TransportError(f"Sending frame to {host}:{port} failed: {err}", os_error=err)
            logger.warning("%s, closing sink", error)
            self.close()
            if callback is not None:
                callback(error)
            raise error from err

        if self.closed:
            return 0
        self.frames_sent += 1
        if callback is not None:
            callback(None)
        return sent

    def play(
        self,
        frames: FrameSource | Iterable[FrameInput],
        fps: float | None = None,
        loop: bool = False,
    ) -> int:
        """Push a sequence of frames, optionally paced and repeated.

        Args:
            frames: FrameSource or any iterable of frames; must be re-iterable when looping
            fps: Frames per second, None sends as fast as the socket allows
            loop: Start over after the last frame until the sink is closed

        Returns:
            Number of frames sent
        """
        frame_time = 1.0 / fps if fps else 0.0
        count = 0
        while not self.closed:
            items = frames.iter_bytes() if isinstance(frames, FrameSource) else frames
            pass_count = 0
            for frame in items:
                start = time.perf_counter()
                if self.closed or not self.accept(frame):
                    return count
                count += 1
                pass_count += 1
                if frame_time:
                    remaining = frame_time - (time.perf_counter() - start)
                    if remaining > 0:
                        time.sleep(remaining)
            if not loop or pass_count == 0:
                break
        return count

    def _restore_device_mode(self) -> XledError | None:
        try:
            self.modes.set_mode(self.restore_mode)
        except Exception as err:
            if isinstance(err, XledError):
                error = err
            elif isinstance(err, OSError):
                error = TransportError(str(err), os_error=err)
            else:
                error = ApiError(f"Set mode {self.restore_mode.value} failed: {err!r}")
                error.__cause__ = err
            logger.warning("Could not restore device mode %s: %s", self.restore_mode.value, error)
            if self.on_close_error is not None:
                self.on_close_error(error)
            return error
        logger.debug("Restored device mode %s", self.restore_mode.value)
        return None

    def close(self) -> XledError | None:
        """Release the socket, stop renewal and restore the device mode.

        All three steps run even if one of them fails. Calling close again
        does nothing.

        Returns:
            The error from restoring the device mode, or None
        """
        with self._state_lock:
            if self._state in (SinkState.CLOSING, SinkState.CLOSED):
                return self.close_error
            self._state = SinkState.CLOSING

        try:
            try:
                self._socket.close()
            except OSError as err:
                logger.warning("Error closing real-time socket: %s", err)
        finally:
            try:
                self.session.stop_auto_renew()
            finally:
                try:
                    self.close_error = self._restore_device_mode()
                finally:
                    self._state = SinkState.CLOSED
                    logger.debug("Closed real-time sink after %d frames", self.frames_sent)
        return self.close_error

    def __enter__(self) -> StreamingSink:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
