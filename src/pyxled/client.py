"""REST client for the device control API.

This module talks to ``http://<ip>/xled/v1`` with requests. It covers what the
streaming pipeline needs: the login/verify handshake, device metadata, mode
switching, and the bulk movie upload. Every authenticated call logs in first;
the session manager makes that free while the cached token is young.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

import requests

from pyxled.device import DeviceProfile, Mode
from pyxled.errors import ApiError, AuthError, FrameTooLargeError, XledError
from pyxled.frames import FrameSource, ImageInput
from pyxled.protocol import MAX_PIXELS_PER_PACKET
from pyxled.session import (
    DEFAULT_RENEW_FRACTION,
    DEFAULT_REUSE_WINDOW,
    SessionManager,
    SessionToken,
    TokenGrant,
)
from pyxled.sink import StreamingSink

DEFAULT_TIMEOUT = 5.0
DEFAULT_FPS = 25
DEFAULT_KEEPALIVE = 5.0
API_PATH = "/xled/v1"
SUCCESS_CODE = 1000

logger = logging.getLogger(__name__)


def _json_body(response: requests.Response, what: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as err:
        raise ApiError(f"{what}: response is not JSON", status=response.status_code) from err
    if not isinstance(data, dict):
        raise ApiError(f"{what}: expected a JSON object, got {data!r}", status=response.status_code)
    return data


class XledClient:
    """Client for one device.

    Example:
        >>> with XledClient("192.168.1.42") as client:
        ...     client.upload_movie("rainbow.png", fps=30)
        ...     with client.start_realtime_stream() as sink:
        ...         sink.play(FrameSource.for_profile("rainbow.png", sink.profile), fps=30)
    """

    def __init__(
        self,
        host: str,
        timeout: float = DEFAULT_TIMEOUT,
        http: requests.Session | None = None,
        reuse_window: float = DEFAULT_REUSE_WINDOW,
        renew_fraction: float = DEFAULT_RENEW_FRACTION,
        on_mode_change: Callable[[Mode | str], None] | None = None,
        on_connect: Callable[[dict[str, Any]], None] | None = None,
        on_disconnect: Callable[[XledError], None] | None = None,
        keepalive_interval: float | None = None,
        **session_options: Any,
    ) -> None:
        """Initialize a client.

        Args:
            host: Device IP address or hostname
            timeout: Per-request timeout in seconds
            http: requests session to use, a new one is created by default
            reuse_window: Seconds a token is reused without a new handshake
            renew_fraction: Token renewal cadence as a fraction of its lifetime
            on_mode_change: Called once each time a different device mode is observed
            on_connect: Called with the gestalt details when the device becomes reachable
            on_disconnect: Called with the error when the device stops answering
            keepalive_interval: Poll ``/gestalt`` this often in the background, None disables it
            **session_options: Passed on to SessionManager (clock, callbacks)
        """
        self.host = host
        self.base_url = f"http://{host}{API_PATH}"
        self.timeout = timeout
        self.http = http if http is not None else requests.Session()
        self.on_mode_change = on_mode_change
        self.session = SessionManager(
            self,
            reuse_window=reuse_window,
            renew_fraction=renew_fraction,
            **session_options,
        )
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self._mode: Mode | str | None = None
        self._connected: bool | None = None
        self._keepalive_lock = threading.Lock()
        self._keepalive_thread: threading.Thread | None = None
        self._keepalive_stop: threading.Event | None = None
        if keepalive_interval is not None:
            self.start_keepalive(keepalive_interval)

    def _send(self, method: str, path: str, what: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.http.request(method, f"{self.base_url}/{path}", **kwargs)
        except requests.RequestException as err:
            raise ApiError(f"{what}: request to {self.host} failed: {err}") from err

    def _call(
        self, method: str, path: str, what: str, auth: bool = True, **kwargs: Any
    ) -> dict[str, Any]:
        if auth:
            token = self.session.login()
            headers = dict(kwargs.pop("headers", None) or {})
            headers["X-Auth-Token"] = token.value
            kwargs["headers"] = headers
        response = self._send(method, path, what, **kwargs)
        if not response.ok:
            raise ApiError(f"{what}: HTTP {response.status_code}", status=response.status_code)
        data = _json_body(response, what)
        code = data.get("code")
        if code != SUCCESS_CODE:
            raise ApiError(
                f"{what}: device returned code {code}", status=response.status_code, code=code
            )
        return data

    # Authenticator

    def request_token(self, challenge: str) -> TokenGrant:
        """Login step of the handshake.

        Raises:
            AuthError: On any non-success status or unexpected response shape
        """
        try:
            data = self._call("POST", "login", "Login", auth=False, json={"challenge": challenge})
        except ApiError as err:
            raise AuthError(str(err.args[0])) from err
        try:
            return TokenGrant(
                token=str(data["authentication_token"]),
                challenge_response=str(data["challenge-response"]),
                lifetime=float(data.get("authentication_token_expires_in", 0)),
            )
        except (KeyError, TypeError, ValueError) as err:
            raise AuthError(f"Login: unexpected response {data!r}") from err

    def verify_token(self, token: str, challenge_response: str) -> None:
        """Verify step of the handshake.

        Raises:
            AuthError: If the device does not accept the challenge response
        """
        try:
            self._call(
                "POST",
                "verify",
                "Verify",
                auth=False,
                headers={"X-Auth-Token": token},
                # The device expects a JSON object here, not the bare challenge response
                json={"challenge-response": challenge_response},
            )
        except ApiError as err:
            raise AuthError(str(err.args[0])) from err

    # Device API

    def login(self) -> SessionToken:
        """Return a valid session token, running the handshake if needed."""
        return self.session.login()

    def gestalt(self) -> dict[str, Any]:
        """Device metadata without the status code.

        Also tracks reachability: the first success after start or after a
        failure fires on_connect, the first failure fires on_disconnect.
        """
        try:
            data = self._call("GET", "gestalt", "Gestalt")
        except XledError as err:
            self._set_connected(False, err)
            raise
        data.pop("code", None)
        self._set_connected(True, data)
        return data

    @property
    def connected(self) -> bool | None:
        """Reachability seen by the last gestalt call, None before the first one."""
        return self._connected

    def _set_connected(self, connected: bool, detail: Any) -> None:
        with self._keepalive_lock:
            if self._connected is connected:
                return
            self._connected = connected
        if connected:
            logger.info("Connected to %s", self.host)
            if self.on_connect is not None:
                self.on_connect(detail)
        else:
            logger.warning("Lost connection to %s: %s", self.host, detail)
            if self.on_disconnect is not None:
                self.on_disconnect(detail)

    def check_connection(self) -> bool:
        """Poll gestalt once; failures are reported through on_disconnect."""
        try:
            self.gestalt()
        except XledError:
            return False
        return True

    def start_keepalive(self, interval: float = DEFAULT_KEEPALIVE) -> None:
        """Poll the device on a background thread. Does nothing if already polling.

        Raises:
            ValueError: If interval is not positive
        """
        if interval <= 0:
            raise ValueError(f"Keepalive interval must be positive, got {interval}")
        with self._keepalive_lock:
            if self._keepalive_thread is not None:
                return
            stop = threading.Event()
            thread = threading.Thread(
                target=self._keepalive_loop,
                args=(interval, stop),
                name="pyxled-keepalive",
                daemon=True,
            )
            self._keepalive_stop = stop
            self._keepalive_thread = thread
        thread.start()

    def _keepalive_loop(self, interval: float, stop: threading.Event) -> None:
        while not stop.wait(interval):
            self.check_connection()

    def stop_keepalive(self, timeout: float | None = 5.0) -> None:
        with self._keepalive_lock:
            thread, stop = self._keepalive_thread, self._keepalive_stop
            self._keepalive_thread = None
            self._keepalive_stop = None
        if thread is None or stop is None:
            return
        stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout)

    def device_profile(self) -> DeviceProfile:
        """Fresh LED count and movie capacity snapshot."""
        return DeviceProfile.from_gestalt(self.gestalt())

    def _observe_mode(self, mode: Mode | str) -> None:
        if mode == self._mode:
            return
        self._mode = mode
        logger.debug("Device %s is in %s mode", self.host, getattr(mode, "value", mode))
        if self.on_mode_change is not None:
            self.on_mode_change(mode)

    def get_mode(self) -> Mode | str:
        """Current operating mode.

        Returns:
            The matching Mode, or the raw mode name for firmware modes Mode does not list

        Raises:
            ApiError: If the request fails or the response has no mode
        """
        data = self._call("GET", "led/mode", "Get mode")
        raw = data.get("mode")
        if not isinstance(raw, str):
            raise ApiError(f"Get mode: unexpected response {data!r}")
        try:
            mode: Mode | str = Mode(raw)
        except ValueError:
            mode = raw
        self._observe_mode(mode)
        return mode

    def set_mode(self, mode: Mode) -> Mode | str:
        """Switch the operating mode and return the mode the device reports."""
        self._call("POST", "led/mode", "Set mode", json={"mode": Mode(mode).value})
        return self.get_mode()

    def reset(self) -> None:
        """Restart the LED output from the first frame."""
        self._call("GET", "led/reset", "Reset")

    def upload_movie(self, image: ImageInput, fps: float = DEFAULT_FPS) -> int:
        """Upload an image as a movie and start playing it.

        Args:
            image: Image whose rows are the movie frames
            fps: Playback rate

        Returns:
            Number of frames uploaded

        Raises:
            DimensionError: If the image does not fit the device
            ApiError: If the device rejects the upload
        """
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")
        profile = self.device_profile()
        source = FrameSource.for_profile(image, profile)

        self.reset()
        data = self._call(
            "POST",
            "led/movie/full",
            "Upload movie",
            headers={"Content-Type": "application/octet-stream"},
            data=source.as_buffer(),
        )
        if data.get("frames_number") != source.frame_count():
            raise ApiError(
                f"Upload movie: device stored {data.get('frames_number')} frames, "
                f"sent {source.frame_count()}"
            )

        self._call(
            "POST",
            "led/movie/config",
            "Movie config",
            json={
                "frame_delay": int(round(1000 / fps)),
                "leds_number": profile.led_count,
                "frames_number": source.frame_count(),
            },
        )
        self.reset()
        self.set_mode(Mode.MOVIE)
        logger.info("Uploaded %d frame movie to %s", source.frame_count(), self.host)
        return source.frame_count()

    def start_realtime_stream(self, **sink_options: Any) -> StreamingSink:
        """Switch to real-time mode and open a streaming sink.

        Args:
            **sink_options: Passed on to StreamingSink (port, renew_interval, ...)

        Returns:
            An open StreamingSink; closing it puts the device back in movie mode
        """
        self.session.login()
        profile = self.device_profile()
        if profile.led_count > MAX_PIXELS_PER_PACKET:
            raise FrameTooLargeError(profile.led_count, MAX_PIXELS_PER_PACKET)

        self.set_mode(Mode.RT)
        try:
            return StreamingSink(profile, self.host, self.session, self, **sink_options)
        except BaseException:
            try:
                self.set_mode(Mode.MOVIE)
            except XledError as err:
                logger.warning("Could not leave real-time mode after a failed start: %s", err)
            raise

    def close(self) -> None:
        self.stop_keepalive()
        self.session.close()
        self.http.close()

    def __enter__(self) -> XledClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
