"""Tests for the REST client against a stubbed HTTP session."""

from __future__ import annotations

import base64
import errno
import threading
import time

import pytest
import requests
from conftest import FakeClock, RecordingSocket, StubHttp, StubResponse
from PIL import Image

from pyxled.client import XledClient
from pyxled.device import DeviceProfile, Mode
from pyxled.errors import (
    ApiError,
    AuthError,
    DimensionError,
    FrameTooLargeError,
    TransportError,
)
from pyxled.session import SessionState
from pyxled.sink import SinkState

TOKEN = base64.b64encode(b"device-token").decode()


class FakeDevice:
    """Minimal device state behind the stubbed routes."""

    def __init__(self, led_count: int = 4, frame_capacity: int = 10) -> None:
        self.mode = "movie"
        self.logins = 0
        self.uploads: list[bytes] = []
        self.movie_config: dict | None = None
        self.gestalt = {
            "code": 1000,
            "product_name": "Twinkly",
            "number_of_led": led_count,
            "movie_capacity": frame_capacity,
        }

    def login(self, kwargs):
        self.logins += 1
        assert "challenge" in kwargs["json"]
        return {
            "code": 1000,
            "authentication_token": TOKEN,
            "authentication_token_expires_in": 14400,
            "challenge-response": "c0ffee",
        }

    def set_mode(self, kwargs):
        assert kwargs["headers"]["X-Auth-Token"] == TOKEN
        self.mode = kwargs["json"]["mode"]
        return {"code": 1000}

    def upload(self, kwargs):
        self.uploads.append(kwargs["data"])
        frame_size = 3 * self.gestalt["number_of_led"]
        return {"code": 1000, "frames_number": len(kwargs["data"]) // frame_size}

    def configure(self, kwargs):
        self.movie_config = kwargs["json"]
        return {"code": 1000}

    def routes(self):
        return {
            ("POST", "login"): self.login,
            ("POST", "verify"): {"code": 1000},
            ("GET", "gestalt"): lambda kwargs: dict(self.gestalt),
            ("GET", "led/mode"): lambda kwargs: {"code": 1000, "mode": self.mode},
            ("POST", "led/mode"): self.set_mode,
            ("GET", "led/reset"): {"code": 1000},
            ("POST", "led/movie/full"): self.upload,
            ("POST", "led/movie/config"): self.configure,
        }


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def http(device):
    return StubHttp(device.routes())


@pytest.fixture
def client(http):
    xled = XledClient("10.0.0.5", http=http, clock=FakeClock())
    yield xled
    xled.close()


def test_login_handshake(client, http):
    token = client.login()

    assert token.raw == b"device-token"
    assert token.lifetime == 14400
    assert http.paths() == ["POST login", "POST verify"]
    _, _, verify = http.calls[1]
    assert verify["headers"] == {"X-Auth-Token": TOKEN}
    assert verify["json"] == {"challenge-response": "c0ffee"}
    assert verify["timeout"] == 5.0


def test_calls_reuse_token(client, device):
    client.gestalt()
    client.get_mode()
    assert device.logins == 1


def test_login_http_failure(client, http):
    http.routes[("POST", "login")] = StubResponse(401, {"code": 1104})
    with pytest.raises(AuthError, match="HTTP 401"):
        client.login()
    assert client.session.state is SessionState.UNAUTHENTICATED


def test_login_missing_fields(client, http):
    http.routes[("POST", "login")] = {"code": 1000, "authentication_token": TOKEN}
    with pytest.raises(AuthError, match="unexpected response"):
        client.login()


def test_verify_rejected(client, http):
    http.routes[("POST", "verify")] = {"code": 1105}
    with pytest.raises(AuthError, match="code 1105"):
        client.login()


def test_connection_error_during_login(client, http):
    http.routes[("POST", "login")] = requests.ConnectionError("refused")
    with pytest.raises(AuthError):
        client.login()


def test_gestalt_and_profile(client):
    assert client.gestalt()["product_name"] == "Twinkly"
    assert "code" not in client.gestalt()
    assert client.device_profile() == DeviceProfile(led_count=4, frame_capacity=10)


def test_bad_gestalt(client, device):
    del device.gestalt["movie_capacity"]
    with pytest.raises(ApiError):
        client.device_profile()


def test_non_json_response(client, http):
    http.routes[("GET", "gestalt")] = StubResponse(200, ValueError("no json"))
    with pytest.raises(ApiError, match="not JSON"):
        client.gestalt()


def test_set_mode_reports_new_mode(client, http, device):
    seen = []
    client.on_mode_change = seen.append

    assert client.set_mode(Mode.RT) is Mode.RT
    assert device.mode == "rt"
    assert client.get_mode() is Mode.RT
    assert seen == [Mode.RT]


def test_set_mode_failure_is_raised(client, http):
    http.routes[("POST", "led/mode")] = StubResponse(500, {"code": 1103})
    with pytest.raises(ApiError) as excinfo:
        client.set_mode(Mode.RT)
    assert excinfo.value.status == 500


def test_unlisted_mode_is_returned_by_name(client, device):
    seen = []
    client.on_mode_change = seen.append
    device.mode = "warp"

    assert client.get_mode() == "warp"
    assert client.get_mode() == "warp"
    assert seen == ["warp"]


def test_set_mode_tolerates_unlisted_reported_mode(client, http):
    http.routes[("GET", "led/mode")] = {"code": 1000, "mode": "warp"}
    assert client.set_mode(Mode.MOVIE) == "warp"


def test_mode_response_without_mode(client, http):
    http.routes[("GET", "led/mode")] = {"code": 1000}
    with pytest.raises(ApiError, match="unexpected response"):
        client.get_mode()


def test_connection_callbacks_fire_once_per_transition(http):
    events = []
    xled = XledClient(
        "10.0.0.5",
        http=http,
        clock=FakeClock(),
        on_connect=lambda info: events.append(("up", info["product_name"])),
        on_disconnect=lambda err: events.append(("down", type(err))),
    )
    gestalt = http.routes[("GET", "gestalt")]
    try:
        assert xled.connected is None
        assert xled.check_connection()
        assert xled.check_connection()

        http.routes[("GET", "gestalt")] = requests.ConnectionError("unreachable")
        assert not xled.check_connection()
        assert not xled.check_connection()
        assert xled.connected is False
        with pytest.raises(ApiError):
            xled.gestalt()

        http.routes[("GET", "gestalt")] = gestalt
        assert xled.check_connection()
        assert xled.connected is True
    finally:
        xled.close()

    assert events == [("up", "Twinkly"), ("down", ApiError), ("up", "Twinkly")]


def test_keepalive_polls_in_background(http):
    connected = threading.Event()
    xled = XledClient(
        "10.0.0.5",
        http=http,
        clock=FakeClock(),
        on_connect=lambda info: connected.set(),
        keepalive_interval=0.01,
    )
    try:
        assert connected.wait(2.0)
    finally:
        xled.close()

    polls = http.paths().count("GET gestalt")
    assert polls >= 1
    time.sleep(0.05)
    assert http.paths().count("GET gestalt") == polls


def test_keepalive_start_and_stop(client):
    with pytest.raises(ValueError):
        client.start_keepalive(0)
    client.stop_keepalive()
    client.start_keepalive(60.0)
    client.start_keepalive(60.0)
    client.stop_keepalive()
    client.stop_keepalive()


def test_upload_movie(client, http, device):
    img = Image.new("RGB", (4, 3), (9, 8, 7))

    assert client.upload_movie(img, fps=20) == 3

    assert device.uploads == [img.tobytes()]
    assert device.movie_config == {"frame_delay": 50, "leds_number": 4, "frames_number": 3}
    assert device.mode == "movie"
    upload = next(kw for method, path, kw in http.calls if path == "led/movie/full")
    assert upload["headers"]["Content-Type"] == "application/octet-stream"
    assert http.paths()[-3:] == ["GET led/reset", "POST led/mode", "GET led/mode"]


def test_upload_movie_wrong_size(client, http):
    with pytest.raises(DimensionError):
        client.upload_movie(Image.new("RGB", (5, 3)))
    assert "POST led/movie/full" not in http.paths()


def test_upload_movie_frame_count_mismatch(client, http):
    http.routes[("POST", "led/movie/full")] = {"code": 1000, "frames_number": 1}
    with pytest.raises(ApiError, match="stored 1 frames"):
        client.upload_movie(Image.new("RGB", (4, 3)))


def test_realtime_stream_lifecycle(client, device):
    sock = RecordingSocket()
    sink = client.start_realtime_stream(socket_factory=lambda: sock)

    assert device.mode == "rt"
    assert sink.profile == DeviceProfile(4, 10)
    assert sink.address == ("10.0.0.5", 7777)
    assert client.session.auto_renewing

    sink.accept([(255, 0, 0)] * 4)
    assert sock.sent[0][0] == b"\x01device-token\x04" + bytes([255, 0, 0]) * 4

    sink.close()
    assert device.mode == "movie"
    assert sock.closed
    assert not client.session.auto_renewing
    assert sink.state is SinkState.CLOSED


def test_stream_close_reports_mode_failure(client, http):
    sock = RecordingSocket()
    sink = client.start_realtime_stream(socket_factory=lambda: sock)
    http.routes[("POST", "led/mode")] = requests.Timeout("slow device")

    error = sink.close()

    assert isinstance(error, ApiError)
    assert sock.closed
    assert not client.session.auto_renewing


def test_realtime_start_rejects_oversized_device():
    device = FakeDevice(led_count=300)
    http = StubHttp(device.routes())
    xled = XledClient("10.0.0.5", http=http, clock=FakeClock())
    try:
        with pytest.raises(FrameTooLargeError):
            xled.start_realtime_stream(socket_factory=RecordingSocket)
        assert device.mode == "movie"
        assert "POST led/mode" not in http.paths()
        assert not xled.session.auto_renewing
    finally:
        xled.close()


def test_realtime_start_failure_leaves_realtime_mode(client, http, device):
    def refuse():
        raise OSError(errno.EMFILE, "Too many open files")

    with pytest.raises(TransportError):
        client.start_realtime_stream(socket_factory=refuse)

    assert device.mode == "movie"
    assert http.paths().count("POST led/mode") == 2
    assert not client.session.auto_renewing


def test_close_client(client, http):
    client.login()
    client.close()
    assert http.closed
    assert client.session.state is SessionState.CLOSED
