"""Shared fakes for the pyxled tests."""

from __future__ import annotations

import base64
import errno
import socket
import threading
from typing import Any

import pytest

from pyxled.device import DeviceProfile, Mode
from pyxled.errors import AuthError
from pyxled.session import SessionManager, TokenGrant


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAuthenticator:
    """Issues tokens b"tok-1", b"tok-2", ... base64 encoded."""

    def __init__(self, lifetime: float = 14400.0) -> None:
        self.lifetime = lifetime
        self.challenges: list[str] = []
        self.verified: list[tuple[str, str]] = []
        self.fail_login = False
        self.fail_verify = False

    @staticmethod
    def encode(raw: bytes) -> str:
        return base64.b64encode(raw).decode("ascii")

    def request_token(self, challenge: str) -> TokenGrant:
        self.challenges.append(challenge)
        if self.fail_login:
            raise AuthError("Login: HTTP 401")
        raw = f"tok-{len(self.challenges)}".encode()
        return TokenGrant(
            token=self.encode(raw),
            challenge_response=f"response-{len(self.challenges)}",
            lifetime=self.lifetime,
        )

    def verify_token(self, token: str, challenge_response: str) -> None:
        if self.fail_verify:
            raise AuthError("Verify: device returned code 1105")
        self.verified.append((token, challenge_response))


class RecordingSocket:
    """Datagram socket stand-in recording what is sent."""

    def __init__(self, error: OSError | None = None) -> None:
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.error = error
        self.closed = False
        self.close_calls = 0

    def sendto(self, data: bytes, address: tuple[str, int]) -> int:
        if self.closed:
            raise OSError(9, "Bad file descriptor")
        if self.error is not None:
            raise self.error
        self.sent.append((bytes(data), address))
        return len(data)

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class BlockingSocket(RecordingSocket):
    """Holds each send until release is set, like a send stuck in the kernel."""

    def __init__(self, fail_if_closed: bool = False) -> None:
        super().__init__()
        self.fail_if_closed = fail_if_closed
        self.sending = threading.Event()
        self.release = threading.Event()

    def sendto(self, data: bytes, address: tuple[str, int]) -> int:
        self.sending.set()
        if not self.release.wait(5.0):
            raise OSError(errno.ETIMEDOUT, "send never released")
        if self.closed and self.fail_if_closed:
            raise OSError(errno.EBADF, "Bad file descriptor")
        self.sent.append((bytes(data), address))
        return len(data)


class FakeModes:
    def __init__(self, error: Exception | None = None) -> None:
        self.modes: list[Mode] = []
        self.error = error

    def set_mode(self, mode: Mode) -> Mode:
        self.modes.append(mode)
        if self.error is not None:
            raise self.error
        return mode


class StubResponse:
    def __init__(self, status_code: int = 200, body: Any = None) -> None:
        self.status_code = status_code
        self._body = body

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self) -> Any:
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class StubHttp:
    """requests.Session stand-in routing (method, path) to canned responses."""

    def __init__(self, routes: dict[tuple[str, str], Any]) -> None:
        self.routes = routes
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.closed = False

    def request(self, method: str, url: str, **kwargs: Any) -> StubResponse:
        path = url.split("/xled/v1/", 1)[1]
        self.calls.append((method, path, kwargs))
        route = self.routes[(method, path)]
        if callable(route):
            route = route(kwargs)
        if isinstance(route, Exception):
            raise route
        if isinstance(route, StubResponse):
            return route
        return StubResponse(200, route)

    def paths(self) -> list[str]:
        return [f"{method} {path}" for method, path, _ in self.calls]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def authenticator() -> FakeAuthenticator:
    return FakeAuthenticator()


@pytest.fixture
def session(authenticator: FakeAuthenticator, clock: FakeClock) -> SessionManager:
    manager = SessionManager(authenticator, clock=clock)
    yield manager
    manager.close()


@pytest.fixture
def profile() -> DeviceProfile:
    return DeviceProfile(led_count=4, frame_capacity=10)


@pytest.fixture
def udp_receiver():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()
