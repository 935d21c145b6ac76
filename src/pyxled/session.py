"""Session token issuance and renewal.

The device hands out a token through a two-step challenge handshake: the
client posts a random challenge to ``/login`` and receives a token plus a
challenge response, then posts the challenge response to ``/verify`` with the
new token. The token is only valid for the lifetime the device reports, so a
manager renews it in the background while a stream is active.

Tokens are immutable. Renewal publishes a new :class:`SessionToken` with a
single reference assignment, so readers of :meth:`SessionManager.current_token`
never take a lock and never see a half-updated token.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from pyxled.errors import AuthError

DEFAULT_REUSE_WINDOW = 15.0  # seconds a fresh token is reused without a handshake
DEFAULT_RENEW_FRACTION = 0.5  # renew after this fraction of the reported lifetime
DEFAULT_TOKEN_LIFETIME = 14400.0  # used when the device does not report one
CHALLENGE_BYTES = 32

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle states of a :class:`SessionManager`."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    RENEWING = "renewing"
    CLOSED = "closed"


@dataclass(frozen=True)
class TokenGrant:
    """Response of the login step of the handshake."""

    token: str
    challenge_response: str
    lifetime: float


@dataclass(frozen=True)
class SessionToken:
    """An issued session token.

    Attributes:
        value: Base64 token text, sent as the ``X-Auth-Token`` header
        raw: Decoded token bytes, embedded in real-time packets
        issued_at: Clock reading when the handshake completed
        lifetime: Validity in seconds as reported by the device
    """

    value: str
    raw: bytes
    issued_at: float
    lifetime: float

    def age(self, now: float) -> float:
        return now - self.issued_at

    def expired(self, now: float) -> bool:
        return self.age(now) >= self.lifetime


class Authenticator(Protocol):
    """The two REST calls a :class:`SessionManager` needs."""

    def request_token(self, challenge: str) -> TokenGrant: ...

    def verify_token(self, token: str, challenge_response: str) -> None: ...


def generate_challenge() -> str:
    """Random base64 challenge for the login step."""
    return base64.b64encode(os.urandom(CHALLENGE_BYTES)).decode("ascii")


def decode_token(value: str) -> bytes:
    """Decode the base64 token text into the bytes used on the wire.

    Raises:
        AuthError: If the token is not valid base64
    """
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise AuthError(f"Token is not valid base64: {value!r}") from err


class SessionManager:
    """Owns the authentication token and keeps it fresh.

    Example:
        >>> session = SessionManager(client)
        >>> token = session.login()
        >>> session.start_auto_renew()
        >>> ...
        >>> session.close()
    """

    def __init__(
        self,
        authenticator: Authenticator,
        reuse_window: float = DEFAULT_REUSE_WINDOW,
        renew_fraction: float = DEFAULT_RENEW_FRACTION,
        clock: Callable[[], float] = time.monotonic,
        on_renewal_error: Callable[[AuthError], None] | None = None,
        on_state_change: Callable[[SessionState, SessionState], None] | None = None,
    ) -> None:
        """Initialize a session manager.

        Args:
            authenticator: Performs the login and verify REST calls
            reuse_window: Seconds during which login() returns the cached token
            renew_fraction: Default renewal interval as a fraction of the token lifetime
            clock: Monotonic time source, injectable for tests
            on_renewal_error: Called with the error when a background renewal fails
            on_state_change: Called with (old, new) once per state transition

        Raises:
            ValueError: If renew_fraction is not in (0, 1)
        """
        if not 0 < renew_fraction < 1:
            raise ValueError(f"renew_fraction must be between 0 and 1, got {renew_fraction}")
        self.authenticator = authenticator
        self.reuse_window = reuse_window
        self.renew_fraction = renew_fraction
        self.clock = clock
        self.on_renewal_error = on_renewal_error
        self.on_state_change = on_state_change

        self._token: SessionToken | None = None
        self._state = SessionState.UNAUTHENTICATED
        self._handshake_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._renew_thread: threading.Thread | None = None
        self._renew_stop: threading.Event | None = None
        self.handshakes = 0

    @property
    def state(self) -> SessionState:
        return self._state

    def _set_state(self, new: SessionState) -> None:
        with self._state_lock:
            old = self._state
            if old is new:
                return
            self._state = new
        logger.debug("Session state %s -> %s", old.value, new.value)
        if self.on_state_change is not None:
            self.on_state_change(old, new)

    def current_token(self) -> SessionToken:
        """The most recently issued token.

        Raises:
            AuthError: If no login has succeeded yet
        """
        token = self._token
        if token is None:
            raise AuthError("No session token, login() has not succeeded")
        return token

    def _reusable(self, token: SessionToken | None, now: float) -> bool:
        if token is None:
            return False
        window = min(self.reuse_window, token.lifetime)
        return token.age(now) < window

    def login(self, force: bool = False) -> SessionToken:
        """Return a valid token, running the handshake only when needed.

        Args:
            force: Skip the reuse window and always run the handshake

        Returns:
            The cached token if it is younger than the reuse window, otherwise
            a freshly issued one

        Raises:
            AuthError: If either handshake step fails or the manager is closed
        """
        if self._state is SessionState.CLOSED:
            raise AuthError("Session manager is closed")
        if not force and self._reusable(self._token, self.clock()):
            return self._token  # type: ignore[return-value]

        with self._handshake_lock:
            # Another thread may have finished a handshake while we waited
            if not force and self._reusable(self._token, self.clock()):
                return self._token  # type: ignore[return-value]
            if self._state is SessionState.CLOSED:
                raise AuthError("Session manager is closed")

            previous = self._state
            renewing = self._token is not None
            self._set_state(SessionState.RENEWING if renewing else SessionState.AUTHENTICATING)
            try:
                token = self._handshake()
            except AuthError:
                if self._state is not SessionState.CLOSED:
                    self._set_state(
                        SessionState.ACTIVE if renewing else SessionState.UNAUTHENTICATED
                    )
                raise
            except BaseException:
                if self._state is not SessionState.CLOSED:
                    self._set_state(previous)
                raise

            self._token = token
            if self._state is not SessionState.CLOSED:
                self._set_state(SessionState.ACTIVE)
            return token

    def _handshake(self) -> SessionToken:
        challenge = generate_challenge()
        grant = self.authenticator.request_token(challenge)
        if not grant.token or not grant.challenge_response:
            raise AuthError("Login response is missing the token or challenge response")
        raw = decode_token(grant.token)
        self.authenticator.verify_token(grant.token, grant.challenge_response)
        self.handshakes += 1
        lifetime = grant.lifetime if grant.lifetime > 0 else DEFAULT_TOKEN_LIFETIME
        logger.debug("Issued session token, lifetime %.0fs", lifetime)
        return SessionToken(value=grant.token, raw=raw, issued_at=self.clock(), lifetime=lifetime)

    def renew(self) -> SessionToken | None:
        """Force a new handshake, reporting failures instead of raising.

        Returns:
            The new token, or None if renewal failed and the previous token is kept
        """
        try:
            return self.login(force=True)
        except AuthError as err:
            if self._state is SessionState.CLOSED:
                return None
            logger.warning("Session renewal failed, keeping stale token: %s", err)
            if self.on_renewal_error is not None:
                self.on_renewal_error(err)
            return None

    def renew_interval(self) -> float:
        """Default renewal cadence derived from the reported token lifetime."""
        return self.current_token().lifetime * self.renew_fraction

    def start_auto_renew(self, interval: float | None = None) -> None:
        """Renew the token periodically on a background thread.

        Calling this while renewal is already running does nothing.

        Args:
            interval: Seconds between renewals, defaults to renew_interval()

        Raises:
            AuthError: If no token has been issued yet
            ValueError: If interval is not strictly shorter than the token lifetime
        """
        token = self.current_token()
        if interval is None:
            interval = self.renew_interval()
        if not 0 < interval < token.lifetime:
            raise ValueError(
                f"Renewal interval {interval}s must be positive and shorter than "
                f"the token lifetime {token.lifetime}s"
            )

        with self._state_lock:
            if self._renew_thread is not None:
                return
            stop = threading.Event()
            thread = threading.Thread(
                target=self._renew_loop,
                args=(interval, stop),
                name="pyxled-session-renew",
                daemon=True,
            )
            self._renew_stop = stop
            self._renew_thread = thread
        logger.debug("Starting session auto-renew every %.2fs", interval)
        thread.start()

    def _renew_loop(self, interval: float, stop: threading.Event) -> None:
        while not stop.wait(interval):
            self.renew()

    @property
    def auto_renewing(self) -> bool:
        return self._renew_thread is not None

    def stop_auto_renew(self, timeout: float | None = 5.0) -> None:
        """Cancel background renewal. Safe to call repeatedly."""
        with self._state_lock:
            thread, stop = self._renew_thread, self._renew_stop
            self._renew_thread = None
            self._renew_stop = None
        if thread is None or stop is None:
            return
        stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.debug("Stopped session auto-renew")

    def close(self) -> None:
        """Stop renewal and refuse further logins."""
        self.stop_auto_renew()
        self._set_state(SessionState.CLOSED)
