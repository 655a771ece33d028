"""Session client for the Synology DSM web API.

The appliance speaks a query-parameter protocol against a single
``webapi/entry.cgi`` endpoint. Every response is a JSON envelope of the form
``{"success": bool, "data": {...}, "error": {"code": int}}`` and a handful of
error codes carry meaning that callers rely upon (absent user, duplicate
user, expired session).

A :class:`SynologyClient` holds at most one session. The session is opened
lazily before the first stateful call and is represented explicitly as
either :class:`Unauthenticated` or :class:`Authenticated`, so a half-populated
session can never be observed. Instances are not safe for concurrent use;
each reconciliation owns its own client.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, NoReturn
from urllib.parse import urlparse

import requests

from .errors import (
    AuthenticationFailed,
    InvalidEndpoint,
    ProtocolError,
    RemoteAPIError,
    SessionExpired,
    SynologyError,
    TransportError,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
ENTRY_PATH = "webapi/entry.cgi"

AUTH_API = "SYNO.API.Auth"
AUTH_API_VERSION = "7"
USER_API = "SYNO.Core.User"
USER_API_VERSION = "1"
SESSION_NAME = "Core"
TOKEN_HEADER = "X-SYNO-TOKEN"

# ``get`` reports a missing user as 3106 while ``delete`` uses 407.
ERROR_USER_NOT_FOUND = frozenset({407, 3106})
ERROR_USER_EXISTS = frozenset({3100})
ERROR_SESSION_EXPIRED = frozenset({106, 119})
UNKNOWN_ERROR_CODE = -1


@dataclass(frozen=True, slots=True)
class Unauthenticated:
    """No session is currently held."""


@dataclass(frozen=True, slots=True)
class Authenticated:
    """A live session: the session id plus its anti-forgery token."""

    sid: str
    token: str = field(repr=False)


SessionState = Unauthenticated | Authenticated

UNAUTHENTICATED = Unauthenticated()


@dataclass(frozen=True, slots=True)
class SynologyUser:
    """Minimal representation of a DSM user record."""

    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class _Envelope:
    success: bool
    data: Mapping[str, Any]
    code: int


class SynologyClient:
    """Authenticate against a DSM appliance and manage user accounts."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        verify_tls: bool = True,
        session: requests.Session | None = None,
    ) -> None:
        """Validate *base_url*; no network traffic happens until first use."""
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise InvalidEndpoint(
                f"Invalid appliance address {base_url!r}: scheme and host are required."
            )
        self._entry_url = f"{base_url.rstrip('/')}/{ENTRY_PATH}"
        self._username = username
        self._password = password
        self._timeout = timeout
        self._verify_tls = verify_tls
        self._owns_http = session is None
        self._http = session if session is not None else requests.Session()
        self._state: SessionState = UNAUTHENTICATED

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        """Return the current session state."""
        return self._state

    @property
    def is_authenticated(self) -> bool:
        """Return ``True`` while a session is held."""
        return isinstance(self._state, Authenticated)

    def login(self) -> Authenticated:
        """Open a new session, replacing any session currently held."""
        self._state = UNAUTHENTICATED
        envelope = self._request(
            {
                "api": AUTH_API,
                "version": AUTH_API_VERSION,
                "method": "login",
                "account": self._username,
                "passwd": self._password,
                "session": SESSION_NAME,
                "format": "sid",
                "enable_syno_token": "yes",
            },
            operation="login",
        )
        if not envelope.success:
            raise AuthenticationFailed(envelope.code)

        sid = envelope.data.get("sid")
        token = envelope.data.get("synotoken")
        if not isinstance(sid, str) or not sid:
            raise ProtocolError("Login reported success but returned an empty session id.")
        if not isinstance(token, str) or not token:
            raise ProtocolError("Login reported success but returned an empty synotoken.")

        state = Authenticated(sid=sid, token=token)
        self._state = state
        LOGGER.debug("Opened DSM session for %s", self._username)
        return state

    def ensure_session(self) -> Authenticated:
        """Return the held session, logging in first when none is held."""
        if isinstance(self._state, Authenticated):
            return self._state
        return self.login()

    def logout(self) -> None:
        """End the session; local state is cleared even if the request fails."""
        state = self._state
        if not isinstance(state, Authenticated):
            return
        try:
            envelope = self._request(
                {
                    "api": AUTH_API,
                    "version": AUTH_API_VERSION,
                    "method": "logout",
                    "session": SESSION_NAME,
                    "_sid": state.sid,
                },
                operation="logout",
                token=state.token,
            )
        finally:
            self._state = UNAUTHENTICATED
        if not envelope.success:
            LOGGER.debug("DSM logout reported error code %s", envelope.code)

    def close(self) -> None:
        """Log out best-effort and release the HTTP session if owned."""
        try:
            self.logout()
        except SynologyError as exc:
            LOGGER.warning("Failed to log out of DSM session: %s", exc)
        finally:
            if self._owns_http:
                self._http.close()

    def __enter__(self) -> SynologyClient:
        """Return the client; the session is still opened lazily."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        """Release the session on scope exit."""
        self.close()

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def get_user(self, name: str) -> SynologyUser | None:
        """Return the user record for *name*, or ``None`` when it does not exist."""
        envelope = self._user_call("get", {"name": name})
        if not envelope.success:
            if envelope.code in ERROR_USER_NOT_FOUND:
                return None
            self._raise_remote(envelope.code, "get user")

        users = envelope.data.get("users")
        if not isinstance(users, list) or not users:
            return None
        first = users[0]
        if not isinstance(first, Mapping):
            raise ProtocolError("User lookup returned a malformed user record.")
        return SynologyUser(name=str(first.get("name") or name), attributes=dict(first))

    def create_user(self, name: str, password: str) -> None:
        """Create *name*; an already existing user counts as success."""
        envelope = self._user_call("create", {"name": name, "password": password})
        if envelope.success:
            return
        if envelope.code in ERROR_USER_EXISTS:
            LOGGER.debug("DSM user %s already exists", name)
            return
        self._raise_remote(envelope.code, "create user")

    def delete_user(self, name: str) -> None:
        """Delete *name*; an absent user counts as success.

        When the appliance reports the session as expired the session is
        dropped, re-established once, and the delete is retried a single time.
        """
        envelope = self._user_call("delete", {"name": name})
        if envelope.success or envelope.code in ERROR_USER_NOT_FOUND:
            return
        if envelope.code in ERROR_SESSION_EXPIRED:
            LOGGER.debug("DSM session expired during delete; logging in again")
            self._state = UNAUTHENTICATED
            envelope = self._user_call("delete", {"name": name})
            if envelope.success or envelope.code in ERROR_USER_NOT_FOUND:
                return
        self._raise_remote(envelope.code, "delete user")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _user_call(self, method: str, params: Mapping[str, str]) -> _Envelope:
        state = self.ensure_session()
        query = {
            "api": USER_API,
            "version": USER_API_VERSION,
            "method": method,
            **params,
            "_sid": state.sid,
        }
        return self._request(query, operation=f"{method} user", token=state.token)

    def _raise_remote(self, code: int, operation: str) -> NoReturn:
        if code in ERROR_SESSION_EXPIRED:
            self._state = UNAUTHENTICATED
            raise SessionExpired(code, operation)
        raise RemoteAPIError(code, operation)

    def _request(
        self,
        params: Mapping[str, str],
        *,
        operation: str,
        token: str | None = None,
    ) -> _Envelope:
        headers = {"Accept": "application/json"}
        if token:
            headers[TOKEN_HEADER] = token

        LOGGER.debug("DSM request: %s", operation)
        try:
            response = self._http.get(
                self._entry_url,
                params=dict(params),
                headers=headers,
                timeout=self._timeout,
                verify=self._verify_tls,
            )
        except requests.RequestException as exc:
            raise TransportError(f"{operation} request failed: {exc}") from exc

        if not response.ok:
            raise TransportError(f"{operation} request failed: HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProtocolError(f"Failed to decode {operation} response: {exc}") from exc
        return _parse_envelope(payload, operation)


def _parse_envelope(payload: object, operation: str) -> _Envelope:
    if not isinstance(payload, Mapping):
        raise ProtocolError(f"{operation} response is not a JSON object.")
    success = payload.get("success")
    if not isinstance(success, bool):
        raise ProtocolError(f"{operation} response lacks a boolean 'success' field.")

    data = payload.get("data")
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ProtocolError(f"{operation} response carries a malformed 'data' field.")

    code = UNKNOWN_ERROR_CODE
    error = payload.get("error")
    if isinstance(error, Mapping):
        raw_code = error.get("code")
        if isinstance(raw_code, int) and not isinstance(raw_code, bool):
            code = raw_code
    return _Envelope(success=success, data=data, code=code)


__all__ = [
    "Authenticated",
    "DEFAULT_TIMEOUT",
    "ERROR_SESSION_EXPIRED",
    "ERROR_USER_EXISTS",
    "ERROR_USER_NOT_FOUND",
    "SessionState",
    "SynologyClient",
    "SynologyUser",
    "UNAUTHENTICATED",
    "Unauthenticated",
]
