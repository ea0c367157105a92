"""
Authentication boundary.

The interactive sign-in flow lives elsewhere. It hands this module a
uid, an ID token, a refresh token, and an expiry; from then on the sync
engine only asks three things:

    current_token()   the bearer token and when it stops working
    refresh()         swap the refresh token for a new ID token
    sign_out()        forget everything

Refresh failures come in two flavours. Permanent ones (revoked or
disabled account, unknown refresh token) mean the user must sign in
again. Transient ones (network trouble, server errors) leave the stored
credentials alone and the next cycle tries again.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import NamedTuple, Optional

import requests
from pydantic import BaseModel

from .errors import AuthFailure

logger = logging.getLogger("taskroulette.auth")

SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"
CREDENTIALS_FILE = "credentials.json"

# Error codes from the secure-token endpoint that mean the refresh
# token will never work again.
PERMANENT_REFRESH_ERRORS = frozenset({
    "TOKEN_EXPIRED",
    "USER_DISABLED",
    "USER_NOT_FOUND",
    "INVALID_REFRESH_TOKEN",
    "INVALID_GRANT_TYPE",
    "MISSING_REFRESH_TOKEN",
})


class TokenInfo(NamedTuple):
    """A bearer token and its absolute expiry (epoch seconds)."""

    token: str
    expires_at: float


class Credentials(NamedTuple):
    """What the remote client needs for one call: who, and with what token."""

    uid: str
    token: str


class AuthSession(BaseModel):
    """Persisted sign-in state."""

    uid: str
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    email: Optional[str] = None
    display_name: Optional[str] = None


class AuthProvider(ABC):
    """What the sync coordinator needs from authentication."""

    @property
    @abstractmethod
    def uid(self) -> Optional[str]:
        """The signed-in identity, or None."""

    @abstractmethod
    def current_token(self) -> Optional[TokenInfo]:
        """The current bearer token, or None if there is none."""

    @abstractmethod
    def refresh(self) -> bool:
        """Obtain a fresh token.

        Returns:
            True on success.

        Raises:
            AuthFailure: With ``permanent`` set when the user must sign
                in again.
        """

    @abstractmethod
    def sign_out(self) -> None:
        """Forget all stored credentials."""

    @property
    def is_signed_in(self) -> bool:
        return self.uid is not None


class FirebaseAuth(AuthProvider):
    """Firebase ID tokens, refreshed through the secure-token REST API.

    Args:
        home: TaskRoulette home; credentials live in <home>/auth/.
        api_key: Firebase web API key.
        timeout: Seconds before a refresh request is abandoned.
        session: HTTP session, injectable for tests.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        home: Path,
        api_key: Optional[str],
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        clock=time.time,
    ):
        self.auth_dir = Path(home).expanduser() / "auth"
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()
        self._clock = clock
        self._state = self._load()

    @property
    def credentials_file(self) -> Path:
        return self.auth_dir / CREDENTIALS_FILE

    def _load(self) -> Optional[AuthSession]:
        if not self.credentials_file.exists():
            return None
        try:
            data = json.loads(self.credentials_file.read_text(encoding="utf-8"))
            return AuthSession(**data)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Failed to load credentials: %s", exc)
            return None

    def _save(self) -> None:
        self.auth_dir.mkdir(parents=True, exist_ok=True)
        self.credentials_file.write_text(
            self._state.model_dump_json(indent=2), encoding="utf-8"
        )
        self.credentials_file.chmod(0o600)

    @property
    def session(self) -> Optional[AuthSession]:
        return self._state

    @property
    def uid(self) -> Optional[str]:
        return self._state.uid if self._state else None

    def store_session(self, session: AuthSession) -> None:
        """Accept the result of the external sign-in flow."""
        self._state = session
        self._save()
        logger.info("Signed in as %s", session.uid)

    def current_token(self) -> Optional[TokenInfo]:
        if self._state is None or not self._state.id_token:
            return None
        return TokenInfo(self._state.id_token, self._state.expires_at or 0.0)

    def refresh(self) -> bool:
        if self._state is None or not self._state.refresh_token:
            raise AuthFailure("No refresh token stored", permanent=True)
        if not self.api_key:
            raise AuthFailure("Firebase API key not configured", permanent=False)

        try:
            resp = self._session.post(
                SECURE_TOKEN_URL,
                params={"key": self.api_key},
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self._state.refresh_token,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise AuthFailure(f"Token refresh unreachable: {exc}", permanent=False) from exc

        if resp.status_code == 200:
            try:
                body = resp.json()
                id_token = body["id_token"]
                expires_in = int(body.get("expires_in", 3600))
            except (KeyError, TypeError, ValueError) as exc:
                raise AuthFailure(
                    f"Malformed token refresh response: {exc!r}", permanent=False
                ) from exc
            self._state.id_token = id_token
            self._state.refresh_token = body.get("refresh_token", self._state.refresh_token)
            self._state.expires_at = self._clock() + expires_in
            self._save()
            logger.info("Refreshed ID token for %s", self._state.uid)
            return True

        code = _error_code(resp)
        permanent = resp.status_code in (400, 401, 403) and code in PERMANENT_REFRESH_ERRORS
        raise AuthFailure(
            f"Token refresh failed: {resp.status_code} {code or ''}".strip(),
            permanent=permanent,
        )

    def sign_out(self) -> None:
        self._state = None
        self.credentials_file.unlink(missing_ok=True)
        logger.info("Signed out")


def _error_code(resp: requests.Response) -> Optional[str]:
    """Pull the error code out of a Google API error body."""
    try:
        body = resp.json()
    except ValueError:
        return None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        message = error.get("message") or ""
        return message.split(":")[0].strip() or None
    if isinstance(error, str):
        return error.upper()
    return None


class StaticAuth(AuthProvider):
    """A fixed identity with a token that never expires.

    Used with the local directory backend, where nobody checks tokens.
    """

    def __init__(self, uid: str = "local", token: str = "local"):
        self._uid: Optional[str] = uid
        self._token = token

    @property
    def uid(self) -> Optional[str]:
        return self._uid

    def current_token(self) -> Optional[TokenInfo]:
        if self._uid is None:
            return None
        return TokenInfo(self._token, float("inf"))

    def refresh(self) -> bool:
        if self._uid is None:
            raise AuthFailure("Signed out", permanent=True)
        return True

    def sign_out(self) -> None:
        self._uid = None
