"""Signed-in identity persisted in key/value storage.

Two slots hold the same compact JSON identity: ``currentUser`` and the
legacy alias ``user`` still read by older screens.  Only
:meth:`SessionManager._write_identity` writes them, so they can never drift
apart.  ``loginTime`` holds the login instant in epoch milliseconds and
drives the absolute session expiry.  ``authToken`` keeps the bearer token
issued at login so a restarted client can resume the session.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from dentdesk.api import BAD_GATEWAY_STATUS, ApiError, ApiService
from dentdesk.models import User
from dentdesk.storage import KeyValueStorage
from dentdesk.time_utils import from_epoch_millis, now_ms

logger = structlog.get_logger(__name__)

CURRENT_USER_KEY = "currentUser"
LEGACY_USER_KEY = "user"
LOGIN_TIME_KEY = "loginTime"
AUTH_TOKEN_KEY = "authToken"
IDENTITY_KEYS = (CURRENT_USER_KEY, LEGACY_USER_KEY)
SESSION_KEYS = (CURRENT_USER_KEY, LEGACY_USER_KEY, LOGIN_TIME_KEY, AUTH_TOKEN_KEY)

DEFAULT_TTL_MS = 5 * 60 * 60 * 1000

LOGIN_PATH = "/login"

Clock = Callable[[], int]


def serialize_identity(identity: Mapping[str, Any]) -> str:
    """Serialise like ``JSON.stringify``: compact separators, raw unicode."""

    return json.dumps(dict(identity), separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class Session:
    """Snapshot of the persisted session."""

    identity: Dict[str, Any]
    login_time: Optional[int]

    @property
    def user(self) -> User:
        return User.model_validate(self.identity)

    @property
    def role(self) -> Optional[str]:
        role = self.identity.get("role")
        return role if isinstance(role, str) else None


class SessionManager:
    """Establish, read and tear down the dashboard session.

    ``origin`` tags every storage write so listeners in the same process can
    tell their own writes from those of another window.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        api: Optional[ApiService] = None,
        *,
        ttl_ms: int = DEFAULT_TTL_MS,
        clock: Clock = now_ms,
        origin: Optional[str] = None,
    ) -> None:
        self.storage = storage
        self.api = api
        self.ttl_ms = ttl_ms
        self.clock = clock
        self.origin = origin or uuid.uuid4().hex

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def current_identity(self) -> Optional[Dict[str, Any]]:
        """Return the stored identity, preferring ``currentUser``.

        Unparseable slots are cleared and treated as no session.
        """

        raw = self.storage.get_item(CURRENT_USER_KEY) or self.storage.get_item(LEGACY_USER_KEY)
        if not raw:
            return None
        try:
            identity = json.loads(raw)
        except ValueError:
            identity = None
        if not isinstance(identity, dict):
            logger.warning("session_identity_unparseable")
            self._remove_keys(IDENTITY_KEYS)
            return None
        return identity

    def current_user(self) -> Optional[User]:
        identity = self.current_identity()
        if identity is None:
            return None
        return User.model_validate(identity)

    def login_time(self) -> Optional[int]:
        return from_epoch_millis(self.storage.get_item(LOGIN_TIME_KEY))

    def snapshot(self) -> Optional[Session]:
        identity = self.current_identity()
        if identity is None:
            return None
        return Session(identity=identity, login_time=self.login_time())

    def is_expired(self, now: Optional[int] = None) -> bool:
        """True when more than ``ttl_ms`` has passed since ``loginTime``."""

        started = self.login_time()
        if started is None:
            return False
        current = self.clock() if now is None else now
        return current - started > self.ttl_ms

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def establish(self, identity: Mapping[str, Any], *, token: Optional[str] = None) -> User:
        """Persist ``identity`` as the signed-in user and start the expiry clock."""

        self._write_identity(identity)
        self.storage.set_item(LOGIN_TIME_KEY, str(self.clock()), origin=self.origin)
        if token:
            self.storage.set_item(AUTH_TOKEN_KEY, token, origin=self.origin)
        else:
            self.storage.remove_item(AUTH_TOKEN_KEY, origin=self.origin)
        if self.api is not None:
            self.api.set_token(token)
        user = User.model_validate(dict(identity))
        logger.info("session_established", user_id=user.id, role=user.role)
        return user

    def restore_token(self) -> Optional[str]:
        """Hand the persisted bearer token to the API client, if a session exists."""

        token = self.storage.get_item(AUTH_TOKEN_KEY)
        if not token or self.current_identity() is None:
            return None
        if self.api is not None:
            self.api.set_token(token)
        return token

    def ensure_login_time(self) -> int:
        """Record ``loginTime`` if an older client left it unset; return it."""

        started = self.login_time()
        if started is None:
            started = self.clock()
            self.storage.set_item(LOGIN_TIME_KEY, str(started), origin=self.origin)
        return started

    async def login(self, username: str, password: str) -> User:
        """Authenticate against ``POST /auth/login`` and persist the session."""

        api = self._require_api()
        try:
            response = await api.login(username, password)
        except ApiError as exc:
            logger.info("session_login_failed", username=username, status=exc.status)
            raise
        return self._establish_from_response(response)

    async def register(self, payload: Mapping[str, Any]) -> User:
        """Register a staff account and sign it in, like :meth:`login`."""

        response = await self._require_api().register(payload)
        return self._establish_from_response(response)

    def clear(self) -> None:
        """Remove every session slot and drop the bearer token."""

        self._remove_keys(SESSION_KEYS)
        if self.api is not None:
            self.api.set_token(None)

    def logout(self, navigator: Optional[Any] = None) -> None:
        """Clear the session; ``navigator`` (if given) is sent to the login view."""

        self.clear()
        logger.info("session_logged_out")
        if navigator is not None:
            navigator.replace(LOGIN_PATH)

    def expire(self) -> None:
        """Clear the session because its lifetime elapsed."""

        self.clear()
        logger.info("session_expired")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_api(self) -> ApiService:
        if self.api is None:
            raise RuntimeError("SessionManager was created without an ApiService")
        return self.api

    def _establish_from_response(self, response: Any) -> User:
        user = response.get("user") if isinstance(response, Mapping) else None
        if not isinstance(user, Mapping):
            raise ApiError(BAD_GATEWAY_STATUS, "Login response did not include a user")
        return self.establish(user, token=response.get("token"))

    def _write_identity(self, identity: Mapping[str, Any]) -> None:
        serialized = serialize_identity(identity)
        for key in IDENTITY_KEYS:
            self.storage.set_item(key, serialized, origin=self.origin)

    def _remove_keys(self, keys: tuple) -> None:
        for key in keys:
            self.storage.remove_item(key, origin=self.origin)


__all__ = [
    "AUTH_TOKEN_KEY",
    "CURRENT_USER_KEY",
    "DEFAULT_TTL_MS",
    "IDENTITY_KEYS",
    "LEGACY_USER_KEY",
    "LOGIN_PATH",
    "LOGIN_TIME_KEY",
    "SESSION_KEYS",
    "Session",
    "SessionManager",
    "serialize_identity",
]
