"""Per-view access control.

:func:`decide_access` is the pure decision; :class:`AccessGate` feeds it from
the persisted session and applies the side effects (clearing expired
sessions, counting denials); :class:`ProtectedView` wraps a render callable
and runs the gate once per mount, after hydration.

Denials are redirects, never exceptions: a missing or expired session goes
to the login view, a valid session with the wrong role goes to the
dashboard landing page so the user is not told their credentials failed.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Generic,
    Iterable,
    List,
    Optional,
    Pattern,
    Protocol,
    Tuple,
    TypeVar,
)

import structlog
from prometheus_client import Counter

from dentdesk.roles import CanonicalRole, normalize_role, normalize_roles
from dentdesk.session import CURRENT_USER_KEY, LOGIN_PATH, SessionManager
from dentdesk.storage import StorageEvent

logger = structlog.get_logger(__name__)

EXPIRED_LOGIN_PATH = "/login?timeout"
HOME_PATH = "/dashboard"

ACCESS_DENIED = Counter(
    "dentdesk_access_denied_total",
    "Protected view mounts that were redirected",
    ("reason",),
)


class Outcome(str, Enum):
    ALLOW = "allow"
    LOGIN = "login"
    HOME = "home"


class DenyReason(str, Enum):
    NO_SESSION = "no_session"
    EXPIRED = "expired"
    UNKNOWN_ROLE = "unknown_role"
    ROLE_NOT_ALLOWED = "role_not_allowed"


@dataclass(frozen=True)
class AccessDecision:
    outcome: Outcome
    redirect_to: Optional[str] = None
    reason: Optional[DenyReason] = None
    role: Optional[CanonicalRole] = None
    identity: Optional[Dict[str, Any]] = None

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.ALLOW

    @property
    def expired(self) -> bool:
        return self.reason is DenyReason.EXPIRED


def decide_access(
    session_present: bool,
    expired: bool,
    role: Optional[CanonicalRole],
    allowed: FrozenSet[CanonicalRole],
) -> AccessDecision:
    """Return the gate decision for already-normalised inputs."""

    if not session_present:
        return AccessDecision(Outcome.LOGIN, LOGIN_PATH, DenyReason.NO_SESSION)
    if expired:
        return AccessDecision(Outcome.LOGIN, EXPIRED_LOGIN_PATH, DenyReason.EXPIRED)
    if role is None:
        return AccessDecision(Outcome.HOME, HOME_PATH, DenyReason.UNKNOWN_ROLE)
    if role not in allowed:
        return AccessDecision(Outcome.HOME, HOME_PATH, DenyReason.ROLE_NOT_ALLOWED, role=role)
    return AccessDecision(Outcome.ALLOW, role=role)


# Allow-lists declared by the dashboard routes; ``{id}`` matches one segment.
VIEW_ACCESS: Dict[str, Tuple[str, ...]] = {
    "/register": ("owner", "doctor", "staff", "receptionist", "admin"),
    "/dashboard/patients": ("owner", "doctor", "staff", "receptionist", "admin"),
    "/dashboard/patients/{id}": ("owner", "doctor", "receptionist"),
    "/dashboard/appointments": ("owner", "doctor", "receptionist", "staff"),
    "/dashboard/billing": ("owner", "doctor", "receptionist", "staff"),
    "/dashboard/billing/{id}": ("owner", "doctor", "receptionist"),
    "/dashboard/billing/invoice/{id}": ("owner", "doctor", "receptionist", "staff"),
    "/dashboard/billing/patient/{id}": ("owner", "doctor", "staff"),
    "/dashboard/analytics": ("owner", "admin", "doctor", "staff"),
    "/dashboard/settings": ("owner",),
    "/dashboard/staff": ("staff",),
}


def _compile_routes(routes: Dict[str, Tuple[str, ...]]) -> List[Tuple[Pattern[str], Tuple[str, ...]]]:
    compiled = []
    # Literal segments win over placeholders: "billing/invoice/{id}" before "billing/{id}".
    for template in sorted(routes, key=lambda t: (t.count("{id}"), -len(t))):
        pattern = re.escape(template).replace(re.escape("{id}"), "[^/]+")
        compiled.append((re.compile(f"^{pattern}/?$"), routes[template]))
    return compiled


_ROUTES = _compile_routes(VIEW_ACCESS)


def allowed_roles_for(path: str) -> Tuple[str, ...]:
    """Return the allow-list for ``path``; raises ``KeyError`` for unknown views."""

    bare = path.split("?", 1)[0].split("#", 1)[0]
    for pattern, roles in _ROUTES:
        if pattern.match(bare):
            return roles
    raise KeyError(f"No access rule registered for view {path!r}")


class AccessGate:
    """Evaluate the persisted session against a view's allow-list."""

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    def check(self, allowed_roles: Iterable[object]) -> AccessDecision:
        allowed = normalize_roles(allowed_roles)
        snapshot = self.sessions.snapshot()
        if snapshot is None:
            decision = decide_access(False, False, None, allowed)
            self.sessions.clear()
        else:
            self.sessions.ensure_login_time()
            expired = self.sessions.is_expired()
            role = normalize_role(snapshot.role)
            decision = decide_access(True, expired, role, allowed)
            if decision.expired:
                self.sessions.expire()
            elif decision.allowed and role is not None:
                identity = dict(snapshot.identity)
                identity["role"] = role.value
                decision = AccessDecision(Outcome.ALLOW, role=role, identity=identity)
        if not decision.allowed and decision.reason is not None:
            ACCESS_DENIED.labels(reason=decision.reason.value).inc()
            logger.info(
                "access_denied",
                reason=decision.reason.value,
                redirect_to=decision.redirect_to,
                role=decision.role.value if decision.role else None,
            )
        return decision

    def check_view(self, path: str) -> AccessDecision:
        return self.check(allowed_roles_for(path))


class Navigator(Protocol):
    def replace(self, path: str) -> None: ...


class HistoryNavigator:
    """Navigator that records every replacement; ``current`` is the last path."""

    def __init__(self, start: str = "/") -> None:
        self.history: List[str] = [start]

    @property
    def current(self) -> str:
        return self.history[-1]

    def replace(self, path: str) -> None:
        self.history.append(path)


class ViewState(str, Enum):
    LOADING = "loading"
    ALLOWED = "allowed"
    REDIRECTED = "redirected"
    UNMOUNTED = "unmounted"


R = TypeVar("R")

LOADING_PLACEHOLDER = "Loading..."


class ProtectedView(Generic[R]):
    """Render ``render(identity)`` only for sessions the gate allows.

    Until :meth:`mount` has run the check the view renders ``placeholder``;
    after a denial it renders ``None``.  While mounted it also listens for
    the session being cleared by another window and redirects to login.
    """

    def __init__(
        self,
        render: Callable[[Dict[str, Any]], R],
        allowed_roles: Iterable[object],
        *,
        gate: AccessGate,
        navigator: Navigator,
        placeholder: Any = LOADING_PLACEHOLDER,
    ) -> None:
        self._render = render
        self.allowed_roles = tuple(allowed_roles)
        self.gate = gate
        self.navigator = navigator
        self.placeholder = placeholder
        self.state = ViewState.LOADING
        self.decision: Optional[AccessDecision] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def identity(self) -> Optional[Dict[str, Any]]:
        if self.decision is None:
            return None
        return self.decision.identity

    async def mount(self) -> Optional[AccessDecision]:
        """Run the gate on the next loop iteration, after hydration."""

        self._release_subscription()
        self.state = ViewState.LOADING
        self.decision = None
        storage = self.gate.sessions.storage
        self._unsubscribe = storage.subscribe(self._on_storage_event)
        await asyncio.sleep(0)
        if self.state is not ViewState.LOADING:
            return None
        decision = self.gate.check(self.allowed_roles)
        self.decision = decision
        if decision.allowed:
            self.state = ViewState.ALLOWED
        else:
            self.state = ViewState.REDIRECTED
            self.navigator.replace(decision.redirect_to or LOGIN_PATH)
        return decision

    def unmount(self) -> None:
        self._release_subscription()
        self.state = ViewState.UNMOUNTED

    def _release_subscription(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def render(self) -> Any:
        if self.state is ViewState.LOADING:
            return self.placeholder
        if self.state is ViewState.ALLOWED and self.identity is not None:
            return self._render(self.identity)
        return None

    def _on_storage_event(self, event: StorageEvent) -> None:
        if event.origin == self.gate.sessions.origin:
            return
        cleared = event.key is None or (event.key == CURRENT_USER_KEY and event.new_value is None)
        if not cleared or self.state is ViewState.UNMOUNTED:
            return
        logger.info("session_cleared_elsewhere")
        self.state = ViewState.REDIRECTED
        self.decision = None
        self.navigator.replace(LOGIN_PATH)


__all__ = [
    "ACCESS_DENIED",
    "AccessDecision",
    "AccessGate",
    "DenyReason",
    "EXPIRED_LOGIN_PATH",
    "HOME_PATH",
    "HistoryNavigator",
    "LOGIN_PATH",
    "Navigator",
    "Outcome",
    "ProtectedView",
    "VIEW_ACCESS",
    "ViewState",
    "allowed_roles_for",
    "decide_access",
]
