"""Application wiring: build every collaborator once and hand them out."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, TypeVar

import httpx

from dentdesk.api import ApiService
from dentdesk.config import ClientSettings, get_client_settings
from dentdesk.data import ClinicData
from dentdesk.gate import AccessGate, Navigator, ProtectedView
from dentdesk.log_config import configure_logging
from dentdesk.notifications import Notifier
from dentdesk.portal import PatientPortalSession
from dentdesk.session import SessionManager
from dentdesk.storage import JsonFileStorage, KeyValueStorage, MemoryStorage

R = TypeVar("R")


@dataclass
class AppContext:
    settings: ClientSettings
    api: ApiService
    storage: KeyValueStorage
    notifier: Notifier
    sessions: SessionManager
    gate: AccessGate
    data: ClinicData
    portal: PatientPortalSession

    def protect(
        self,
        render: Callable[[Dict[str, Any]], R],
        allowed_roles: Iterable[object],
        navigator: Navigator,
    ) -> ProtectedView[R]:
        return ProtectedView(render, allowed_roles, gate=self.gate, navigator=navigator)

    async def aclose(self) -> None:
        await self.api.aclose()

    async def __aenter__(self) -> "AppContext":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def build_context(
    settings: Optional[ClientSettings] = None,
    *,
    storage: Optional[KeyValueStorage] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AppContext:
    """Create the client stack; storage defaults to the configured JSON file."""

    settings = settings or get_client_settings()
    configure_logging(settings.log_level)
    if storage is None:
        storage = (
            JsonFileStorage(settings.storage_path) if settings.storage_path else MemoryStorage()
        )
    api = ApiService.from_settings(settings, transport=transport)
    notifier = Notifier()
    sessions = SessionManager(storage, api, ttl_ms=settings.session_ttl_ms)
    sessions.restore_token()
    return AppContext(
        settings=settings,
        api=api,
        storage=storage,
        notifier=notifier,
        sessions=sessions,
        gate=AccessGate(sessions),
        data=ClinicData(api, notifier),
        portal=PatientPortalSession(storage, api, origin=sessions.origin),
    )


__all__ = ["AppContext", "build_context"]
