"""Client configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from platformdirs import user_data_dir

APP_NAME = "DentDesk"

DEFAULT_API_URL = "http://localhost:8080"
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_SESSION_TTL_HOURS = 5


@dataclass(frozen=True)
class ClientSettings:
    """Resolved configuration for the clinic client."""

    api_url: str = DEFAULT_API_URL
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    session_ttl_hours: int = DEFAULT_SESSION_TTL_HOURS
    storage_path: Optional[Path] = None
    log_level: str = "INFO"

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_hours * 60 * 60 * 1000

    @property
    def base_url(self) -> str:
        return self.api_url.rstrip("/")


def _default_storage_path() -> Path:
    data_dir = Path(user_data_dir(APP_NAME, APP_NAME))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "session.json"


def _normalise_storage_path(path: str | os.PathLike[str]) -> Path:
    resolved = Path(path).expanduser()
    if resolved.is_dir():
        resolved = resolved / "session.json"
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_float_env(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_client_settings() -> ClientSettings:
    """Return the active client settings derived from the environment."""

    timeout = _get_float_env("DENTDESK_API_TIMEOUT")
    ttl_hours = _get_int_env("DENTDESK_SESSION_TTL_HOURS")
    path_override = os.getenv("DENTDESK_STORAGE_PATH")
    storage_path = (
        _normalise_storage_path(path_override) if path_override else _default_storage_path()
    )
    return ClientSettings(
        api_url=os.getenv("DENTDESK_API_URL") or DEFAULT_API_URL,
        timeout=DEFAULT_TIMEOUT_SECONDS if timeout is None else timeout,
        session_ttl_hours=DEFAULT_SESSION_TTL_HOURS if ttl_hours is None else ttl_hours,
        storage_path=storage_path,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


__all__ = ["APP_NAME", "ClientSettings", "get_client_settings"]
