"""Key/value persistence for session slots.

Values are strings, as in browser ``localStorage``, so slots written here are
byte-compatible with other consumers of the same keys.  Every write emits a
:class:`StorageEvent` tagged with the writer's ``origin``; a listener ignores
events carrying its own origin and reacts to changes made elsewhere (another
window or process).
"""

from __future__ import annotations

import itertools
import json
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class StorageError(Exception):
    """Raised when persisted slots cannot be written."""


@dataclass(frozen=True)
class StorageEvent:
    """A change to one slot; ``key`` is ``None`` when storage was cleared."""

    key: Optional[str]
    old_value: Optional[str]
    new_value: Optional[str]
    origin: Optional[str] = None


Listener = Callable[[StorageEvent], None]


class KeyValueStorage:
    """Base class: subclasses provide ``_load`` and ``_save``."""

    def __init__(self) -> None:
        self._listeners: Dict[int, Listener] = {}
        self._listener_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------
    def _load(self) -> Dict[str, str]:  # pragma: no cover - abstract
        raise NotImplementedError

    def _save(self, data: Dict[str, str]) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def keys(self) -> List[str]:
        return sorted(self._load())

    def set_item(self, key: str, value: str, *, origin: Optional[str] = None) -> None:
        data = self._load()
        old = data.get(key)
        data[key] = str(value)
        self._save(data)
        if old != data[key]:
            self._notify(StorageEvent(key, old, data[key], origin))

    def remove_item(self, key: str, *, origin: Optional[str] = None) -> None:
        data = self._load()
        if key not in data:
            return
        old = data.pop(key)
        self._save(data)
        self._notify(StorageEvent(key, old, None, origin))

    def clear(self, *, origin: Optional[str] = None) -> None:
        if not self._load():
            return
        self._save({})
        self._notify(StorageEvent(None, None, None, origin))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for every change; returns an unsubscribe callable."""

        token = next(self._listener_ids)
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def _notify(self, event: StorageEvent) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.exception("storage_listener_failed", key=event.key)


class MemoryStorage(KeyValueStorage):
    """Process-local storage; share one instance between simulated windows."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        super().__init__()
        self._data: Dict[str, str] = dict(initial or {})

    def _load(self) -> Dict[str, str]:
        return dict(self._data)

    def _save(self, data: Dict[str, str]) -> None:
        self._data = dict(data)


class JsonFileStorage(KeyValueStorage):
    """Slots persisted as a JSON object in a user-private file.

    The file is re-read on every access so writes by other processes are
    visible immediately.  :meth:`poll` turns such external writes into
    events for local listeners.
    """

    def __init__(self, path: os.PathLike[str] | str) -> None:
        super().__init__()
        self.path = Path(path)
        self._snapshot: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("storage_file_unreadable", path=str(self.path))
            return {}
        if not isinstance(payload, dict):
            logger.warning("storage_file_malformed", path=str(self.path))
            return {}
        return {str(k): str(v) for k, v in payload.items() if v is not None}

    def _save(self, data: Dict[str, str]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
            if os.name != "nt":
                os.chmod(tmp, stat.S_IRUSR | stat.S_IWUSR)
            os.replace(tmp, self.path)
        except OSError as exc:
            raise StorageError(f"Unable to write {self.path}: {exc}") from exc
        self._snapshot = dict(data)

    def poll(self) -> List[StorageEvent]:
        """Emit events for slots changed on disk since the last local access."""

        current = self._load()
        previous = self._snapshot
        self._snapshot = current
        events: List[StorageEvent] = []
        for key in sorted(set(previous) | set(current)):
            old, new = previous.get(key), current.get(key)
            if old != new:
                events.append(StorageEvent(key, old, new, origin=None))
        for event in events:
            self._notify(event)
        return events


__all__ = [
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryStorage",
    "StorageError",
    "StorageEvent",
]
