from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List

import structlog

from dentdesk.time_utils import now_ms


logger = structlog.get_logger(__name__)

SUCCESS = "success"
ERROR = "error"


@dataclass(frozen=True)
class Notification:
    """A transient user-facing message (a toast in the dashboard)."""

    id: int
    level: str
    message: str
    created_at: int


Listener = Callable[[Notification], None]


class Notifier:
    """Fan out success/failure messages to the UI and keep a short history."""

    def __init__(self, *, history_limit: int = 20) -> None:
        self._history: Deque[Notification] = deque(maxlen=max(1, history_limit))
        self._listeners: Dict[int, Listener] = {}
        self._ids = itertools.count(1)
        self._listener_ids = itertools.count(1)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that removes it."""

        token = next(self._listener_ids)
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def success(self, message: str) -> Notification:
        return self._emit(SUCCESS, message)

    def error(self, message: str) -> Notification:
        return self._emit(ERROR, message)

    def recent(self) -> List[Notification]:
        return list(self._history)

    def clear(self) -> None:
        self._history.clear()

    def _emit(self, level: str, message: str) -> Notification:
        item = Notification(id=next(self._ids), level=level, message=message, created_at=now_ms())
        self._history.append(item)
        if level == ERROR:
            logger.warning("notification", level=level, message=message)
        else:
            logger.info("notification", level=level, message=message)
        for listener in list(self._listeners.values()):
            try:
                listener(item)
            except Exception:
                logger.exception("notification_listener_failed", notification_id=item.id)
        return item


__all__ = ["ERROR", "Notification", "Notifier", "SUCCESS"]
