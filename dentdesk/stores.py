"""Resource stores: in-memory projections of backend collections.

A store caches the last successful fetch of one resource and brokers writes
to the backend.  Writes never patch the cache locally; each successful
mutation re-fetches the owning collection (and any linked projection) before
returning, so callers always observe the backend's state after the write.

Refreshes are sequenced per store.  Every refresh takes the next request
number and a response is applied only when its number is higher than the
last applied one, so a slow, older response can never overwrite a newer one.
"""

from __future__ import annotations

from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
    Union,
)

import structlog
from pydantic import TypeAdapter

from dentdesk.api import ApiError, ApiService
from dentdesk.models import ClinicModel, ClinicSettings, Expense, ResourceId
from dentdesk.notifications import Notifier

logger = structlog.get_logger(__name__)

S = TypeVar("S")
M = TypeVar("M", bound=ClinicModel)

Fetcher = Callable[[], Awaitable[Any]]
ErrorHook = Callable[[str, str], None]
Payload = Union[ClinicModel, Mapping[str, Any]]

_PAST_TENSE = {
    "create": "created",
    "update": "updated",
    "delete": "deleted",
    "approve": "approved",
    "reject": "rejected",
}


def failure_message(exc: BaseException, fallback: str) -> str:
    """Return the user-facing message for ``exc``."""

    if isinstance(exc, ApiError):
        return exc.message
    return fallback


def _payload(data: Payload) -> Dict[str, Any]:
    if isinstance(data, ClinicModel):
        return data.to_payload()
    return dict(data)


class ProjectionStore(Generic[S]):
    """Shared state machine for anything refreshed from the backend.

    Subclasses provide :meth:`_parse` and an initial value.
    """

    def __init__(
        self,
        name: str,
        label: str,
        fetch: Fetcher,
        initial: S,
        *,
        notifier: Notifier,
        on_error: Optional[ErrorHook] = None,
    ) -> None:
        self.name = name
        self.label = label
        self._fetch = fetch
        self._value: S = initial
        self._notifier = notifier
        self._on_error = on_error
        self._error: Optional[str] = None
        self._in_flight = 0
        self._issued = 0
        self._applied = 0
        self._linked: List[ProjectionStore[Any]] = []

    @property
    def loading(self) -> bool:
        return self._in_flight > 0

    @property
    def error(self) -> Optional[str]:
        return self._error

    def link(self, other: "ProjectionStore[Any]") -> None:
        """Refresh ``other`` too after every successful mutation of this store."""

        if other is not self and other not in self._linked:
            self._linked.append(other)

    def _parse(self, raw: Any) -> S:  # pragma: no cover - abstract
        raise NotImplementedError

    def _set_error(self, message: str) -> None:
        self._error = message
        if self._on_error is not None:
            self._on_error(self.name, message)

    async def refresh(self, *, raise_errors: bool = False) -> None:
        """Re-fetch from the backend.

        On failure the cached value is left untouched and :attr:`error` is
        set; the exception is only propagated when ``raise_errors`` is true.
        """

        self._issued += 1
        seq = self._issued
        self._in_flight += 1
        try:
            value = self._parse(await self._fetch())
        except Exception as exc:
            message = failure_message(exc, f"Failed to fetch {self.name.replace('-', ' ')}")
            if seq > self._applied:
                self._set_error(message)
            logger.warning("store_refresh_failed", store=self.name, seq=seq, error=message)
            if raise_errors:
                raise
        else:
            if seq > self._applied:
                self._applied = seq
                self._value = value
                self._error = None
            else:
                logger.debug(
                    "store_refresh_stale_response_dropped",
                    store=self.name,
                    seq=seq,
                    applied=self._applied,
                )
        finally:
            self._in_flight -= 1

    async def _resync(self) -> None:
        await self.refresh(raise_errors=True)
        for other in self._linked:
            await other.refresh(raise_errors=True)

    async def _mutate(self, verb: str, call: Fetcher) -> Any:
        """Run ``call`` then resync; notify and re-raise on failure."""

        try:
            result = await call()
            await self._resync()
        except Exception as exc:
            message = failure_message(exc, f"Failed to {verb} {self.label}")
            self._set_error(message)
            self._notifier.error(message)
            logger.warning("store_mutation_failed", store=self.name, action=verb, error=message)
            raise
        self._notifier.success(f"{self.label.capitalize()} {_PAST_TENSE.get(verb, verb)}")
        logger.info("store_mutation_succeeded", store=self.name, action=verb)
        return result


class CollectionStore(ProjectionStore[List[M]]):
    """Read-only cached collection; writes go through a :class:`ResourceStore`."""

    def __init__(
        self,
        name: str,
        label: str,
        fetch: Fetcher,
        model: Type[M],
        *,
        notifier: Notifier,
        on_error: Optional[ErrorHook] = None,
    ) -> None:
        super().__init__(name, label, fetch, [], notifier=notifier, on_error=on_error)
        self.model = model
        self._adapter = TypeAdapter(List[model])  # type: ignore[valid-type]

    @property
    def collection(self) -> List[M]:
        return list(self._value)

    def __len__(self) -> int:
        return len(self._value)

    def find(self, item_id: ResourceId) -> Optional[M]:
        """Return the cached item with ``item_id`` (compared as strings)."""

        wanted = str(item_id)
        for item in self._value:
            if item.id is not None and str(item.id) == wanted:
                return item
        return None

    def _parse(self, raw: Any) -> List[M]:
        return self._adapter.validate_python(raw)


class ResourceStore(CollectionStore[M]):
    """Cached collection of one backend resource with CRUD operations."""

    def __init__(
        self,
        api: ApiService,
        resource: str,
        model: Type[M],
        *,
        label: str,
        notifier: Notifier,
        on_error: Optional[ErrorHook] = None,
    ) -> None:
        super().__init__(
            resource,
            label,
            lambda: api.list(resource),
            model,
            notifier=notifier,
            on_error=on_error,
        )
        self._api = api
        self.resource = resource

    def _model_or_none(self, raw: Any) -> Optional[M]:
        if isinstance(raw, Mapping):
            return self.model.model_validate(raw)
        return None

    async def fetch_one(self, item_id: ResourceId) -> M:
        """Fetch a single item; the cached collection is not modified."""

        return self.model.model_validate(await self._api.get(self.resource, item_id))

    async def create(self, data: Payload) -> Optional[M]:
        body = _payload(data)
        result = await self._mutate("create", lambda: self._api.create(self.resource, body))
        return self._model_or_none(result)

    async def update(self, item_id: ResourceId, patch: Payload) -> Optional[M]:
        body = _payload(patch)
        result = await self._mutate(
            "update", lambda: self._api.update(self.resource, item_id, body)
        )
        return self._model_or_none(result)

    async def delete(self, item_id: ResourceId) -> None:
        await self._mutate("delete", lambda: self._api.delete(self.resource, item_id))


class ExpenseStore(ResourceStore[Expense]):
    """All-expenses projection with approval actions.

    The pending projection is linked, so it is refreshed after every
    successful expense mutation.
    """

    def __init__(
        self,
        api: ApiService,
        pending: CollectionStore[Expense],
        *,
        notifier: Notifier,
        on_error: Optional[ErrorHook] = None,
    ) -> None:
        super().__init__(
            api, "expenses", Expense, label="expense", notifier=notifier, on_error=on_error
        )
        self.pending = pending
        self.link(pending)

    async def approve(self, expense_id: ResourceId) -> Optional[Expense]:
        result = await self._mutate("approve", lambda: self._api.approve_expense(expense_id))
        return self._model_or_none(result)

    async def reject(self, expense_id: ResourceId) -> Optional[Expense]:
        result = await self._mutate("reject", lambda: self._api.reject_expense(expense_id))
        return self._model_or_none(result)


class SettingsStore(ProjectionStore[Optional[ClinicSettings]]):
    """Single-object projection of the clinic settings."""

    def __init__(
        self,
        api: ApiService,
        *,
        notifier: Notifier,
        on_error: Optional[ErrorHook] = None,
    ) -> None:
        super().__init__(
            "settings", "settings", api.get_settings, None, notifier=notifier, on_error=on_error
        )
        self._api = api

    @property
    def value(self) -> Optional[ClinicSettings]:
        return self._value

    def _parse(self, raw: Any) -> Optional[ClinicSettings]:
        return ClinicSettings.model_validate(raw)

    async def update(self, patch: Payload) -> None:
        body = _payload(patch)
        await self._mutate("update", lambda: self._api.update_settings(body))


__all__ = [
    "CollectionStore",
    "ExpenseStore",
    "ProjectionStore",
    "ResourceStore",
    "SettingsStore",
    "failure_message",
]
