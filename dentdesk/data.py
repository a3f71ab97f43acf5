"""The clinic data hub: one instance owns every resource store."""

from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

import structlog

from dentdesk.api import (
    APPOINTMENTS,
    BILLING,
    MEDICATIONS,
    PATIENTS,
    USERS,
    ApiService,
)
from dentdesk.models import Appointment, Bill, Expense, Medication, Patient, User
from dentdesk.notifications import Notifier
from dentdesk.stores import (
    CollectionStore,
    ExpenseStore,
    ProjectionStore,
    ResourceStore,
    SettingsStore,
)

logger = structlog.get_logger(__name__)


class ClinicData:
    """Construct and own the resource stores for one signed-in client.

    ``last_error`` mirrors the most recent failure of any store so a passive
    status banner can react; each store keeps its own ``error`` as well.
    """

    def __init__(self, api: ApiService, notifier: Optional[Notifier] = None) -> None:
        self.api = api
        self.notifier = notifier or Notifier()
        self.last_error: Optional[str] = None
        self.last_error_source: Optional[str] = None

        common = {"notifier": self.notifier, "on_error": self._record_error}
        self.patients: ResourceStore[Patient] = ResourceStore(
            api, PATIENTS, Patient, label="patient", **common
        )
        self.appointments: ResourceStore[Appointment] = ResourceStore(
            api, APPOINTMENTS, Appointment, label="appointment", **common
        )
        self.pending_expenses: CollectionStore[Expense] = CollectionStore(
            "pending-expenses", "pending expense", api.pending_expenses, Expense, **common
        )
        self.expenses = ExpenseStore(api, self.pending_expenses, **common)
        self.users: ResourceStore[User] = ResourceStore(api, USERS, User, label="user", **common)
        self.bills: ResourceStore[Bill] = ResourceStore(api, BILLING, Bill, label="bill", **common)
        self.medications: ResourceStore[Medication] = ResourceStore(
            api, MEDICATIONS, Medication, label="medication", **common
        )
        self.settings = SettingsStore(api, **common)
        self._loaded = False

    def stores(self) -> Tuple[ProjectionStore, ...]:
        return (
            self.patients,
            self.appointments,
            self.expenses,
            self.pending_expenses,
            self.users,
            self.bills,
            self.medications,
            self.settings,
        )

    @property
    def loading(self) -> bool:
        return any(store.loading for store in self.stores())

    def errors(self) -> List[Tuple[str, str]]:
        """Return ``(store name, message)`` for every store currently in error."""

        return [(store.name, store.error) for store in self.stores() if store.error]

    def clear_error(self) -> None:
        self.last_error = None
        self.last_error_source = None

    def _record_error(self, source: str, message: str) -> None:
        self.last_error = message
        self.last_error_source = source

    async def load_all(self) -> None:
        """Refresh every store in parallel; failures stay in each store's ``error``."""

        await asyncio.gather(*(store.refresh() for store in self.stores()))
        self._loaded = True
        logger.info("clinic_data_loaded", failed=[name for name, _ in self.errors()])

    async def ensure_loaded(self) -> None:
        """Run :meth:`load_all` on first use only."""

        if not self._loaded:
            await self.load_all()


__all__ = ["ClinicData"]
