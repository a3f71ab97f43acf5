"""Patient portal: OTP sign-in and the patient's own records.

The portal session is separate from the dashboard session; it lives in the
``patientData`` slot and holds the patient profile returned by the backend.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from dentdesk.api import ApiService
from dentdesk.session import serialize_identity
from dentdesk.storage import KeyValueStorage

logger = structlog.get_logger(__name__)

PATIENT_DATA_KEY = "patientData"
PORTAL_LOGIN_PATH = "/patient-portal/login"
PORTAL_HOME_PATH = "/patient-portal/dashboard"


@dataclass
class PortalOverview:
    """Everything the portal dashboard shows for one patient."""

    patient: Dict[str, Any]
    appointments: List[Dict[str, Any]] = field(default_factory=list)
    bills: List[Dict[str, Any]] = field(default_factory=list)
    medical_notes: List[Dict[str, Any]] = field(default_factory=list)
    reports: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_billed(self) -> float:
        return sum(_amount(bill) for bill in self.bills)

    @property
    def total_paid(self) -> float:
        return sum(
            _amount(bill) for bill in self.bills if str(bill.get("status") or "").upper() == "PAID"
        )

    @property
    def outstanding(self) -> float:
        return self.total_billed - self.total_paid


def _amount(bill: Dict[str, Any]) -> float:
    try:
        return float(bill.get("amount") or 0)
    except (TypeError, ValueError):
        return 0.0


class PatientPortalSession:
    def __init__(
        self,
        storage: KeyValueStorage,
        api: ApiService,
        *,
        origin: Optional[str] = None,
    ) -> None:
        self.storage = storage
        self.api = api
        self.origin = origin or uuid.uuid4().hex

    def current_patient(self) -> Optional[Dict[str, Any]]:
        raw = self.storage.get_item(PATIENT_DATA_KEY)
        if not raw:
            return None
        try:
            patient = json.loads(raw)
        except ValueError:
            patient = None
        if not isinstance(patient, dict):
            self.storage.remove_item(PATIENT_DATA_KEY, origin=self.origin)
            return None
        return patient

    def landing_path(self) -> str:
        return PORTAL_HOME_PATH if self.current_patient() else PORTAL_LOGIN_PATH

    async def request_otp(self, phone_number: str) -> Any:
        return await self.api.send_patient_otp(phone_number)

    async def verify(self, phone_number: str, otp: str) -> Dict[str, Any]:
        """Verify ``otp`` then load and persist the patient profile."""

        await self.api.verify_patient_otp(phone_number, otp)
        patient = await self.api.patient_by_phone(phone_number)
        if not isinstance(patient, dict):
            patient = {"phoneNumber": phone_number}
        self.storage.set_item(PATIENT_DATA_KEY, serialize_identity(patient), origin=self.origin)
        logger.info("portal_session_established", patient_id=patient.get("id"))
        return patient

    async def overview(self) -> Optional[PortalOverview]:
        """Fetch the signed-in patient's records in parallel."""

        patient = self.current_patient()
        if patient is None or patient.get("id") is None:
            return None
        patient_id = patient["id"]
        appointments, bills, notes, reports = await asyncio.gather(
            self.api.appointments_for_patient(patient_id),
            self.api.bills_for_patient(patient_id),
            self.api.prescription_notes_for_patient(patient_id),
            self.api.reports_for_patient(patient_id),
        )
        return PortalOverview(
            patient=patient,
            appointments=appointments,
            bills=bills,
            medical_notes=notes,
            reports=reports,
        )

    async def logout(self) -> None:
        """Drop the local portal session, then tell the backend."""

        patient = self.current_patient()
        self.storage.remove_item(PATIENT_DATA_KEY, origin=self.origin)
        phone = (patient or {}).get("phoneNumber")
        if phone:
            await self.api.logout_patient(str(phone))
        logger.info("portal_session_cleared")


__all__ = [
    "PATIENT_DATA_KEY",
    "PORTAL_HOME_PATH",
    "PORTAL_LOGIN_PATH",
    "PatientPortalSession",
    "PortalOverview",
]
