"""Client-side projections of backend resources.

The backend owns every field; these models only give the dashboard typed
access to what the last fetch returned.  Field names follow Python naming
with camelCase aliases matching the wire format, and unknown fields are kept
so nothing the backend sends is silently dropped.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ResourceId = Union[int, str]


class ClinicModel(BaseModel):
    """Base class shared by all backend projections."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_payload(self) -> Dict[str, Any]:
        """Return the wire representation, omitting unset fields."""

        return self.model_dump(by_alias=True, exclude_none=True)


class User(ClinicModel):
    id: Optional[ResourceId] = None
    username: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    full_name: Optional[str] = None
    role: Optional[str] = None
    enabled: Optional[bool] = None


class Patient(ClinicModel):
    id: Optional[ResourceId] = None
    full_name: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    medical_info: Optional[str] = None
    treatment_amount: Optional[float] = None
    user: Optional[User] = None
    doctor: Optional[User] = None


class Appointment(ClinicModel):
    id: Optional[ResourceId] = None
    appointment_date: Optional[str] = None
    treatment_details: Optional[str] = None
    treatment_cost: Optional[float] = None
    status: Optional[str] = None
    patient: Optional[Patient] = None
    doctor: Optional[User] = None
    staff: Optional[User] = None


class Expense(ClinicModel):
    id: Optional[ResourceId] = None
    description: Optional[str] = None
    amount: Optional[float] = None
    date: Optional[str] = None
    approved: bool = False
    added_by: Optional[User] = None
    added_by_id: Optional[ResourceId] = None


class BillItem(ClinicModel):
    description: Optional[str] = None
    cost: Optional[float] = None


class Bill(ClinicModel):
    id: Optional[ResourceId] = None
    patient_id: Optional[ResourceId] = None
    appointment_id: Optional[ResourceId] = None
    amount: Optional[float] = None
    status: Optional[str] = None
    issued_at: Optional[str] = None
    items: List[BillItem] = Field(default_factory=list)
    created_by: Optional[str] = None
    processed_by: Optional[str] = None


class Medication(ClinicModel):
    id: Optional[ResourceId] = None
    name: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None


class AppointmentSettings(ClinicModel):
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    slot_duration: Optional[int] = None


class ClinicSettings(ClinicModel):
    default_consultation_fee: Optional[float] = None
    appointment_settings: Optional[AppointmentSettings] = None


__all__ = [
    "Appointment",
    "AppointmentSettings",
    "Bill",
    "BillItem",
    "ClinicModel",
    "ClinicSettings",
    "Expense",
    "Medication",
    "Patient",
    "ResourceId",
    "User",
]
