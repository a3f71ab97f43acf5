"""Async HTTP client for the clinic REST backend.

Every backend call goes through :meth:`ApiService.request`, which classifies
transport failures and non-2xx responses into a single :class:`ApiError`.
Resource collections share the generic ``list``/``get``/``create``/
``update``/``delete`` helpers; endpoints that do not follow the
``/{resource}/{id}`` shape get their own methods.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog
from prometheus_client import Counter

from dentdesk.config import ClientSettings
from dentdesk.models import ResourceId

logger = structlog.get_logger(__name__)

PATIENTS = "patients"
APPOINTMENTS = "appointments"
EXPENSES = "expenses"
USERS = "users"
BILLING = "billing"
PRESCRIPTIONS = "prescriptions"
MEDICAL_NOTES = "medical-notes"
MEDICATIONS = "medications"

# Status used for failures that never produced an HTTP response.
NETWORK_ERROR_STATUS = 0

# Status used when a 2xx body does not have the expected shape.
BAD_GATEWAY_STATUS = 502

API_FAILURES = Counter(
    "dentdesk_api_failures_total",
    "Backend calls that failed or returned a non-2xx status",
    ("reason",),
)


class ApiError(Exception):
    """Raised when a backend call fails or returns a non-2xx status."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"ApiError(status={self.status!r}, message={self.message!r})"


def error_message(response: httpx.Response) -> str:
    """Return the server supplied ``error`` field or a status-derived message."""

    fallback = f"HTTP {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, Mapping):
        message = body.get("error")
        if isinstance(message, str) and message.strip():
            return message
    return fallback


def handle_response(response: httpx.Response) -> Any:
    """Return the decoded JSON body of ``response`` or raise :class:`ApiError`.

    Empty bodies (typically ``DELETE`` acknowledgements) decode to ``None``;
    a non-empty body that is not JSON is an error.
    """

    if not response.is_success:
        API_FAILURES.labels(reason="http_status").inc()
        message = error_message(response)
        logger.info(
            "api_error_response",
            method=response.request.method,
            path=response.request.url.path,
            status=response.status_code,
            error=message,
        )
        raise ApiError(response.status_code, message)
    if not response.content or not response.content.strip():
        return None
    try:
        return response.json()
    except ValueError as exc:
        API_FAILURES.labels(reason="invalid_json").inc()
        logger.warning(
            "api_invalid_json",
            method=response.request.method,
            path=response.request.url.path,
            status=response.status_code,
        )
        raise ApiError(response.status_code, "Invalid JSON response") from exc


class ApiService:
    """Thin wrapper around :class:`httpx.AsyncClient` for the clinic API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token: Optional[str] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._token = token

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ApiService":
        return cls(settings.base_url, timeout=settings.timeout, transport=transport)

    # ------------------------------------------------------------------
    # Lifecycle / auth helpers
    # ------------------------------------------------------------------
    @property
    def token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: Optional[str]) -> None:
        """Use ``token`` as the bearer credential for subsequent calls."""

        self._token = token or None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ApiService":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _headers(self) -> Dict[str, str]:
        if self._token:
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """Dispatch a request and decode the response via :func:`handle_response`."""

        response = await self._send(method, path, json=json, params=params)
        return handle_response(response)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method, path, json=json, params=params, headers=self._headers()
            )
        except httpx.TimeoutException as exc:
            API_FAILURES.labels(reason="timeout").inc()
            logger.warning("api_request_timeout", method=method, path=path)
            raise ApiError(NETWORK_ERROR_STATUS, "Request timed out") from exc
        except httpx.TransportError as exc:
            API_FAILURES.labels(reason="network_failure").inc()
            logger.warning("api_network_failure", method=method, path=path, error=str(exc))
            raise ApiError(NETWORK_ERROR_STATUS, "Network error: unable to reach the server") from exc

    # ------------------------------------------------------------------
    # Generic resource endpoints
    # ------------------------------------------------------------------
    async def _get_list(self, path: str) -> List[Any]:
        """GET ``path`` and insist on a JSON array; an empty body is not one."""

        data = await self.request("GET", path)
        if not isinstance(data, list):
            API_FAILURES.labels(reason="unexpected_shape").inc()
            logger.warning("api_expected_list", path=path, got=type(data).__name__)
            raise ApiError(BAD_GATEWAY_STATUS, f"Expected a list from {path}")
        return data

    async def list(self, resource: str) -> List[Any]:
        return await self._get_list(f"/{resource}")

    async def get(self, resource: str, item_id: ResourceId) -> Any:
        return await self.request("GET", f"/{resource}/{item_id}")

    async def create(self, resource: str, payload: Mapping[str, Any]) -> Any:
        return await self.request("POST", f"/{resource}", json=dict(payload))

    async def update(self, resource: str, item_id: ResourceId, payload: Mapping[str, Any]) -> Any:
        return await self.request("PUT", f"/{resource}/{item_id}", json=dict(payload))

    async def delete(self, resource: str, item_id: ResourceId) -> Any:
        return await self.request("DELETE", f"/{resource}/{item_id}")

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    async def login(self, username: str, password: str) -> Dict[str, Any]:
        return await self.request(
            "POST", "/auth/login", json={"username": username, "password": password}
        )

    async def register(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Register a staff account (username, password, email, phoneNumber, fullName)."""

        return await self.request("POST", "/auth/register", json=dict(payload))

    # ------------------------------------------------------------------
    # Patient portal
    # ------------------------------------------------------------------
    async def send_patient_otp(self, phone_number: str) -> Any:
        return await self.request("POST", "/patient-otp/send", json={"phoneNumber": phone_number})

    async def verify_patient_otp(self, phone_number: str, otp: str) -> Any:
        return await self.request(
            "POST", "/patient-otp/verify", json={"phoneNumber": phone_number, "otp": otp}
        )

    async def logout_patient(self, phone_number: str) -> Any:
        return await self.request("POST", "/patient-otp/logout", json={"phoneNumber": phone_number})

    async def patient_by_phone(self, phone_number: str) -> Any:
        return await self.request("GET", f"/patients/phone/{phone_number}")

    async def appointments_for_patient(self, patient_id: ResourceId) -> List[Any]:
        return await self._get_list(f"/appointments/patient/{patient_id}")

    async def prescription_notes_for_patient(self, patient_id: ResourceId) -> List[Any]:
        return await self._get_list(f"/prescription-notes/patient/{patient_id}")

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------
    async def pending_expenses(self) -> List[Any]:
        return await self._get_list(f"/{EXPENSES}/pending")

    async def approve_expense(self, expense_id: ResourceId) -> Any:
        return await self.request("POST", f"/{EXPENSES}/{expense_id}/approve")

    async def reject_expense(self, expense_id: ResourceId) -> Any:
        return await self.request("POST", f"/{EXPENSES}/{expense_id}/reject")

    # ------------------------------------------------------------------
    # Patient scoped collections
    # ------------------------------------------------------------------
    async def users_by_role(self, role: str) -> List[Any]:
        return await self._get_list(f"/{USERS}/role/{role}")

    async def bills_for_patient(self, patient_id: ResourceId) -> List[Any]:
        return await self._get_list(f"/{BILLING}/patient/{patient_id}")

    async def prescriptions_for_patient(self, patient_id: ResourceId) -> List[Any]:
        return await self._get_list(f"/{PRESCRIPTIONS}/patient/{patient_id}")

    async def medical_notes_for_patient(self, patient_id: ResourceId) -> List[Any]:
        return await self._get_list(f"/{MEDICAL_NOTES}/patient/{patient_id}")

    async def reports_for_patient(self, patient_id: ResourceId) -> List[Any]:
        return await self._get_list(f"/reports/patient/{patient_id}")

    def report_download_url(self, report_id: ResourceId) -> str:
        return str(self._client.base_url.join(f"reports/{report_id}/download"))

    # ------------------------------------------------------------------
    # Settings & analytics
    # ------------------------------------------------------------------
    async def get_settings(self) -> Dict[str, Any]:
        return await self.request("GET", "/settings")

    async def update_settings(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.request("PUT", "/settings", json=dict(payload))

    async def analytics_summary(
        self, *, start: Optional[str] = None, end: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.request("GET", "/analytics/summary", params=_range_params(start, end))

    async def analytics_csv(self, *, start: Optional[str] = None, end: Optional[str] = None) -> bytes:
        response = await self._send("GET", "/analytics/report.csv", params=_range_params(start, end))
        if not response.is_success:
            API_FAILURES.labels(reason="http_status").inc()
            raise ApiError(response.status_code, "Failed to download CSV")
        return response.content

    # ------------------------------------------------------------------
    # Notifications sent through the backend
    # ------------------------------------------------------------------
    async def notify_appointment_update(self, appointment_id: ResourceId, status: str) -> Any:
        return await self.request(
            "POST", f"/{APPOINTMENTS}/{appointment_id}/notify", json={"status": status}
        )

    async def notify_patient_file(
        self,
        patient_id: ResourceId,
        title: str,
        file_type: str,
        content: Optional[str] = None,
    ) -> Any:
        payload: Dict[str, Any] = {"patientId": patient_id, "title": title, "fileType": file_type}
        if content is not None:
            payload["content"] = content
        return await self.request("POST", "/notify/send-file", json=payload)


def _range_params(start: Optional[str], end: Optional[str]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    if start:
        params["start"] = start
    if end:
        params["end"] = end
    return params


__all__ = [
    "API_FAILURES",
    "APPOINTMENTS",
    "ApiError",
    "ApiService",
    "BILLING",
    "EXPENSES",
    "MEDICAL_NOTES",
    "MEDICATIONS",
    "NETWORK_ERROR_STATUS",
    "PATIENTS",
    "PRESCRIPTIONS",
    "USERS",
    "error_message",
    "handle_response",
]
