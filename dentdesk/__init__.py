"""Client data orchestration and access control for the DentDesk clinic dashboard."""

from dentdesk.api import ApiError, ApiService
from dentdesk.context import AppContext, build_context
from dentdesk.data import ClinicData
from dentdesk.gate import AccessDecision, AccessGate, ProtectedView
from dentdesk.roles import CanonicalRole, normalize_role
from dentdesk.session import SessionManager

__all__ = [
    "AccessDecision",
    "AccessGate",
    "ApiError",
    "ApiService",
    "AppContext",
    "CanonicalRole",
    "ClinicData",
    "ProtectedView",
    "SessionManager",
    "build_context",
    "normalize_role",
]
