"""Canonical roles and the single normalisation point for raw role strings.

The backend and older dashboard builds spell roles differently (``owner`` and
``clinic-admin`` for administrators, ``receptionist`` for front-desk staff).
Every access decision must compare :class:`CanonicalRole` values produced by
:func:`normalize_role`, never raw strings.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional


class CanonicalRole(str, Enum):
    ADMIN = "ADMIN"
    DOCTOR = "DOCTOR"
    STAFF = "STAFF"
    PATIENT = "PATIENT"


ROLE_ALIASES: Dict[str, CanonicalRole] = {
    "admin": CanonicalRole.ADMIN,
    "owner": CanonicalRole.ADMIN,
    "clinic-admin": CanonicalRole.ADMIN,
    "doctor": CanonicalRole.DOCTOR,
    "staff": CanonicalRole.STAFF,
    "receptionist": CanonicalRole.STAFF,
    "patient": CanonicalRole.PATIENT,
    "patient-register": CanonicalRole.PATIENT,
}


def normalize_role(raw: object) -> Optional[CanonicalRole]:
    """Map ``raw`` to its canonical role, or ``None`` when unrecognised.

    Matching is case-insensitive and ignores surrounding whitespace, so the
    canonical spellings themselves (``"ADMIN"``) normalise to themselves.
    """

    if isinstance(raw, CanonicalRole):
        return raw
    if not isinstance(raw, str):
        return None
    return ROLE_ALIASES.get(raw.strip().lower())


def normalize_roles(raw_roles: Iterable[object]) -> FrozenSet[CanonicalRole]:
    """Normalise an allow-list, dropping entries that are not recognised."""

    roles = (normalize_role(raw) for raw in raw_roles)
    return frozenset(role for role in roles if role is not None)


def aliases_for(role: CanonicalRole) -> FrozenSet[str]:
    return frozenset(alias for alias, target in ROLE_ALIASES.items() if target is role)


__all__ = ["CanonicalRole", "ROLE_ALIASES", "aliases_for", "normalize_role", "normalize_roles"]
