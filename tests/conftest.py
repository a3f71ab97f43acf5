import copy
import itertools
import json
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

# Ensure the repository root is on sys.path so tests can import the dentdesk package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from dentdesk.api import ApiService
from dentdesk.data import ClinicData
from dentdesk.notifications import Notifier
from dentdesk.session import SessionManager
from dentdesk.storage import MemoryStorage

BASE_URL = 'http://clinic.test'

RESOURCES = ('patients', 'appointments', 'expenses', 'users', 'billing', 'medications')


def _json(status: int, payload: Any) -> httpx.Response:
    return httpx.Response(status, json=payload)


class FakeClinicBackend:
    """In-memory stand-in for the clinic REST API."""

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[int, Dict[str, Any]]] = {name: {} for name in RESOURCES}
        self.settings: Dict[str, Any] = {'defaultConsultationFee': 500}
        self.accounts: Dict[str, Tuple[str, Dict[str, Any]]] = {}
        self.patient_otps: Dict[str, str] = {}
        self.requests: List[httpx.Request] = []
        self._failures: Dict[Tuple[str, str], List[httpx.Response]] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def seed(self, resource: str, item: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(item)
        record.setdefault('id', next(self._ids))
        self.collections[resource][int(record['id'])] = record
        return record

    def add_account(self, username: str, password: str, **fields: Any) -> Dict[str, Any]:
        user = {'id': next(self._ids), 'username': username, **fields}
        self.accounts[username] = (password, user)
        return user

    def fail(self, method: str, path: str, response: httpx.Response, times: int = 1) -> None:
        self._failures.setdefault((method, path), []).extend([response] * times)

    def paths(self, method: Optional[str] = None) -> List[str]:
        return [
            r.url.path for r in self.requests if method is None or r.method == method
        ]

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, request.url.path
        queued = self._failures.get((method, path))
        if queued:
            return queued.pop(0)
        body = json.loads(request.content) if request.content else None
        parts = [part for part in path.split('/') if part]

        if parts == ['auth', 'login'] and method == 'POST':
            account = self.accounts.get(body.get('username'))
            if not account or account[0] != body.get('password'):
                return _json(401, {'error': 'Invalid credentials'})
            return _json(200, {'user': account[1], 'token': f"tok-{body['username']}"})
        if parts == ['auth', 'register'] and method == 'POST':
            fields = {k: v for k, v in body.items() if k not in ('username', 'password', 'role')}
            user = self.add_account(body['username'], body['password'], role='receptionist', **fields)
            return _json(200, {'user': user})
        if parts == ['settings']:
            if method == 'PUT':
                self.settings.update(body)
            return _json(200, self.settings)
        if parts[:2] == ['patient-otp', 'send']:
            self.patient_otps[body['phoneNumber']] = '123456'
            return _json(200, {'sent': True})
        if parts[:2] == ['patient-otp', 'verify']:
            if self.patient_otps.get(body['phoneNumber']) != body['otp']:
                return _json(400, {'error': 'Invalid OTP'})
            return _json(200, {'verified': True})
        if parts[:2] == ['patient-otp', 'logout']:
            return _json(200, {'loggedOut': True})
        if parts[:2] == ['patients', 'phone']:
            for patient in self.collections['patients'].values():
                if patient.get('phoneNumber') == parts[2]:
                    return _json(200, patient)
            return _json(404, {'error': 'Patient not found'})
        if parts == ['expenses', 'pending'] and method == 'GET':
            pending = [
                e for e in self.collections['expenses'].values()
                if not e.get('approved') and e.get('status') != 'rejected'
            ]
            return _json(200, copy.deepcopy(pending))
        if len(parts) == 3 and parts[0] == 'expenses' and parts[2] in ('approve', 'reject'):
            expense = self.collections['expenses'].get(int(parts[1]))
            if expense is None:
                return _json(404, {'error': 'Expense not found'})
            if parts[2] == 'approve':
                expense['approved'] = True
            else:
                expense['approved'] = False
                expense['status'] = 'rejected'
            return _json(200, copy.deepcopy(expense))
        if (parts and parts[-1] == 'notify') or parts == ['notify', 'send-file']:
            return _json(200, {'sent': True})
        if parts[:2] == ['users', 'role']:
            users = [u for u in self.collections['users'].values() if u.get('role') == parts[2]]
            return _json(200, copy.deepcopy(users))
        if len(parts) == 3 and parts[1] == 'patient':
            items = [
                item for item in self.collections.get(parts[0], {}).values()
                if str(item.get('patientId')) == parts[2]
            ]
            return _json(200, copy.deepcopy(items))
        if parts and parts[0] in self.collections:
            return self._crud(method, parts, body)
        return _json(404, {'error': 'Not found'})

    def _crud(self, method: str, parts: List[str], body: Any) -> httpx.Response:
        items = self.collections[parts[0]]
        if len(parts) == 1:
            if method == 'GET':
                return _json(200, copy.deepcopy(list(items.values())))
            if method == 'POST':
                return _json(201, copy.deepcopy(self.seed(parts[0], body)))
        if len(parts) == 2:
            item_id = int(parts[1])
            if item_id not in items:
                return _json(404, {'error': f'{parts[0]} {item_id} not found'})
            if method == 'GET':
                return _json(200, copy.deepcopy(items[item_id]))
            if method == 'PUT':
                items[item_id].update(body)
                return _json(200, copy.deepcopy(items[item_id]))
            if method == 'DELETE':
                del items[item_id]
                return httpx.Response(204)
        return _json(405, {'error': 'Method not allowed'})


class FakeClock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


@pytest.fixture
def backend():
    return FakeClinicBackend()


@pytest.fixture
def api(backend):
    return ApiService(BASE_URL, transport=backend.transport())


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def data(api, notifier):
    return ClinicData(api, notifier)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sessions(storage, api, clock):
    return SessionManager(storage, api, clock=clock)
