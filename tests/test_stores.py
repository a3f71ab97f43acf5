import asyncio

import httpx
import pytest

from dentdesk.api import ApiError, ApiService
from dentdesk.models import Patient
from dentdesk.notifications import ERROR, SUCCESS
from dentdesk.stores import CollectionStore, ResourceStore

JANE = {'fullName': 'Jane Doe', 'phoneNumber': '9998887777', 'age': 30, 'gender': 'female'}


def _boom(status=500, message='boom'):
    return httpx.Response(status, json={'error': message})


@pytest.mark.asyncio
async def test_create_patient_refreshes_collection(data, backend, notifier):
    assert data.patients.collection == []

    created = await data.patients.create(JANE)

    assert len(data.patients) == 1
    patient = data.patients.collection[0]
    assert patient.full_name == 'Jane Doe'
    assert patient.phone_number == '9998887777'
    assert patient.age == 30
    assert patient.gender == 'female'
    assert created is not None and created.id == patient.id
    assert backend.paths() == ['/patients', '/patients']
    assert [r.method for r in backend.requests] == ['POST', 'GET']
    assert [(n.level, n.message) for n in notifier.recent()] == [(SUCCESS, 'Patient created')]


@pytest.mark.asyncio
async def test_create_accepts_model_payload(data, backend):
    await data.patients.create(Patient(full_name='Jane Doe', phone_number='9998887777'))

    (record,) = backend.collections['patients'].values()
    assert record['fullName'] == 'Jane Doe'
    assert record['phoneNumber'] == '9998887777'
    assert 'age' not in record


@pytest.mark.asyncio
async def test_update_and_delete_are_read_after_write(data, backend, notifier):
    user = backend.seed('users', {'username': 'drsmith', 'role': 'doctor', 'fullName': 'Dr Smith'})
    await data.users.refresh()

    await data.users.update(user['id'], {'fullName': 'Dr. A. Smith'})
    assert data.users.find(user['id']).full_name == 'Dr. A. Smith'

    await data.users.delete(user['id'])
    assert data.users.collection == []
    assert [n.message for n in notifier.recent()] == ['User updated', 'User deleted']


@pytest.mark.asyncio
async def test_failed_refresh_keeps_stale_collection(data, backend):
    backend.seed('patients', {'id': 1, 'fullName': 'Jane Doe'})
    await data.patients.refresh()
    before = [p.model_dump() for p in data.patients.collection]

    backend.fail('GET', '/patients', _boom())
    await data.patients.refresh()

    assert [p.model_dump() for p in data.patients.collection] == before
    assert data.patients.error == 'boom'
    assert data.patients.loading is False
    assert data.last_error == 'boom'
    assert data.last_error_source == 'patients'


@pytest.mark.asyncio
async def test_successful_refresh_clears_store_error(data, backend):
    backend.fail('GET', '/appointments', _boom())
    await data.appointments.refresh()
    assert data.appointments.error == 'boom'

    await data.appointments.refresh()
    assert data.appointments.error is None


@pytest.mark.asyncio
async def test_non_list_collection_is_a_failed_fetch(data, backend):
    backend.fail('GET', '/patients', httpx.Response(200, json={'unexpected': True}))

    await data.patients.refresh()

    assert data.patients.error == 'Expected a list from /patients'
    assert data.patients.collection == []


@pytest.mark.asyncio
async def test_refresh_can_raise_for_callers(data, backend):
    backend.fail('GET', '/users', _boom(503, 'maintenance'))

    with pytest.raises(ApiError):
        await data.users.refresh(raise_errors=True)


@pytest.mark.asyncio
async def test_errors_are_scoped_per_store(data, backend):
    backend.fail('GET', '/patients', _boom())

    await data.load_all()

    assert data.patients.error == 'boom'
    assert data.appointments.error is None
    assert data.errors() == [('patients', 'boom')]


@pytest.mark.asyncio
async def test_failed_mutation_notifies_and_reraises(data, backend, notifier):
    backend.fail('POST', '/patients', _boom(400, 'Phone number is required'))

    with pytest.raises(ApiError) as excinfo:
        await data.patients.create({'fullName': 'No Phone'})

    assert excinfo.value.status == 400
    assert data.patients.error == 'Phone number is required'
    assert data.last_error == 'Phone number is required'
    assert notifier.recent()[-1].level == ERROR
    assert notifier.recent()[-1].message == 'Phone number is required'
    assert backend.paths('GET') == []


@pytest.mark.asyncio
async def test_failed_post_write_refresh_fails_the_mutation(data, backend, notifier):
    backend.fail('GET', '/patients', _boom(500, 'database unavailable'))

    with pytest.raises(ApiError):
        await data.patients.create(JANE)

    assert len(backend.collections['patients']) == 1
    assert data.patients.collection == []
    assert notifier.recent()[-1].message == 'database unavailable'


@pytest.mark.asyncio
async def test_approve_expense_updates_both_projections(data, backend, notifier):
    backend.seed('expenses', {'id': 42, 'description': 'Composite resin', 'amount': 120.0, 'approved': False})
    backend.seed('expenses', {'id': 43, 'description': 'Gloves', 'amount': 15.0, 'approved': False})
    await data.load_all()
    assert data.pending_expenses.find(42) is not None

    await data.expenses.approve(42)

    assert data.expenses.find(42).approved is True
    assert data.pending_expenses.find(42) is None
    assert data.pending_expenses.find(43) is not None
    assert notifier.recent()[-1].message == 'Expense approved'


@pytest.mark.asyncio
async def test_reject_expense_removes_it_from_pending(data, backend):
    backend.seed('expenses', {'id': 7, 'description': 'Taxi', 'amount': 9.5, 'approved': False})
    await data.load_all()

    await data.expenses.reject(7)

    rejected = data.expenses.find(7)
    assert rejected.approved is False
    assert rejected.model_extra['status'] == 'rejected'
    assert data.pending_expenses.collection == []


@pytest.mark.asyncio
async def test_created_expense_shows_up_as_pending(data):
    await data.expenses.create({'description': 'Burs', 'amount': 40, 'date': '2024-03-01'})

    assert len(data.expenses) == 1
    assert len(data.pending_expenses) == 1
    assert data.pending_expenses.collection[0].description == 'Burs'


@pytest.mark.asyncio
async def test_load_all_refreshes_every_store(data, backend):
    await data.load_all()

    assert sorted(backend.paths('GET')) == sorted([
        '/patients',
        '/appointments',
        '/expenses',
        '/expenses/pending',
        '/users',
        '/billing',
        '/medications',
        '/settings',
    ])
    assert data.loading is False
    assert data.settings.value.default_consultation_fee == 500


@pytest.mark.asyncio
async def test_settings_update_resyncs(data, backend, notifier):
    await data.settings.update({'defaultConsultationFee': 750})

    assert data.settings.value.default_consultation_fee == 750
    assert notifier.recent()[-1].message == 'Settings updated'


@pytest.mark.asyncio
async def test_out_of_order_refresh_responses_are_discarded(notifier):
    release_first = asyncio.Event()
    calls = 0

    async def handler(request):
        nonlocal calls
        calls += 1
        if calls == 1:
            await release_first.wait()
            return httpx.Response(200, json=[{'id': 1, 'fullName': 'Stale Name'}])
        return httpx.Response(200, json=[{'id': 1, 'fullName': 'Fresh Name'}])

    api = ApiService('http://clinic.test', transport=httpx.MockTransport(handler))
    store = ResourceStore(api, 'patients', Patient, label='patient', notifier=notifier)

    slow = asyncio.create_task(store.refresh())
    while calls == 0:
        await asyncio.sleep(0)
    assert store.loading is True

    await store.refresh()
    assert store.collection[0].full_name == 'Fresh Name'
    assert store.loading is True

    release_first.set()
    await slow

    assert store.collection[0].full_name == 'Fresh Name'
    assert store.loading is False


@pytest.mark.asyncio
async def test_stale_failure_does_not_overwrite_newer_success(notifier):
    release_first = asyncio.Event()
    calls = 0

    async def handler(request):
        nonlocal calls
        calls += 1
        if calls == 1:
            await release_first.wait()
            return httpx.Response(500, json={'error': 'late failure'})
        return httpx.Response(200, json=[{'id': 2, 'fullName': 'Fresh'}])

    api = ApiService('http://clinic.test', transport=httpx.MockTransport(handler))
    store = ResourceStore(api, 'patients', Patient, label='patient', notifier=notifier)

    slow = asyncio.create_task(store.refresh())
    while calls == 0:
        await asyncio.sleep(0)
    await store.refresh()
    release_first.set()
    await slow

    assert store.error is None
    assert [p.id for p in store.collection] == [2]


@pytest.mark.asyncio
async def test_fetch_one_leaves_collection_untouched(data, backend):
    backend.seed('medications', {'id': 3, 'name': 'Amoxicillin', 'dosage': '500mg'})

    medication = await data.medications.fetch_one(3)

    assert medication.name == 'Amoxicillin'
    assert data.medications.collection == []


@pytest.mark.asyncio
async def test_ensure_loaded_runs_once(data, backend):
    await data.ensure_loaded()
    await data.ensure_loaded()

    assert backend.paths('GET').count('/patients') == 1


@pytest.mark.asyncio
async def test_clear_error_resets_hub_banner(data, backend):
    backend.fail('GET', '/billing', _boom())
    await data.bills.refresh()
    assert data.last_error_source == 'billing'

    data.clear_error()

    assert data.last_error is None
    assert data.bills.error == 'boom'


@pytest.mark.parametrize(
    'response',
    [
        httpx.Response(200, text='<html>gateway</html>'),
        httpx.Response(200, text='[{"id": 1, "fullName": "Jane'),
        httpx.Response(200),
    ],
)
@pytest.mark.asyncio
async def test_unusable_success_body_keeps_stale_collection(data, backend, response):
    backend.seed('patients', {'id': 1, 'fullName': 'Jane Doe'})
    await data.patients.refresh()

    backend.fail('GET', '/patients', response)
    await data.patients.refresh()

    assert [p.full_name for p in data.patients.collection] == ['Jane Doe']
    assert data.patients.error is not None
    assert data.patients.loading is False


@pytest.mark.asyncio
async def test_empty_settings_body_keeps_previous_settings(data, backend):
    await data.settings.refresh()

    backend.fail('GET', '/settings', httpx.Response(200))
    await data.settings.refresh()

    assert data.settings.value.default_consultation_fee == 500
    assert data.settings.error is not None


def test_pending_projection_is_read_only(data):
    pending = data.pending_expenses

    assert isinstance(pending, CollectionStore)
    assert not isinstance(pending, ResourceStore)
    for operation in ('create', 'update', 'delete', 'approve', 'reject'):
        assert not hasattr(pending, operation)
    assert data.expenses.pending is pending
