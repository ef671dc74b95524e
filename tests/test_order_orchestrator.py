import asyncio

import httpx
import pytest

from models.order_models import DepositEventDTO
from monitoring.production_logging import EventKind, get_telemetry
from services.atlantic import AtlanticPaymentService
from services.order_orchestrator import (
    OrderOrchestrator, OrderValidationError, DuplicatePendingOrderError, OrderNotFoundError,
    EXPIRED_NOTE
)
from tests.conftest import FakeProvisioner, gateway_success_handler


@pytest.fixture
def provisioner(store):
    return FakeProvisioner(store)


@pytest.fixture
def orchestrator(store, provisioner):
    payment = AtlanticPaymentService(store=store, transport=httpx.MockTransport(gateway_success_handler))
    return OrderOrchestrator(store=store, payment_service=payment, provisioning_service=provisioner)


def success_event(order_id, status='success', nominal=500, fee=0):
    return DepositEventDTO(
        event='deposit',
        reff_id=order_id,
        status=status,
        deposit_id=f"DEP-{order_id}",
        nominal=nominal,
        fee=fee,
        paid_at='2026-01-01T10:00:00Z',
    )


async def test_create_order_embeds_package(orchestrator, store):
    result = await orchestrator.create_order('basic', 'alice_01')

    order = await store.get(result.order_id)
    assert order['status'] == 'pending'
    assert order['amount'] == 500
    assert order['package'] == 'basic'
    assert order['package_name'] == 'Basic Bot Hosting'
    assert order['package_details']['memory'] == 1024


@pytest.mark.parametrize('package_id, owner_name', [
    (None, 'alice_01'),
    ('basic', None),
    ('basic', 'ab'),
    ('basic', 'a' * 17),
    ('basic', 'bad name!'),
    ('gold', 'alice_01'),
])
async def test_create_order_validation(orchestrator, store, package_id, owner_name):
    with pytest.raises(OrderValidationError):
        await orchestrator.create_order(package_id, owner_name)
    assert await store.list_orders() == []


async def test_second_pending_order_is_rejected(orchestrator, store):
    first = await orchestrator.create_order('basic', 'alice_01')

    with pytest.raises(DuplicatePendingOrderError) as excinfo:
        await orchestrator.create_order('premium', 'alice_01')

    assert excinfo.value.order_id == first.order_id
    assert len(await store.list_orders()) == 1


async def test_expired_pending_order_does_not_block_new_order(orchestrator, store):
    await store.upsert({
        'id': 'WSOLD', 'owner_name': 'alice_01', 'status': 'pending',
        'amount': 500, 'expires_at': '2020-01-01T00:00:00+00:00',
    })

    result = await orchestrator.create_order('basic', 'alice_01')

    old = await store.get('WSOLD')
    assert old['status'] == 'failed'
    assert old['note'] == EXPIRED_NOTE
    assert result.order_id != 'WSOLD'


async def test_success_event_provisions_and_attaches_resource(orchestrator, store, provisioner):
    created = await orchestrator.create_order('basic', 'alice_01')

    ack = await orchestrator.handle_deposit_event(success_event(created.order_id))

    assert ack['status'] == 'success'
    order = await store.get(created.order_id)
    assert order['status'] == 'success'
    assert order['paid_amount'] == 500
    assert order['fee'] == 0
    assert order['paid_at'] == '2026-01-01T10:00:00Z'
    assert order['provisioned_resource']['credentials']['password'] == order['credential_secret']
    # provisioning ran while the order was visibly processing
    assert provisioner.observed_status == ['processing']


async def test_replayed_success_event_provisions_once(orchestrator, store, provisioner):
    created = await orchestrator.create_order('basic', 'alice_01')

    await orchestrator.handle_deposit_event(success_event(created.order_id))
    ack = await orchestrator.handle_deposit_event(success_event(created.order_id))

    assert ack['status'] == 'already_processed'
    assert provisioner.calls == [created.order_id]


async def test_concurrent_duplicate_deliveries_provision_once(store):
    provisioner = FakeProvisioner(store, delay=0.05)
    payment = AtlanticPaymentService(store=store, transport=httpx.MockTransport(gateway_success_handler))
    orchestrator = OrderOrchestrator(store=store, payment_service=payment, provisioning_service=provisioner)
    created = await orchestrator.create_order('basic', 'alice_01')

    acks = await asyncio.gather(
        orchestrator.handle_deposit_event(success_event(created.order_id)),
        orchestrator.handle_deposit_event(success_event(created.order_id)),
    )

    assert sorted(ack['status'] for ack in acks) == ['already_processed', 'success']
    assert provisioner.calls == [created.order_id]
    assert orchestrator._order_locks == {}


async def test_provisioning_failure_marks_order_failed(store):
    provisioner = FakeProvisioner(store, fail=True)
    payment = AtlanticPaymentService(store=store, transport=httpx.MockTransport(gateway_success_handler))
    orchestrator = OrderOrchestrator(store=store, payment_service=payment, provisioning_service=provisioner)
    created = await orchestrator.create_order('basic', 'alice_01')

    ack = await orchestrator.handle_deposit_event(success_event(created.order_id))

    assert ack['status'] == 'failed'
    order = await store.get(created.order_id)
    assert order['status'] == 'failed'
    assert 'provisioned_resource' not in order


async def test_processing_event_keeps_order_pending(orchestrator, store, provisioner):
    created = await orchestrator.create_order('basic', 'alice_01')

    ack = await orchestrator.handle_deposit_event(success_event(created.order_id, status='processing'))

    assert ack['status'] == 'pending'
    assert (await store.get(created.order_id))['status'] == 'pending'
    assert provisioner.calls == []


@pytest.mark.parametrize('gateway_status', ['failed', 'expired', 'cancel', ''])
async def test_non_success_event_fails_order(orchestrator, store, provisioner, gateway_status):
    created = await orchestrator.create_order('basic', 'alice_01')

    await orchestrator.handle_deposit_event(success_event(created.order_id, status=gateway_status))

    assert (await store.get(created.order_id))['status'] == 'failed'
    assert provisioner.calls == []


async def test_terminal_order_ignores_later_events(orchestrator, store, provisioner):
    created = await orchestrator.create_order('basic', 'alice_01')
    await orchestrator.handle_deposit_event(success_event(created.order_id, status='failed'))

    ack = await orchestrator.handle_deposit_event(success_event(created.order_id))

    assert ack['status'] == 'already_final'
    assert (await store.get(created.order_id))['status'] == 'failed'
    assert provisioner.calls == []


async def test_unknown_order_is_not_found_without_side_effects(orchestrator, store):
    with pytest.raises(OrderNotFoundError):
        await orchestrator.handle_deposit_event(success_event('WS_UNKNOWN'))
    assert await store.list_orders() == []


async def test_non_deposit_event_is_ignored(orchestrator, store):
    created = await orchestrator.create_order('basic', 'alice_01')

    ack = await orchestrator.handle_deposit_event(
        DepositEventDTO(event='withdraw', reff_id=created.order_id, status='success')
    )

    assert ack['status'] == 'ignored'
    assert (await store.get(created.order_id))['status'] == 'pending'


async def test_get_order_expires_stale_pending(orchestrator, store):
    await store.upsert({
        'id': 'WSOLD', 'owner_name': 'alice_01', 'status': 'pending',
        'expires_at': '2020-01-01T00:00:00+00:00',
    })

    order = await orchestrator.get_order('WSOLD')

    assert order['status'] == 'failed'


async def test_get_order_unknown(orchestrator):
    with pytest.raises(OrderNotFoundError):
        await orchestrator.get_order('missing')


async def test_payment_after_expiry_is_reported_not_provisioned(orchestrator, store, provisioner):
    await store.upsert({
        'id': 'WSOLD', 'owner_name': 'alice_01', 'status': 'pending', 'amount': 500,
        'expires_at': '2020-01-01T00:00:00+00:00',
    })
    await orchestrator.get_order('WSOLD')

    ack = await orchestrator.handle_deposit_event(success_event('WSOLD'))

    assert ack == {'received': True, 'status': 'already_final', 'order_id': 'WSOLD'}
    assert provisioner.calls == []
    assert (await store.get('WSOLD'))['status'] == 'failed'
    errors = get_telemetry().recent(order_id='WSOLD', kind=EventKind.ERROR)
    assert [event.name for event in errors] == ['paid_after_failure']
    assert errors[0].details['deposit_id'] == 'DEP-WSOLD'
    assert errors[0].details['paid_amount'] == 500
    assert errors[0].details['order_note'] == EXPIRED_NOTE
    assert get_telemetry().counters()['order_orchestrator.paid_after_failure.failed'] == 1


async def test_late_failure_event_on_failed_order_is_not_an_error(orchestrator, store, provisioner):
    created = await orchestrator.create_order('basic', 'alice_01')
    await orchestrator.handle_deposit_event(success_event(created.order_id, status='failed'))

    await orchestrator.handle_deposit_event(success_event(created.order_id, status='expired'))

    assert get_telemetry().recent(kind=EventKind.ERROR) == []


async def test_success_stores_the_password_that_was_delivered(orchestrator, store):
    created = await orchestrator.create_order('basic', 'alice_01')

    await orchestrator.handle_deposit_event(success_event(created.order_id))

    order = await store.get(created.order_id)
    assert order['credential_secret'] == order['provisioned_resource']['credentials']['password']
