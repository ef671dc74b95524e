import json

import httpx
import pytest
from fastapi.testclient import TestClient

from fastapi_server import create_app
from services.atlantic import AtlanticPaymentService
from tests.conftest import FakeProvisioner, gateway_success_handler, deposit_event, signed_headers


def build_client(store, provisioner):
    payment = AtlanticPaymentService(store=store, transport=httpx.MockTransport(gateway_success_handler))
    app = create_app(store=store, payment_service=payment, provisioning_service=provisioner)
    return TestClient(app)


@pytest.fixture
def provisioner(store):
    return FakeProvisioner(store)


@pytest.fixture
def client(store, provisioner):
    with build_client(store, provisioner) as test_client:
        yield test_client


def place_order(client, package='basic', owner_name='alice_01'):
    response = client.post('/orders', json={'package': package, 'owner_name': owner_name})
    assert response.status_code == 200, response.text
    return response.json()


def post_webhook(client, body, headers=None):
    return client.post('/payments/webhook', content=body, headers=headers or signed_headers(body))


def test_health_reports_storage(client):
    response = client.get('/health')

    assert response.status_code == 200
    body = response.json()
    assert body['status'] == 'ok'
    assert body['storage'] == {'backend': 'memory', 'orders_count': 0, 'users_count': 0}
    assert body['recent_errors'] == []
    assert client.get('/api/health').status_code == 200


def test_packages_catalog(client):
    response = client.get('/packages')

    packages = {package['id']: package for package in response.json()['packages']}
    assert set(packages) == {'basic', 'standard', 'premium', 'enterprise'}
    assert packages['premium']['price'] == 1000
    assert packages['basic']['memory_mb'] == 1024


def test_create_order_returns_payment_details(client):
    body = place_order(client)

    assert body['success'] is True
    assert body['order_id'].startswith('WS')
    assert body['amount'] == 500
    assert body['qr_url']
    assert body['qr_string']
    assert 'warning' not in body
    assert body['order']['status'] == 'pending'
    assert 'credential_secret' not in body['order']
    assert 'credentials' not in body['order']


def test_create_order_accepts_username_alias(client):
    response = client.post('/api/orders', json={'package': 'basic', 'username': 'bob_02'})

    assert response.status_code == 200
    assert response.json()['order']['owner_name'] == 'bob_02'


@pytest.mark.parametrize('payload', [
    {'package': 'basic', 'owner_name': 'bad name!'},
    {'package': 'basic', 'owner_name': 'ab'},
    {'package': 'gold', 'owner_name': 'alice_01'},
    {'owner_name': 'alice_01'},
    {'package': 'basic'},
])
def test_create_order_rejects_invalid_input(client, store, payload):
    response = client.post('/orders', json=payload)

    assert response.status_code == 400
    assert response.json()['success'] is False
    assert client.get('/health').json()['storage']['orders_count'] == 0


def test_create_order_rejects_malformed_body(client):
    response = client.post('/orders', content=b'not json', headers={'content-type': 'application/json'})

    assert response.status_code == 400


def test_duplicate_pending_order_returns_existing_id(client):
    first = place_order(client)

    response = client.post('/orders', json={'package': 'premium', 'owner_name': 'alice_01'})

    assert response.status_code == 400
    assert response.json()['order_id'] == first['order_id']
    assert client.get('/health').json()['storage']['orders_count'] == 1


def test_paid_order_is_provisioned_and_credentials_exposed(client, provisioner):
    order_id = place_order(client)['order_id']

    response = post_webhook(client, deposit_event(order_id))

    assert response.status_code == 200
    assert response.json()['status'] == 'success'
    order = client.get(f'/orders/{order_id}').json()['order']
    assert order['status'] == 'success'
    assert order['provisioned_resource']['identifier'] == 'abcd1234'
    assert order['credentials']['username'] == 'alice_01'
    assert order['credentials']['email'] == 'alice_01@gmail.com'
    assert 'paid_amount' not in order
    assert 'payment_reference' not in order
    assert provisioner.calls == [order_id]


def test_replayed_webhook_does_not_provision_twice(client, provisioner):
    order_id = place_order(client)['order_id']
    body = deposit_event(order_id)

    post_webhook(client, body)
    response = post_webhook(client, body)

    assert response.status_code == 200
    assert response.json()['status'] == 'already_processed'
    assert provisioner.calls == [order_id]


def test_invalid_signature_leaves_order_untouched(client, provisioner):
    order_id = place_order(client)['order_id']
    body = deposit_event(order_id)

    response = post_webhook(client, body, headers=signed_headers(body, secret='wrong'))

    assert response.status_code == 401
    assert client.get(f'/orders/{order_id}').json()['order']['status'] == 'pending'
    assert provisioner.calls == []


def test_missing_signature_is_rejected(client):
    order_id = place_order(client)['order_id']

    response = client.post(
        '/payments/webhook', content=deposit_event(order_id), headers={'content-type': 'application/json'}
    )

    assert response.status_code == 401


def test_webhook_for_unknown_order_is_not_found(client):
    response = post_webhook(client, deposit_event('WS_UNKNOWN'))

    assert response.status_code == 404
    assert client.get('/health').json()['storage']['orders_count'] == 0


def test_webhook_with_invalid_payload(client):
    body = json.dumps({'event': 'deposit', 'data': {'status': 'success'}}).encode('utf-8')

    response = post_webhook(client, body)

    assert response.status_code == 400


def test_non_deposit_event_is_acknowledged(client):
    body = json.dumps({'event': 'transfer', 'data': {}}).encode('utf-8')

    response = post_webhook(client, body)

    assert response.status_code == 200
    assert response.json()['status'] == 'ignored'


def test_provisioning_failure_is_acknowledged_and_order_failed(store):
    with build_client(store, FakeProvisioner(store, fail=True)) as client:
        order_id = place_order(client)['order_id']

        response = post_webhook(client, deposit_event(order_id))

        assert response.status_code == 200
        assert response.json()['status'] == 'failed'
        order = client.get(f'/orders/{order_id}').json()['order']
        assert order['status'] == 'failed'
        assert 'provisioned_resource' not in order
        assert 'credentials' not in order

        health = client.get('/health').json()
        assert health['pipeline']['order_orchestrator.provisioning.failed'] == 1
        assert health['recent_errors'][-1]['name'] == 'provisioning'
        assert health['recent_errors'][-1]['order_id'] == order_id
        assert health['recent_errors'][-1]['kind'] == 'error'


def test_failed_payment_allows_new_order(client):
    order_id = place_order(client)['order_id']
    post_webhook(client, deposit_event(order_id, status='failed'))

    second = place_order(client, package='premium')

    assert second['order_id'] != order_id


def test_get_unknown_order(client):
    response = client.get('/orders/WS_MISSING')

    assert response.status_code == 404
    assert response.json()['error'] == 'Order not found'


def test_gateway_outage_returns_placeholder_payment(store, provisioner):
    def handler(request):
        return httpx.Response(503, text='maintenance')

    payment = AtlanticPaymentService(store=store, transport=httpx.MockTransport(handler))
    app = create_app(store=store, payment_service=payment, provisioning_service=provisioner)

    with TestClient(app) as client:
        body = place_order(client)

    assert body['warning']
    assert body['qr_string'] == f"ORDER-{body['order_id']}"


def test_docs_hidden_in_production(store, provisioner, monkeypatch):
    monkeypatch.setenv('ENVIRONMENT', 'production')

    with build_client(store, provisioner) as client:
        assert client.get('/docs').status_code == 404


def test_unexpected_create_failure_details_only_in_development(store, provisioner, monkeypatch):
    class BrokenPayment:
        async def create_deposit(self, *args, **kwargs):
            raise RuntimeError('disk on fire')

    app = create_app(store=store, payment_service=BrokenPayment(), provisioning_service=provisioner)
    with TestClient(app) as client:
        response = client.post('/orders', json={'package': 'basic', 'owner_name': 'alice_01'})
        assert response.status_code == 500
        assert 'disk on fire' in response.json()['details']

        monkeypatch.setenv('ENVIRONMENT', 'production')
        response = client.post('/orders', json={'package': 'basic', 'owner_name': 'bob_02'})
        assert response.status_code == 500
        assert 'details' not in response.json()


def test_health_counts_pipeline_events(client):
    order_id = place_order(client)['order_id']
    post_webhook(client, deposit_event(order_id))

    pipeline = client.get('/health').json()['pipeline']

    assert pipeline['order_orchestrator.order_created'] == 1
    assert pipeline['order_orchestrator.payment_confirmed'] == 1
    assert pipeline['order_orchestrator.server_provisioned'] == 1
