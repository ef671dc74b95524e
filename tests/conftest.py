import json
import asyncio
from typing import Any, Dict, List, Optional

import httpx
import pytest

from adapters.atlantic_adapter import compute_signature
from config import reset_config
from database import OrderStore, MemoryStorageBackend, set_order_store
from models.order_models import ProvisionResult
from monitoring.production_logging import get_telemetry
from services.pterodactyl import ProvisioningError

WEBHOOK_SECRET = 'whsec_test'
PANEL_URL = 'https://panel.test'


@pytest.fixture(autouse=True)
def app_env(monkeypatch, tmp_path):
    """Isolated configuration for every test"""
    monkeypatch.setenv('ATLANTIC_BASE_URL', 'https://gateway.test')
    monkeypatch.setenv('ATLANTIC_API_KEY', 'atl_test_key')
    monkeypatch.setenv('ATLANTIC_WEBHOOK_SECRET', WEBHOOK_SECRET)
    monkeypatch.setenv('PAYMENT_FALLBACK', 'placeholder')
    monkeypatch.setenv('PTERODACTYL_URL', PANEL_URL)
    monkeypatch.setenv('PTERODACTYL_API_KEY', 'ptla_test')
    monkeypatch.setenv('DATA_DIR', str(tmp_path / 'data'))
    monkeypatch.setenv('ENVIRONMENT', 'development')
    reset_config()
    get_telemetry().reset()
    yield
    reset_config()
    set_order_store(None)
    get_telemetry().reset()


@pytest.fixture
def store():
    return OrderStore(MemoryStorageBackend())


def gateway_success_handler(request: httpx.Request) -> httpx.Response:
    form = dict(pair.split('=', 1) for pair in request.content.decode().split('&'))
    return httpx.Response(200, json={
        'success': True,
        'data': {
            'id': f"DEP-{form['reff_id']}",
            'reff_id': form['reff_id'],
            'nominal': int(form['nominal']),
            'qr_url': f"https://gateway.test/qr/{form['reff_id']}.png",
            'qr_string': f"00020101021226{form['reff_id']}",
            'expired_at': '2099-01-01T00:00:00Z',
        },
    })


@pytest.fixture
def gateway_transport():
    return httpx.MockTransport(gateway_success_handler)


class FakeProvisioner:
    """Stands in for the panel client; records calls and the status seen mid-provisioning"""

    def __init__(self, store: OrderStore, fail: bool = False, delay: float = 0.0):
        self.store = store
        self.fail = fail
        self.delay = delay
        self.calls: List[str] = []
        self.observed_status: List[Optional[str]] = []

    async def provision(self, order: Dict[str, Any]) -> ProvisionResult:
        self.calls.append(order['id'])
        current = await self.store.get(order['id'])
        self.observed_status.append(current['status'] if current else None)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProvisioningError("Server provisioning failed: panel returned 500")
        return ProvisionResult(
            provisioned_resource={
                'server_id': 42,
                'identifier': 'abcd1234',
                'name': f"bot-{order['owner_name']}-123456",
                'package': 'Basic Bot Hosting',
                'memory': 1024,
                'disk': 5120,
                'cpu': 50,
                'panel_url': f"{PANEL_URL}/server/abcd1234",
                'credentials': {
                    'username': order['owner_name'],
                    'email': order['derived_contact'],
                    'password': order['credential_secret'],
                },
                'created_at': '2026-01-01T00:00:00+00:00',
            },
            panel_user_id=7,
        )


def deposit_event(order_id: str, status: str = 'success', nominal: int = 500, fee: int = 0) -> bytes:
    return json.dumps({
        'event': 'deposit',
        'data': {
            'id': f"DEP-{order_id}",
            'reff_id': order_id,
            'status': status,
            'nominal': nominal,
            'fee': fee,
            'created_at': '2026-01-01T10:00:00Z',
        },
    }).encode('utf-8')


def signed_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> Dict[str, str]:
    return {
        'content-type': 'application/json',
        'x-atl-signature': compute_signature(secret, body),
    }
