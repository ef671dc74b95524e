"""
Pterodactyl Panel Service
Creates the customer's panel account and a bot server sized to the paid order
"""

import time
import logging
from typing import Dict, List, Optional, Any, Tuple

import httpx

from config import get_config, PanelConfig
from database import OrderStore, get_order_store
from models.order_models import ProvisionResult, ResourceTier, derive_contact
from pricing_utils import resolve_order_tier, tier_package_name
from utils.payment_logging import track_payment_operation
from utils.timezone_utils import get_utc_for_db

logger = logging.getLogger(__name__)


class ProvisioningError(Exception):
    """Unrecoverable panel failure; the order must be marked failed"""
    pass


class PterodactylService:
    """Pterodactyl application API wrapper for bot server provisioning"""

    def __init__(
        self,
        store: Optional[OrderStore] = None,
        config: Optional[PanelConfig] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        app_config = get_config()
        self.store = store or get_order_store()
        self.config = config or app_config.panel
        self.timeout = timeout if timeout is not None else app_config.server.http_timeout
        self._transport = transport

        if not self.config.is_configured():
            logger.warning("PTERODACTYL_URL / PTERODACTYL_API_KEY not set - provisioning will fail")

    @property
    def headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.config.api_key}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url or '',
            headers=self.headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    # === API Methods ===

    async def ensure_user(
        self,
        client: httpx.AsyncClient,
        email: str,
        username: str,
        password: Optional[str] = None
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Create the panel account, or reuse it when the panel reports a conflict

        Returns:
            (user attribute dict, True if the account was created by this call)
        """
        payload = {
            'email': email,
            'username': username,
            'first_name': 'Server',
            'last_name': 'Customer',
            'language': 'en',
        }
        if password:
            payload['password'] = password
        response = await client.post('/api/application/users', json=payload)

        if response.status_code == 422:
            logger.info(f"👤 Panel user {username} already exists, looking it up")
            existing = await self._find_user(client, email, username)
            if existing:
                return existing, False
            raise ProvisioningError(f"Panel rejected user {username} and no existing account matches")

        response.raise_for_status()
        user = response.json().get('attributes') or {}
        logger.info(f"👤 Created panel user {username} (id {user.get('id')})")
        return user, True

    async def reset_password(self, client: httpx.AsyncClient, user: Dict[str, Any], password: str) -> None:
        """Set a new password on an existing panel account (the panel wants the full profile back)"""
        response = await client.patch(f"/api/application/users/{user['id']}", json={
            'email': user.get('email'),
            'username': user.get('username'),
            'first_name': user.get('first_name') or 'Server',
            'last_name': user.get('last_name') or 'Customer',
            'language': user.get('language') or 'en',
            'password': password,
        })
        response.raise_for_status()
        logger.info(f"🔑 Reset password of panel user {user.get('username')} (id {user['id']})")

    async def resolve_password(
        self,
        client: httpx.AsyncClient,
        owner_name: str,
        user: Dict[str, Any],
        created: bool,
        secret: str
    ) -> str:
        """
        The password that actually opens the panel account

        A fresh account was registered with this order's secret. A reused one
        keeps the secret cached from when it was registered; when none is
        cached for that panel id the account is reset to this order's secret.
        """
        if created:
            return secret
        cached = await self.store.get_user(owner_name)
        if cached and cached.get('secret') and cached.get('panel_user_id') == user['id']:
            logger.info(f"🔑 Reusing stored credentials for panel user {owner_name}")
            return cached['secret']
        await self.reset_password(client, user, secret)
        return secret

    async def _find_user(self, client: httpx.AsyncClient, email: str, username: str) -> Optional[Dict[str, Any]]:
        response = await client.get('/api/application/users', params={'filter[email]': email})
        response.raise_for_status()
        users: List[Dict[str, Any]] = response.json().get('data', [])
        for user in users:
            attributes = user.get('attributes', {})
            if attributes.get('email') == email or attributes.get('username') == username:
                return attributes
        return None

    async def create_server(
        self,
        client: httpx.AsyncClient,
        user_id: int,
        server_name: str,
        tier: ResourceTier,
        order_id: str
    ) -> Dict[str, Any]:
        """
        Create one server for the user

        Args:
            user_id: Panel user id owning the server
            server_name: Display name
            tier: Memory/disk/cpu limits
            order_id: Stored in the server environment for traceability
        """
        data = {
            'name': server_name,
            'user': user_id,
            'egg': self.config.egg_id,
            'docker_image': self.config.docker_image,
            'startup': 'npm start',
            'environment': {
                'NODE_ENV': 'production',
                'ORDER_ID': order_id,
            },
            'limits': {
                'memory': tier.memory,
                'swap': 0,
                'disk': tier.disk,
                'io': 500,
                'cpu': tier.cpu,
            },
            'feature_limits': {
                'databases': 1,
                'backups': 1,
            },
            'allocation': {
                'default': 1,
            },
            'deploy': {
                'locations': [self.config.location_id],
                'dedicated_ip': False,
                'port_range': [],
            },
        }

        response = await client.post('/api/application/servers', json=data)
        if response.is_error:
            logger.error(f"Create server error: {response.status_code} {response.text}")
        response.raise_for_status()

        server = response.json().get('attributes') or {}
        logger.info(f"🖥️ Created panel server {server.get('identifier')} for order {order_id}")
        return server

    @track_payment_operation("pterodactyl_provision")
    async def provision(self, order: Dict[str, Any]) -> ProvisionResult:
        """
        Provision a server for a paid order

        Raises:
            ProvisioningError: on any panel or network failure
        """
        order_id = order['id']
        owner_name = order['owner_name']
        email = order.get('derived_contact') or derive_contact(owner_name)
        secret = order.get('credential_secret')
        logger.info(f"Provisioning server for order: {order_id}")

        if not self.config.is_configured():
            raise ProvisioningError("Pterodactyl credentials not configured")
        if not secret:
            raise ProvisioningError(f"Order {order_id} has no credential secret")

        tier = resolve_order_tier(order)
        server_name = f"bot-{owner_name}-{str(int(time.time() * 1000))[-6:]}"

        try:
            async with self._client() as client:
                user, created = await self.ensure_user(client, email, owner_name, secret)
                if user.get('id') is None:
                    raise ProvisioningError(f"Panel returned no user id for {owner_name}")

                password = await self.resolve_password(client, owner_name, user, created, secret)
                await self.store.save_user({
                    'owner_name': owner_name,
                    'email': email,
                    'secret': password,
                    'panel_user_id': user['id'],
                })

                server = await self.create_server(client, user['id'], server_name, tier, order_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Provisioning failed for order {order_id}: {e}")
            raise ProvisioningError(f"Server provisioning failed: {e}") from e

        identifier = server.get('identifier')
        provisioned_resource = {
            'server_id': server.get('id'),
            'identifier': identifier,
            'name': server.get('name', server_name),
            'package': tier_package_name(tier.memory),
            'memory': tier.memory,
            'disk': tier.disk,
            'cpu': tier.cpu,
            'panel_url': f"{self.config.base_url}/server/{identifier}",
            'credentials': {
                'username': owner_name,
                'email': email,
                'password': password,
            },
            'created_at': get_utc_for_db(),
        }
        return ProvisionResult(provisioned_resource=provisioned_resource, panel_user_id=user['id'])


_pterodactyl_instance: Optional[PterodactylService] = None


def get_pterodactyl_service() -> PterodactylService:
    """Get Pterodactyl service instance (singleton)"""
    global _pterodactyl_instance
    if _pterodactyl_instance is None:
        _pterodactyl_instance = PterodactylService()
    return _pterodactyl_instance
