"""
Atlantic H2H service implementation for QRIS deposit payments
Opens a deposit for an order; the gateway confirms it later through the webhook
"""

import logging
import secrets
import string
from typing import Dict, Optional, Any
from urllib.parse import quote

import httpx

from config import get_config, PaymentConfig
from database import OrderStore, get_order_store, generate_order_id
from models.order_models import DepositResult, OrderStatus, derive_contact
from pricing_utils import format_money
from utils.payment_logging import track_payment_operation
from utils.timezone_utils import utc_after_minutes, normalize_timestamp

logger = logging.getLogger(__name__)

PLACEHOLDER_NOTE = 'Placeholder payment - gateway error'
PLACEHOLDER_WARNING = 'Placeholder payment - check Atlantic API configuration'


class PaymentGatewayError(Exception):
    """The gateway was unreachable, refused the request or answered in an unknown shape"""
    pass


# ====================================================================
# FALLBACK POLICIES
# ====================================================================

class FallbackPolicy:
    """What create_deposit does when the live gateway call fails"""

    name = 'abstract'

    async def handle(
        self,
        service: 'AtlanticPaymentService',
        order: Dict[str, Any],
        error: Exception
    ) -> DepositResult:
        raise NotImplementedError


class PlaceholderPaymentPolicy(FallbackPolicy):
    """
    Keep the storefront usable: attach a locally generated QR encoding the
    order id to the already-persisted order and flag it with a note
    """

    name = 'placeholder'

    async def handle(self, service, order, error):
        order_id = order['id']
        qr_string = f"ORDER-{order_id}"
        fields = {
            'id': order_id,
            'qr_string': qr_string,
            'qr_url': f"https://api.qrserver.com/v1/create-qr-code/?size=300x300&data={quote(qr_string)}&format=png",
            'expires_at': order.get('expires_at') or utc_after_minutes(service.config.expiry_minutes),
            'note': PLACEHOLDER_NOTE,
        }
        saved = await service.store.upsert(fields)
        logger.warning(f"🟡 Using placeholder payment for order {order_id}: {error}")
        return DepositResult(
            order_id=order_id,
            amount=saved['amount'],
            qr_url=saved['qr_url'],
            qr_string=saved['qr_string'],
            expires_at=saved['expires_at'],
            order_data=saved,
            warning=PLACEHOLDER_WARNING,
        )


class StrictPaymentPolicy(FallbackPolicy):
    """Surface gateway failures to the caller"""

    name = 'strict'

    async def handle(self, service, order, error):
        logger.error(f"❌ Atlantic deposit failed for order {order['id']} (strict policy): {error}")
        if isinstance(error, PaymentGatewayError):
            raise error
        raise PaymentGatewayError(str(error)) from error


FALLBACK_POLICIES = {
    PlaceholderPaymentPolicy.name: PlaceholderPaymentPolicy,
    StrictPaymentPolicy.name: StrictPaymentPolicy,
}


def get_fallback_policy(name: Optional[str]) -> FallbackPolicy:
    policy_cls = FALLBACK_POLICIES.get((name or '').lower())
    if policy_cls is None:
        logger.warning(f"⚠️ Unknown payment fallback policy '{name}', using placeholder")
        policy_cls = PlaceholderPaymentPolicy
    return policy_cls()


# ====================================================================
# ATLANTIC SERVICE
# ====================================================================

def generate_password(length: int = 12) -> str:
    """One-time credential secret, shared by the panel account and the customer"""
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


class AtlanticPaymentService:
    """Atlantic H2H QRIS deposit service"""

    def __init__(
        self,
        store: Optional[OrderStore] = None,
        config: Optional[PaymentConfig] = None,
        fallback_policy: Optional[FallbackPolicy] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        app_config = get_config()
        self.store = store or get_order_store()
        self.config = config or app_config.payment
        self.fallback_policy = fallback_policy or get_fallback_policy(self.config.fallback_policy)
        self.timeout = timeout if timeout is not None else app_config.server.http_timeout
        self._transport = transport

        if self.config.api_key:
            logger.info(f"🔧 Atlantic service initialized ({self.config.base_url}, fallback={self.fallback_policy.name})")
        else:
            logger.info("🔧 Atlantic service initialized (missing ATLANTIC_API_KEY)")

    def is_available(self) -> bool:
        return bool(self.config.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @track_payment_operation("atlantic_create_deposit")
    async def create_deposit(
        self,
        amount: int,
        owner_name: str,
        extra_fields: Optional[Dict[str, Any]] = None
    ) -> DepositResult:
        """
        Persist a pending order and open a QRIS deposit for it

        Args:
            amount: Whole Rupiah
            owner_name: Customer identifier
            extra_fields: Additional order fields stored with the first write

        Returns:
            DepositResult; with the placeholder policy this never raises for
            gateway problems
        """
        order_id = generate_order_id()
        while await self.store.get(order_id) is not None:
            order_id = generate_order_id()

        order = {
            **(extra_fields or {}),
            'id': order_id,
            'owner_name': owner_name,
            'derived_contact': derive_contact(owner_name),
            'credential_secret': generate_password(),
            'amount': int(amount),
            'status': OrderStatus.PENDING.value,
            'expires_at': utc_after_minutes(self.config.expiry_minutes),
        }
        order = await self.store.upsert(order)
        logger.info(f"🧾 Pending order {order_id} created for {owner_name}: {format_money(amount)}")

        try:
            payment_data = await self._request_deposit(order_id, int(amount))
        except (httpx.HTTPError, PaymentGatewayError, ValueError) as e:
            return await self.fallback_policy.handle(self, order, e)

        saved = await self.store.upsert({
            'id': order_id,
            'payment_reference': payment_data['deposit_id'],
            'qr_url': payment_data['qr_url'],
            'qr_string': payment_data['qr_string'],
            'expires_at': payment_data['expires_at'] or order['expires_at'],
        })
        logger.info(f"✅ Atlantic deposit {payment_data['deposit_id']} opened for order {order_id}")

        return DepositResult(
            order_id=order_id,
            amount=saved['amount'],
            qr_url=saved.get('qr_url'),
            qr_string=saved.get('qr_string'),
            expires_at=saved['expires_at'],
            payment_reference=saved.get('payment_reference'),
            order_data=saved,
        )

    async def _request_deposit(self, order_id: str, amount: int) -> Dict[str, Any]:
        if not self.is_available():
            raise PaymentGatewayError("Payment gateway credentials not configured")

        form = {
            'api_key': self.config.api_key,
            'reff_id': order_id,
            'nominal': str(amount),
            'type': 'ewallet',
            'metode': 'qris',
        }
        url = f"{self.config.base_url}/deposit/create"
        logger.info(f"🚀 Request to Atlantic: {url} reff_id={order_id} nominal={amount}")

        async with self._client() as client:
            response = await client.post(
                url,
                data=form,
                headers={'Accept': 'application/json'},
            )
            response.raise_for_status()
            body = response.json()

        logger.info(f"📦 Atlantic response: {response.status_code} success={body.get('success') if isinstance(body, dict) else None}")
        return self._extract_payment_data(body)

    def _extract_payment_data(self, body: Any) -> Dict[str, Any]:
        """Normalize the two response shapes the gateway is known to return"""
        if not isinstance(body, dict) or not isinstance(body.get('data'), dict):
            raise PaymentGatewayError("Invalid response format from Atlantic")
        if body.get('success') is False:
            raise PaymentGatewayError(body.get('message') or "Atlantic rejected the deposit request")

        data = body['data']
        deposit_id = data.get('id') or data.get('reference')
        qr_url = data.get('qr_url') or data.get('qr_image') or data.get('qr_code')
        qr_string = data.get('qr_string') or data.get('qr_content')
        if not deposit_id or not (qr_url or qr_string):
            raise PaymentGatewayError("Atlantic response is missing deposit id or QR data")

        expires_raw = data.get('expired_at') or data.get('expiry_time')
        return {
            'deposit_id': str(deposit_id),
            'qr_url': qr_url,
            'qr_string': qr_string,
            'expires_at': normalize_timestamp(expires_raw, self.config.gateway_utc_offset_hours),
        }


_atlantic_instance: Optional[AtlanticPaymentService] = None


def get_atlantic_service() -> AtlanticPaymentService:
    """Get Atlantic service instance (singleton)"""
    global _atlantic_instance
    if _atlantic_instance is None:
        _atlantic_instance = AtlanticPaymentService()
    return _atlantic_instance
