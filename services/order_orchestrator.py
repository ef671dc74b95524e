"""
Order Orchestrator - Single Source of Truth for the Order Lifecycle

Drives an order from creation through payment confirmation to a provisioned
bot server.

Architecture:
- Status state machine: pending → processing → success | failed
- Every transition goes through the order store; no private copies survive a call
- Per-order exclusive section around read → transition → provision → write,
  so duplicate webhook deliveries cannot provision twice
- Terminal states short-circuit replays
"""

import re
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List

from database import OrderStore, get_order_store
from models.order_models import (
    DepositEventDTO, DepositResult, OrderStatus, is_terminal, can_transition
)
from monitoring.production_logging import log_business_event, log_error_with_context
from pricing_utils import get_package, format_money
from services.atlantic import AtlanticPaymentService, get_atlantic_service
from services.pterodactyl import PterodactylService, ProvisioningError, get_pterodactyl_service
from utils.timezone_utils import is_past, get_utc_for_db

logger = logging.getLogger(__name__)

OWNER_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_]+$')
OWNER_NAME_MIN = 3
OWNER_NAME_MAX = 16

EXPIRED_NOTE = 'Payment window expired'


class OrderValidationError(Exception):
    """Client input rejected before any state was touched"""
    pass


class DuplicatePendingOrderError(Exception):
    """The customer already has an unpaid order"""

    def __init__(self, order_id: str):
        super().__init__('You have a pending order. Please complete it first.')
        self.order_id = order_id


class OrderNotFoundError(Exception):
    pass


class PaidAfterFailureError(Exception):
    """The gateway confirmed payment for an order that had already failed"""
    pass


def validate_owner_name(owner_name: Any) -> str:
    if not isinstance(owner_name, str) or not (OWNER_NAME_MIN <= len(owner_name) <= OWNER_NAME_MAX):
        raise OrderValidationError(f"Username must be {OWNER_NAME_MIN}-{OWNER_NAME_MAX} characters")
    if not OWNER_NAME_PATTERN.match(owner_name):
        raise OrderValidationError("Username can only contain letters, numbers, and underscores")
    return owner_name


class OrderOrchestrator:
    """
    Centralized orchestrator for order processing.

    Owns no order state of its own: the store is read at the start of every
    step and written at the end of it.
    """

    def __init__(
        self,
        store: Optional[OrderStore] = None,
        payment_service: Optional[AtlanticPaymentService] = None,
        provisioning_service: Optional[PterodactylService] = None
    ):
        self.store = store or get_order_store()
        self._payment_service = payment_service
        self._provisioning_service = provisioning_service
        # order id -> [lock, holders]
        self._order_locks: Dict[str, List[Any]] = {}

    @property
    def payment_service(self) -> AtlanticPaymentService:
        if self._payment_service is None:
            self._payment_service = get_atlantic_service()
        return self._payment_service

    @property
    def provisioning_service(self) -> PterodactylService:
        if self._provisioning_service is None:
            self._provisioning_service = get_pterodactyl_service()
        return self._provisioning_service

    @asynccontextmanager
    async def order_section(self, order_id: str):
        """Exclusive section for one order id; locks are dropped once unused"""
        entry = self._order_locks.get(order_id)
        if entry is None:
            entry = self._order_locks[order_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._order_locks.pop(order_id, None)

    # ----------------------------------------------------------------
    # Creation and lookup
    # ----------------------------------------------------------------

    async def create_order(self, package_id: Any, owner_name: Any) -> DepositResult:
        """
        Validate the request, enforce one pending order per customer and open a deposit

        Raises:
            OrderValidationError: missing/invalid fields or unknown package
            DuplicatePendingOrderError: customer has a live pending order
        """
        if not package_id or not owner_name:
            raise OrderValidationError("Package and username are required")
        owner_name = validate_owner_name(owner_name)

        package = get_package(package_id) if isinstance(package_id, str) else None
        if package is None:
            raise OrderValidationError("Invalid package selected")

        pending = await self.store.find_pending_by_owner(owner_name)
        if pending is not None:
            pending = await self.expire_if_stale(pending)
            if pending['status'] == OrderStatus.PENDING.value:
                logger.info(f"⛔ {owner_name} already has pending order {pending['id']}")
                raise DuplicatePendingOrderError(pending['id'])

        result = await self.payment_service.create_deposit(
            package.price,
            owner_name,
            extra_fields={
                'package': package.id,
                'package_name': package.name,
                'package_details': package.details(),
            },
        )

        log_business_event(
            'order_orchestrator',
            'order_created',
            {
                'owner_name': owner_name,
                'package': package.id,
                'amount': package.price,
                'placeholder_payment': result.is_placeholder,
            },
            order_id=result.order_id,
        )
        logger.info(f"🧾 Order {result.order_id} for {owner_name}: {package.name} {format_money(package.price)}")
        return result

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return await self.expire_if_stale(order)

    async def expire_if_stale(self, order: Dict[str, Any]) -> Dict[str, Any]:
        """Fail a pending order whose payment deadline has passed"""
        if order.get('status') != OrderStatus.PENDING.value or not is_past(order.get('expires_at')):
            return order

        async with self.order_section(order['id']):
            current = await self.store.get(order['id'])
            if current is None or current.get('status') != OrderStatus.PENDING.value:
                return current or order
            updated = await self.store.update_status(order['id'], OrderStatus.FAILED, note=EXPIRED_NOTE)
            logger.info(f"⌛ Order {order['id']} expired unpaid")
            log_business_event('order_orchestrator', 'order_expired', {'expires_at': order.get('expires_at')}, order_id=order['id'])
            return updated or current

    # ----------------------------------------------------------------
    # Payment events
    # ----------------------------------------------------------------

    async def handle_deposit_event(self, event: DepositEventDTO) -> Dict[str, Any]:
        """
        Apply a verified gateway callback to its order

        Returns:
            Acknowledgement dict; provisioning failures are recorded on the
            order, not raised

        Raises:
            OrderNotFoundError: the callback names an unknown order
        """
        if not event.is_deposit:
            logger.info(f"ℹ️ Ignoring non-deposit event: {event.event}")
            return {'received': True, 'status': 'ignored'}

        order_id = event.reff_id
        async with self.order_section(order_id):
            order = await self.store.get(order_id)
            if order is None:
                logger.error(f"❌ Order not found: {order_id}")
                raise OrderNotFoundError(order_id)

            if is_terminal(order['status']):
                if order['status'] == OrderStatus.SUCCESS.value:
                    logger.info(f"✅ Order already processed: {order_id}")
                    return {'received': True, 'status': 'already_processed', 'order_id': order_id}
                if event.status == 'success':
                    self._report_paid_after_failure(order, event)
                else:
                    logger.info(f"🔒 Order {order_id} already {order['status']}, ignoring {event.status} event")
                return {'received': True, 'status': 'already_final', 'order_id': order_id}

            if event.status == 'processing':
                logger.info(f"⏳ Payment still processing: {order_id}")
                await self._transition(order, OrderStatus.PENDING)
                return {'received': True, 'status': OrderStatus.PENDING.value, 'order_id': order_id}

            if event.status != 'success':
                logger.info(f"❌ Payment failed: {order_id} (gateway status {event.status or 'missing'})")
                await self._transition(order, OrderStatus.FAILED)
                log_business_event('order_orchestrator', 'payment_failed', {'gateway_status': event.status}, order_id=order_id)
                return {'received': True, 'status': OrderStatus.FAILED.value, 'order_id': order_id}

            return await self._process_paid_order(order, event)

    def _report_paid_after_failure(self, order: Dict[str, Any], event: DepositEventDTO) -> None:
        """Money arrived for a failed order; nothing is provisioned, an operator has to refund or fulfil by hand"""
        order_id = order['id']
        logger.error(f"🚨 Payment confirmed for order {order_id} which is already {order['status']}, not provisioning")
        log_error_with_context(
            'order_orchestrator',
            PaidAfterFailureError(f"Order {order_id} paid after it was marked {order['status']}"),
            {
                'stage': 'paid_after_failure',
                'deposit_id': event.deposit_id,
                'paid_amount': event.nominal,
                'order_note': order.get('note'),
            },
            order_id=order_id,
        )

    async def _transition(self, order: Dict[str, Any], new_status: OrderStatus, **kwargs: Any) -> Optional[Dict[str, Any]]:
        if not can_transition(order['status'], new_status):
            logger.warning(f"⚠️ Refusing transition {order['status']} → {new_status.value} for order {order['id']}")
            return order
        return await self.store.update_status(order['id'], new_status, **kwargs)

    async def _process_paid_order(self, order: Dict[str, Any], event: DepositEventDTO) -> Dict[str, Any]:
        order_id = order['id']
        paid_amount = event.nominal if event.nominal is not None else order.get('amount')
        if paid_amount is not None and order.get('amount') is not None and paid_amount < order['amount']:
            logger.warning(f"⚠️ Order {order_id} paid {format_money(paid_amount)} of {format_money(order['amount'])}")

        order = await self.store.upsert({
            'id': order_id,
            'payment_reference': event.deposit_id or order.get('payment_reference'),
            'paid_amount': paid_amount,
            'fee': event.fee if event.fee is not None else 0,
            'paid_at': event.paid_at or get_utc_for_db(),
            'status': OrderStatus.PROCESSING.value,
        })
        logger.info(f"✅ Payment successful for order: {order_id}, starting provisioning...")
        log_business_event('order_orchestrator', 'payment_confirmed', {'paid_amount': paid_amount, 'fee': order.get('fee')}, order_id=order_id)

        try:
            result = await self.provisioning_service.provision(order)
        except ProvisioningError as e:
            logger.error(f"❌ Provisioning failed: {e}")
            return await self._fail_order(order, e)
        except Exception as e:
            logger.exception(f"❌ Unexpected provisioning error for order {order_id}")
            return await self._fail_order(order, e)

        credentials = result.provisioned_resource.get('credentials') or {}
        await self.store.update_status(
            order_id,
            OrderStatus.SUCCESS,
            provisioned_resource=result.provisioned_resource,
            credential_secret=credentials.get('password') or order.get('credential_secret'),
        )
        logger.info(f"🎉 Server provisioned successfully for order: {order_id}")
        log_business_event(
            'order_orchestrator',
            'server_provisioned',
            {
                'identifier': result.provisioned_resource.get('identifier'),
                'package': result.provisioned_resource.get('package'),
                'panel_user_id': result.panel_user_id,
            },
            order_id=order_id,
        )
        return {'received': True, 'processed': True, 'status': OrderStatus.SUCCESS.value, 'order_id': order_id}

    async def _fail_order(self, order: Dict[str, Any], error: Exception) -> Dict[str, Any]:
        await self.store.update_status(order['id'], OrderStatus.FAILED)
        log_error_with_context('order_orchestrator', error, {'stage': 'provisioning'}, order_id=order['id'])
        logger.warning(f"⚠️ Order {order['id']} marked as failed due to provisioning error")
        return {'received': True, 'processed': False, 'status': OrderStatus.FAILED.value, 'order_id': order['id']}
