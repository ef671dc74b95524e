#!/usr/bin/env python3
"""
Atlantic Webhook Adapter
Verifies callback signatures and converts Atlantic deposit callbacks into
DepositEventDTO using safe field conversion
"""

import hmac
import json
import hashlib
import logging
from typing import Dict, Any, Optional, Mapping

from models.order_models import DepositEventDTO

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'x-atl-signature'


class WebhookSignatureError(Exception):
    """Missing or mismatched callback signature"""
    pass


class InvalidWebhookPayloadError(Exception):
    """Callback body is not a usable event"""
    pass


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw callback body"""
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def _safe_int(value: Any, field_name: str) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Atlantic webhook field {field_name}={value!r} is not numeric, ignoring")
        return None


def _safe_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class AtlanticWebhookAdapter:
    """
    Adapter for Atlantic deposit callbacks
    Signature is checked against the raw bytes before anything is parsed
    """

    def __init__(self, secret: Optional[str]):
        self.secret = secret

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        """
        Raises:
            WebhookSignatureError: unsigned, unverifiable or mismatched body
        """
        signature = headers.get(SIGNATURE_HEADER) or headers.get(SIGNATURE_HEADER.upper()) or ''
        if not signature:
            logger.error("❌ No signature provided in webhook")
            raise WebhookSignatureError("Missing signature")

        if not self.secret:
            logger.error("❌ CRITICAL: Missing ATLANTIC_WEBHOOK_SECRET - cannot verify webhook")
            raise WebhookSignatureError("Webhook secret not configured")

        expected = compute_signature(self.secret, body)
        if not hmac.compare_digest(signature.strip().lower(), expected):
            logger.error("❌ Invalid webhook signature")
            raise WebhookSignatureError("Invalid signature")

    def parse(self, body: bytes) -> DepositEventDTO:
        """
        Convert a verified callback body to a DepositEventDTO

        Raises:
            InvalidWebhookPayloadError: body is not a JSON object, or a
                deposit event has no reff_id
        """
        try:
            payload = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidWebhookPayloadError("Invalid JSON") from e

        if not isinstance(payload, dict):
            raise InvalidWebhookPayloadError("Webhook body must be a JSON object")

        event = (_safe_string(payload.get('event')) or '').lower()
        data = payload.get('data')

        if event != 'deposit':
            return DepositEventDTO(event=event, reff_id=None, status='', raw=payload)

        if not isinstance(data, dict) or not _safe_string(data.get('reff_id')):
            raise InvalidWebhookPayloadError("Invalid deposit data")

        return self.convert_deposit(event, data, payload)

    def convert_deposit(self, event: str, data: Dict[str, Any], payload: Dict[str, Any]) -> DepositEventDTO:
        return DepositEventDTO(
            event=event,
            reff_id=_safe_string(data.get('reff_id')),
            status=(_safe_string(data.get('status')) or '').lower(),
            deposit_id=_safe_string(data.get('id')),
            nominal=_safe_int(data.get('nominal'), 'nominal'),
            fee=_safe_int(data.get('fee'), 'fee'),
            paid_at=_safe_string(data.get('created_at') or data.get('paid_at')),
            raw=payload,
        )
