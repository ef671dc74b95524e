"""
Pricing utility functions for bot hosting packages
Fixed package catalog plus the price → resource tier mapping used for provisioning
"""

import logging
from typing import Optional, Dict, Any, List

from models.order_models import PackageSpec, ResourceTier

logger = logging.getLogger(__name__)

# Read-only at runtime; prices are whole Rupiah
SERVER_PACKAGES: List[PackageSpec] = [
    PackageSpec(id='basic', name='Basic Bot Hosting', memory=1024, disk=5120, cpu=50, price=500),
    PackageSpec(id='standard', name='Standard Bot Hosting', memory=2048, disk=10240, cpu=100, price=500),
    PackageSpec(id='premium', name='Premium Bot Hosting', memory=4096, disk=20480, cpu=150, price=1000),
    PackageSpec(id='enterprise', name='Enterprise Bot Hosting', memory=8192, disk=40960, cpu=200, price=1500),
]

# (upper price bound inclusive, tier); the last tier has no bound
PRICE_TIERS = [
    (25000, ResourceTier(memory=1024, disk=5120, cpu=50)),
    (50000, ResourceTier(memory=2048, disk=10240, cpu=100)),
    (100000, ResourceTier(memory=4096, disk=20480, cpu=150)),
]
TOP_TIER = ResourceTier(memory=8192, disk=40960, cpu=200)

TIER_PACKAGE_NAMES = {
    1024: 'Basic Bot Hosting',
    2048: 'Standard Bot Hosting',
    4096: 'Premium Bot Hosting',
    8192: 'Enterprise Bot Hosting',
}


def get_package(package_id: Optional[str]) -> Optional[PackageSpec]:
    """Look up a catalog entry by id"""
    if not package_id:
        return None
    for package in SERVER_PACKAGES:
        if package.id == package_id:
            return package
    return None


def list_packages() -> List[Dict[str, Any]]:
    """Catalog dump for the packages endpoint"""
    return [package.to_dict() for package in SERVER_PACKAGES]


def map_price_to_tier(price: int) -> ResourceTier:
    """Resource tier for a paid amount"""
    for upper_bound, tier in PRICE_TIERS:
        if price <= upper_bound:
            return tier
    return TOP_TIER


def tier_package_name(memory: int) -> str:
    return TIER_PACKAGE_NAMES.get(memory, 'Custom Bot Hosting')


def resolve_order_tier(order: Dict[str, Any]) -> ResourceTier:
    """
    Tier for a paid order

    The package copy embedded at creation wins so a customer gets what they
    picked; orders without one fall back to the price mapping.
    """
    details = order.get('package_details') or {}
    try:
        return ResourceTier(
            memory=int(details['memory']),
            disk=int(details['disk']),
            cpu=int(details['cpu']),
        )
    except (KeyError, TypeError, ValueError):
        amount = order.get('paid_amount') or order.get('amount') or 0
        tier = map_price_to_tier(int(amount))
        logger.info(f"💰 No package resources on order {order.get('id')}, mapped {format_money(amount)} to {tier.memory}MB tier")
        return tier


def get_currency_symbol(currency_code: str) -> str:
    """Get currency symbol for a given currency code"""
    currency_symbols = {
        'IDR': 'Rp',
        'USD': '$',
        'EUR': '€',
        'SGD': 'S$',
        'MYR': 'RM',
    }
    return currency_symbols.get(currency_code.upper(), currency_code.upper())


def format_money(amount: Any, currency: str = "IDR", include_currency: bool = False) -> str:
    """
    Money formatting for logs and messages

    Rupiah has no minor unit, so amounts are shown with thousands separators
    only (e.g. "Rp25.000").
    """
    try:
        whole = int(amount)
    except (TypeError, ValueError):
        return str(amount)
    formatted = f"{get_currency_symbol(currency)}{whole:,}".replace(',', '.')
    if include_currency:
        formatted += f" {currency.upper()}"
    return formatted
