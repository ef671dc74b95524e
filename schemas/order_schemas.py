"""
Request/response schemas for the storefront API
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, AliasChoices

from models.order_models import OrderStatus


class CreateOrderRequest(BaseModel):
    """Order creation body; `username` is accepted for older storefront pages"""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    package: Optional[str] = None
    owner_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('owner_name', 'username'),
    )


# Order fields a customer may see at any time
PUBLIC_ORDER_FIELDS = (
    'id',
    'status',
    'owner_name',
    'package',
    'package_name',
    'package_details',
    'amount',
    'created_at',
    'updated_at',
    'expires_at',
    'qr_url',
    'qr_string',
)

PUBLIC_RESOURCE_FIELDS = (
    'server_id',
    'identifier',
    'name',
    'package',
    'memory',
    'disk',
    'cpu',
    'panel_url',
    'created_at',
)


def build_order_projection(order: Dict[str, Any]) -> Dict[str, Any]:
    """
    Redacted view of an order

    Payment breakdown, gateway reference and the raw secret are never
    exposed; the server and its credentials appear only once provisioned.
    """
    projection = {field: order.get(field) for field in PUBLIC_ORDER_FIELDS}
    if order.get('note'):
        projection['note'] = order['note']

    resource = order.get('provisioned_resource')
    if order.get('status') == OrderStatus.SUCCESS.value and resource:
        projection['provisioned_resource'] = {
            field: resource.get(field) for field in PUBLIC_RESOURCE_FIELDS
        }
        credentials = resource.get('credentials')
        if credentials:
            projection['provisioned_resource']['credentials'] = dict(credentials)
            projection['credentials'] = dict(credentials)
    return projection
