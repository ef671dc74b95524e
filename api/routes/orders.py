"""
Order, Package and Payment Webhook Routes
"""
import time
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from adapters.atlantic_adapter import (
    AtlanticWebhookAdapter, WebhookSignatureError, InvalidWebhookPayloadError
)
from schemas.order_schemas import CreateOrderRequest, build_order_projection
from services.order_orchestrator import (
    OrderOrchestrator, OrderValidationError, DuplicatePendingOrderError, OrderNotFoundError
)
from pricing_utils import list_packages
from utils.environment import is_development_environment

logger = logging.getLogger(__name__)

router = APIRouter()


def get_orchestrator(request: Request) -> OrderOrchestrator:
    return request.app.state.orchestrator


def get_webhook_adapter(request: Request) -> AtlanticWebhookAdapter:
    return request.app.state.webhook_adapter


@router.get("/packages", response_model=dict)
async def get_packages():
    """Static package catalog"""
    return {"success": True, "packages": list_packages()}


@router.post("/orders", response_model=dict)
async def create_order(
    body: CreateOrderRequest,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator)
):
    """
    Create an order and open its QRIS deposit

    **Errors:**
    - 400: missing/invalid package or username, or an existing pending order
      (its id is returned as `order_id`)
    - 500: unexpected failure
    """
    try:
        result = await orchestrator.create_order(body.package, body.owner_name)
    except OrderValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DuplicatePendingOrderError as e:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": str(e),
                "order_id": e.order_id,
                "timestamp": int(time.time()),
            },
        )
    except Exception as e:
        logger.exception("Create order error")
        content = {"success": False, "error": "Failed to create order", "timestamp": int(time.time())}
        if is_development_environment():
            content["details"] = f"{type(e).__name__}: {e}"
        return JSONResponse(status_code=500, content=content)

    response = {
        "success": True,
        "message": "Order created successfully",
        "order_id": result.order_id,
        "qr_url": result.qr_url,
        "qr_string": result.qr_string,
        "amount": result.amount,
        "expires_at": result.expires_at,
        "order": build_order_projection(result.order_data),
    }
    if result.warning:
        response["warning"] = result.warning
    return response


@router.get("/orders", response_model=dict, include_in_schema=False)
async def get_order_without_id():
    raise HTTPException(status_code=400, detail="Order ID is required")


@router.get("/orders/{order_id}", response_model=dict)
async def get_order(
    order_id: str,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator)
):
    """Redacted order status; server details appear once the order succeeds"""
    if not order_id.strip():
        raise HTTPException(status_code=400, detail="Order ID is required")
    try:
        order = await orchestrator.get_order(order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "order": build_order_projection(order)}


@router.post("/payments/webhook", response_model=dict)
async def payment_webhook(
    request: Request,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    adapter: AtlanticWebhookAdapter = Depends(get_webhook_adapter)
):
    """
    Atlantic deposit callback

    Once the signature and body are accepted this always answers 200, even
    when provisioning fails, so the gateway does not retry.
    """
    body = await request.body()
    logger.info(f"📥 Webhook received: {len(body)} bytes")

    try:
        adapter.verify_signature(body, request.headers)
    except WebhookSignatureError as e:
        raise HTTPException(status_code=401, detail=str(e))

    try:
        event = adapter.parse(body)
    except InvalidWebhookPayloadError as e:
        logger.error(f"❌ {e}")
        raise HTTPException(status_code=400, detail=str(e))

    try:
        return await orchestrator.handle_deposit_event(event)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except Exception:
        logger.exception("❌ Webhook processing error")
        return {
            "received": True,
            "error": "Internal error but acknowledged",
            "timestamp": int(time.time()),
        }
