#!/usr/bin/env python3
"""
FastAPI Storefront Gateway - HTTP entry point for orders, status polling and
payment webhooks
"""

import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import get_config

# Configure logging early to capture all startup logs including lifespan
import json as _json
from datetime import datetime as _dt, timezone as _tz


class _JsonLogFormatter(logging.Formatter):
    """Single structured JSON log format for production"""
    def format(self, record):
        log_data = {
            'timestamp': _dt.fromtimestamp(record.created, _tz.utc).isoformat(),
            'level': record.levelname,
            'component': record.name,
            'message': record.getMessage(),
        }
        order_id = getattr(record, 'order_id', None)
        if order_id:
            log_data['order_id'] = order_id
        context = getattr(record, 'context', None)
        if context:
            log_data['context'] = context
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)
        return _json.dumps(log_data, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    _handler = logging.StreamHandler()
    _handler.setFormatter(_JsonLogFormatter())
    logging.root.handlers = [_handler]
    logging.root.setLevel(level)
    # Outbound request lines would carry the gateway api_key in form bodies/URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)


configure_logging()

from adapters.atlantic_adapter import AtlanticWebhookAdapter
from api.routes.orders import router as orders_router
from database import OrderStore, init_order_store, set_order_store
from monitoring.production_logging import EventKind, get_telemetry
from services.atlantic import AtlanticPaymentService
from services.order_orchestrator import OrderOrchestrator
from services.pterodactyl import PterodactylService
from utils.environment import get_environment_name, is_production_environment

logger = logging.getLogger(__name__)

RECENT_ERRORS_SHOWN = 5


def create_app(
    store: Optional[OrderStore] = None,
    payment_service: Optional[AtlanticPaymentService] = None,
    provisioning_service: Optional[PterodactylService] = None
) -> FastAPI:
    """
    Build the application

    Collaborators default to ones built from configuration at startup; tests
    pass their own.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = get_config()
        logger.info(f"🚀 Initializing {config.server.app_name} ({get_environment_name()})...")

        order_store = store or init_order_store(config.storage.data_dir)
        set_order_store(order_store)
        await order_store.initialize()
        counts = await order_store.counts()
        telemetry = get_telemetry()
        logger.info(f"✅ Storage ready ({order_store.backend_name}): {counts['orders_count']} orders, {counts['users_count']} users")

        app.state.store = order_store
        app.state.orchestrator = OrderOrchestrator(
            store=order_store,
            payment_service=payment_service or AtlanticPaymentService(store=order_store),
            provisioning_service=provisioning_service or PterodactylService(store=order_store),
        )
        app.state.webhook_adapter = AtlanticWebhookAdapter(config.payment.webhook_secret)

        logger.info("🎉 Application initialization complete!")
        yield
        logger.info("👋 Shutting down")

    app = FastAPI(
        title="Bot Hosting Storefront API",
        version="1.0.0",
        # Interactive docs are a development aid only
        docs_url=None if is_production_environment() else "/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(orders_router)
    # Paths the original storefront pages call
    app.include_router(orders_router, prefix="/api", include_in_schema=False)

    @app.get("/health", include_in_schema=False)
    @app.get("/api/health", include_in_schema=False)
    async def health_check(request: Request):
        """Health check for monitoring - ALWAYS returns 200 OK"""
        order_store: OrderStore = request.app.state.store
        counts = await order_store.counts()
        telemetry = get_telemetry()
        return {
            "status": "ok",
            "timestamp": int(time.time()),
            "storage": {
                "backend": order_store.backend_name,
                **counts,
            },
            "pipeline": telemetry.counters(),
            "recent_errors": [event.to_dict() for event in telemetry.recent(kind=EventKind.ERROR)[-RECENT_ERRORS_SHOWN:]],
        }

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions"""
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail, "timestamp": int(time.time())}
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Malformed request bodies are client errors (400), not 422"""
        logger.info(f"⚠️ Rejected request body on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request body", "timestamp": int(time.time())}
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error(f"❌ Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "timestamp": int(time.time())}
        )

    return app


app = create_app()


# Development server
if __name__ == "__main__":
    from dotenv import load_dotenv
    load_dotenv()

    uvicorn.run(
        "fastapi_server:app",
        host="0.0.0.0",
        port=get_config().server.port,
        reload=False,
        log_level="info"
    )
