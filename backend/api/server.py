"""
Storefront Checkout Server
==========================
FastAPI application for checkout and payment reconciliation:
- /payment/* routes (session creation, retry, webhook, verification)
- Structured logging with structlog
- Fulfillment subscribed to order.confirmed for the app's lifetime
- Health monitoring

Run:
    uvicorn api.server:create_app --factory --port 8000
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.container import PaymentServices
from api.payment_routes import router as payment_router
from config import Settings
from payments.errors import CheckoutError

VERSION = "1.0.0"

logger = structlog.get_logger().bind(component="server")


def configure_logging(settings: Settings) -> None:
    """Configure structlog once per process"""
    renderer = (
        structlog.dev.ConsoleRenderer(colors=settings.debug)
        if settings.LOG_FORMAT == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.LOG_LEVEL.upper())
        ),
        cache_logger_on_first_use=False,
    )


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    stripe_configured: bool
    persistence: str


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    services: Optional[PaymentServices] = None,
) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    configure_logging(settings)
    services = services or PaymentServices.from_settings(settings)
    started_at = datetime.utcnow()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION, env=settings.ENV)

        if services.db is not None:
            await services.db.initialize()
        await services.fulfillment.register()

        yield

        logger.info("server_shutting_down")
        await services.fulfillment.unregister()
        if services.shipping is not None:
            await services.shipping.close()
        if services.db is not None:
            await services.db.close()

    app = FastAPI(
        title="Storefront Checkout",
        description="Checkout sessions and payment reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = request.headers.get("x-request-id") or str(uuid4())[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("checkout_error",
            path=request.url.path,
            status_code=exc.status_code,
            error_type=type(exc).__name__,
            message=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=(datetime.utcnow() - started_at).total_seconds(),
            stripe_configured=services.gateway is not None,
            persistence="postgres" if services.db is not None else "memory",
        )

    app.include_router(payment_router)
    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "api.server:create_app",
        factory=True,
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV", "development") == "development",
        log_level="info",
    )
