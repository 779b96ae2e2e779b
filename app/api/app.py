# app/api/app.py
"""
FastAPI application factory.

create_app() wires:
- routers (/api/orders, /api/coupons, /api/mercadopago, /api/ws ...)
- the broadcaster (memory or redis relay) and the Mercado Pago client on app.state
- error handlers: domain errors → {"error": message}, bad bodies → 400

Tests pass their own broadcaster / fake provider and skip the database
setup of the lifespan.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

import structlog

from config.settings import config
from infrastructure.database.base import close_db, init_db
from infrastructure.redis_storage import check_redis_connection, create_redis

from app.api.routes import admin, coupons, mercadopago, orders, websocket
from app.services.broadcaster import OrderBroadcaster
from app.services.exceptions import OrderingError
from app.services.mercadopago import MercadoPagoClient, PaymentProvider

logger = structlog.get_logger()


def _default_broadcaster() -> OrderBroadcaster:
    redis_url = config.optional_redis_url()
    redis = create_redis(redis_url) if redis_url else None
    return OrderBroadcaster(redis=redis, channel=config.broadcast_channel)


def create_app(
    broadcaster: Optional[OrderBroadcaster] = None,
    payment_provider: Optional[PaymentProvider] = None,
    manage_database: bool = True,
) -> FastAPI:
    """
    Example:
        app = create_app()
        uvicorn.run(app, host=config.api_host, port=config.api_port)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app_startup", message="🟢 Starting ordering API")

        if manage_database:
            await init_db()
            logger.info("database_initialized", message="✅ Database ready")

        redis = app.state.broadcaster.redis
        if redis is not None:
            if await check_redis_connection(redis):
                logger.info("redis_connected", message="✅ Redis relay ready")
            else:
                logger.warning("redis_unavailable", message="⚠️ Redis not answering, events stay in this worker until it reconnects")

        await app.state.broadcaster.start()

        try:
            yield

        finally:
            logger.info("app_shutdown", message="🔴 Shutting down ordering API")

            try:
                await app.state.broadcaster.stop()
            except Exception as e:
                logger.error("broadcaster_stop_error", error=str(e))

            close = getattr(app.state.payment_provider, "close", None)
            if close is not None:
                await close()

            if manage_database:
                await close_db()
                logger.info("database_closed", message="✅ Database closed")

    app = FastAPI(
        title="Restaurant Ordering API",
        description="Orders, coupons and Mercado Pago payments for the storefront and back office",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.broadcaster = broadcaster or _default_broadcaster()
    app.state.payment_provider = payment_provider or MercadoPagoClient()

    # ==========================================
    # ERROR HANDLERS
    # ==========================================

    @app.exception_handler(OrderingError)
    async def ordering_error_handler(request: Request, exc: OrderingError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "request_failed",
            path=request.url.path,
            status=exc.status_code,
            error=exc.message,
            error_type=type(exc).__name__
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "msg": error.get("msg"),
                "type": error.get("type"),
            }
            for error in exc.errors()
        ]
        logger.info("request_invalid", path=request.url.path, errors=len(details))
        return JSONResponse(status_code=400, content={"error": "Dados inválidos", "details": details})

    # ==========================================
    # HEALTH
    # ==========================================

    @app.get("/health")
    async def health_check():
        """
        GET /health
        → {"status": "ok", "service": "restaurant-ordering", ...}
        """
        return {
            "status": "ok",
            "service": "restaurant-ordering",
            "environment": config.environment,
            "broadcast": app.state.broadcaster.stats()["backend"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ==========================================
    # ROUTERS
    # ==========================================

    app.include_router(orders.router, prefix="/api")
    app.include_router(coupons.router, prefix="/api")
    app.include_router(mercadopago.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")
    app.include_router(websocket.router)

    return app
