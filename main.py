# main.py
"""
🚀 ENTRY POINT OF THE ORDERING API

Starts the FastAPI application (orders, coupons, Mercado Pago, WebSocket).

Run:
    python main.py
or, with several workers (BROADCAST_BACKEND=redis so they share events):
    uvicorn main:app --workers 4
"""

import asyncio

import uvicorn

from config.settings import config
from infrastructure.logger import setup_logging
from app.api.app import create_app

import structlog

logger = structlog.get_logger()

setup_logging()

app = create_app()


def check_config() -> None:
    """
    Warn about settings that make part of the service unusable.
    Nothing here stops the start: cash orders work without Mercado Pago.
    """
    if not config.mercadopago_access_token:
        logger.warning(
            "mercadopago_token_missing",
            message="⚠️ MERCADOPAGO_ACCESS_TOKEN is not set, PIX and card payments will fail"
        )

    if not config.public_base_url:
        logger.warning(
            "public_base_url_missing",
            message="⚠️ PUBLIC_BASE_URL is not set, Mercado Pago cannot reach the webhook",
            webhook_url=config.webhook_url
        )

    if config.environment == "production" and not config.admin_api_token:
        logger.warning(
            "admin_token_missing",
            message="⚠️ ADMIN_API_TOKEN is not set, back office routes are open"
        )

    if config.environment == "production" and not config.mercadopago_webhook_secret:
        logger.warning(
            "webhook_secret_missing",
            message="⚠️ MERCADOPAGO_WEBHOOK_SECRET is not set, webhook signatures are not checked"
        )


async def main():
    logger.info("application_start", message="🟢 Application starting")
    check_config()

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.api_host,
        port=config.api_port,
        log_level="debug" if config.debug else "info",
        access_log=True,
    ))

    logger.info(
        "fastapi_starting",
        message=f"🌐 FastAPI starting on {config.api_host}:{config.api_port}",
        webhook_url=config.webhook_url,
        broadcast_backend=config.broadcast_backend
    )

    try:
        await server.serve()

    except Exception as e:
        logger.error("fatal_error", error=str(e), error_type=type(e).__name__)
        raise


if __name__ == "__main__":
    try:
        asyncio.run(main())

    except KeyboardInterrupt:
        logger.info("app_interrupted", message="⛔ Stopped (Ctrl+C)")

    finally:
        logger.info("app_final_shutdown", message="👋 Application stopped")
