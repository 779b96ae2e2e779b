# app/api/routes/mercadopago.py
"""
Mercado Pago endpoints.

POST /api/mercadopago/create-pix
POST /api/mercadopago/create-card-payment
POST /api/mercadopago/create-preference
GET  /api/mercadopago/payment/{id}       → polled by the PIX screen
GET  /api/mercadopago/public-key
GET  /api/mercadopago/config
POST /api/mercadopago/webhook            → notifications
POST /api/webhook/mercadopago            → same handler (URL registered at Mercado Pago)
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

import structlog

from config.settings import config

from app.api.dependencies import get_payment_service
from app.schemas import CreateCardPaymentRequest, CreatePixRequest, CreatePreferenceRequest
from app.services.exceptions import PaymentProviderError
from app.services.mercadopago import verify_webhook_signature
from app.services.payments import PaymentService

logger = structlog.get_logger()
router = APIRouter(tags=["mercadopago"])


# ==========================================
# PAYMENT CREATION
# ==========================================

@router.post("/mercadopago/create-pix")
async def create_pix(
    request: CreatePixRequest,
    service: PaymentService = Depends(get_payment_service),
):
    return await service.create_pix(request)


@router.post("/mercadopago/create-card-payment")
async def create_card_payment(
    request: CreateCardPaymentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    try:
        return await service.charge_card(request)

    except PaymentProviderError as e:
        logger.error(
            "card_payment_failed",
            order_id=request.order_id,
            provider_status=e.provider_status,
            error=e.message
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to process card payment", "details": e.message},
        )


@router.post("/mercadopago/create-preference")
async def create_preference(
    request: CreatePreferenceRequest,
    service: PaymentService = Depends(get_payment_service),
):
    return await service.create_preference(request)


# ==========================================
# STATUS
# ==========================================

@router.get("/mercadopago/payment/{payment_id}")
async def get_payment(payment_id: str, service: PaymentService = Depends(get_payment_service)):
    try:
        return await service.poll_payment(payment_id)

    except PaymentProviderError as e:
        logger.error("payment_fetch_failed", payment_id=payment_id, code=e.code, error=e.message)
        return JSONResponse(
            status_code=500,
            content={
                "error": e.message,
                "code": e.code,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "paymentId": payment_id,
            },
        )


@router.get("/mercadopago/public-key")
async def public_key():
    if not config.mercadopago_public_key:
        raise HTTPException(status_code=500, detail="Mercado Pago public key not configured")
    return {"publicKey": config.mercadopago_public_key}


@router.get("/mercadopago/config")
async def checkout_config():
    return {
        "publicKey": config.mercadopago_public_key,
        "sandbox": config.sandbox,
        "currencyId": config.currency_id,
        "pixExpirationMinutes": config.pix_expiration_minutes,
        "pollInterval": config.payment_poll_interval,
    }


# ==========================================
# WEBHOOK
# ==========================================

@router.post("/mercadopago/webhook")
@router.post("/webhook/mercadopago")
async def mercadopago_webhook(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    """
    Mercado Pago notification.

    Both shapes are accepted:
        POST {"type": "payment", "data": {"id": "123"}}
        POST ?type=payment&data.id=123        (or ?topic=payment&id=123)

    The status is always re-read from Mercado Pago. 200 "OK" tells Mercado
    Pago to stop; 500 makes it retry later.
    """
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    params = request.query_params
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    notification_type = body.get("type") or body.get("topic") or params.get("type") or params.get("topic")
    payment_id = data.get("id") or params.get("data.id") or params.get("id")

    if config.mercadopago_webhook_secret:
        valid = verify_webhook_signature(
            config.mercadopago_webhook_secret,
            request.headers.get("x-signature", ""),
            request.headers.get("x-request-id", ""),
            str(payment_id or ""),
        )
        if not valid:
            logger.warning(
                "invalid_webhook_signature",
                payment_id=payment_id,
                remote_ip=request.client.host if request.client else "unknown"
            )
            raise HTTPException(status_code=403, detail="Invalid signature")

    logger.info("mercadopago_webhook_received", notification_type=notification_type, payment_id=payment_id)

    try:
        await service.handle_notification(notification_type, payment_id)

    except PaymentProviderError as e:
        logger.error("webhook_processing_failed", payment_id=payment_id, error=e.message)
        return PlainTextResponse("Error processing webhook", status_code=500)

    return PlainTextResponse("OK")
