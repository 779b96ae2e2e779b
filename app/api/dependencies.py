# app/api/dependencies.py
"""
FastAPI dependencies shared by the routers.

Long-lived objects (broadcaster, Mercado Pago client) live on app.state
and are created once by create_app(); sessions are per request.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from config.settings import config
from infrastructure.database.base import get_db_session

from app.services.broadcaster import OrderBroadcaster
from app.services.mercadopago import PaymentProvider
from app.services.orders import OrderService
from app.services.payments import PaymentService

logger = structlog.get_logger()


def get_broadcaster(request: Request) -> OrderBroadcaster:
    return request.app.state.broadcaster


def get_payment_provider(request: Request) -> PaymentProvider:
    return request.app.state.payment_provider


def get_order_service(
    session: AsyncSession = Depends(get_db_session),
    broadcaster: OrderBroadcaster = Depends(get_broadcaster),
) -> OrderService:
    return OrderService(session, broadcaster)


def get_payment_service(
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
    broadcaster: OrderBroadcaster = Depends(get_broadcaster),
) -> PaymentService:
    return PaymentService(session, provider, broadcaster)


# ==========================================
# ADMIN TOKEN
# ==========================================

def is_admin_token(token: Optional[str]) -> bool:
    """
    Constant-time comparison with ADMIN_API_TOKEN.
    Without a configured token every caller is admin (development).
    """
    expected = config.admin_api_token
    if not expected:
        return True
    return hmac.compare_digest((token or "").encode(), expected.encode())


async def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    if not is_admin_token(x_admin_token):
        logger.warning(
            "admin_token_rejected",
            path=request.url.path,
            remote_ip=request.client.host if request.client else "unknown"
        )
        raise HTTPException(status_code=401, detail="Unauthorized")
