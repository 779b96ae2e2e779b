# app/services/reconciler.py
"""
🔁 PAYMENT STATUS RECONCILER

A PIX payment's final status can reach us through several channels:
- poll     → the PIX screen asks GET /api/mercadopago/payment/{id} every 2 s
- webhook  → Mercado Pago calls POST /api/webhook/mercadopago
- manual   → the customer taps "Já paguei" (POST /api/orders/{id}/check-payment)
- card     → the synchronous card charge

They arrive in any order, sometimes twice. All of them end up here, and
here the order changes state exactly once:

    payment approved  → order CONFIRMED
    payment rejected  → order CANCELLED

The write is conditional (WHERE status = 'PENDING' AND payment_status = 'pending'),
so the first terminal status wins and every later notification is a no-op,
including a stale "rejected" arriving after an "approved".
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from infrastructure.database.models import Order, OrderStatus, PaymentStatus
from infrastructure.database.repositories import OrderRepository

from app.services.broadcaster import ADMIN_TOPIC, OrderBroadcaster, order_topic, payment_topic
from app.services.exceptions import OrderNotFoundError

logger = structlog.get_logger()


class ReconcileChannel(str, Enum):
    POLL = "poll"
    WEBHOOK = "webhook"
    MANUAL = "manual"
    CARD = "card"


# Mercado Pago status → our payment status
PROVIDER_STATUS_MAP = {
    "approved": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.REJECTED,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.PENDING,
    "authorized": PaymentStatus.PENDING,
    "in_mediation": PaymentStatus.PENDING,
}

# Payment status → order status it drives
ORDER_STATUS_FOR_PAYMENT = {
    PaymentStatus.APPROVED: OrderStatus.CONFIRMED,
    PaymentStatus.REJECTED: OrderStatus.CANCELLED,
}


def normalize_payment_status(raw) -> Optional[PaymentStatus]:
    """
    Example:
        normalize_payment_status("in_process")  → PaymentStatus.PENDING
        normalize_payment_status("cancelled")   → PaymentStatus.REJECTED
        normalize_payment_status("refunded")    → None (not handled here)
    """
    if isinstance(raw, PaymentStatus):
        return raw
    return PROVIDER_STATUS_MAP.get(str(raw or "").strip().lower())


@dataclass
class ReconcileResult:
    order: Order
    payment_status: Optional[PaymentStatus]
    applied: bool
    # True only for the call that actually moved the order


class PaymentReconciler:
    """
    Single entry point for payment status changes.

    Example:
        reconciler = PaymentReconciler(session, broadcaster)
        result = await reconciler.apply(order.id, "approved", ReconcileChannel.WEBHOOK, payment_id="123")
        result.applied        # True the first time, False for duplicates
        result.order.status   # OrderStatus.CONFIRMED
    """

    def __init__(self, session: AsyncSession, broadcaster: OrderBroadcaster):
        self.session = session
        self.broadcaster = broadcaster
        self.orders = OrderRepository(session)

    async def apply(
        self,
        order_id: str,
        provider_status,
        channel: ReconcileChannel,
        payment_id: Optional[str] = None,
    ) -> ReconcileResult:
        status = normalize_payment_status(provider_status)

        if status is None or not status.is_terminal:
            order = await self.orders.get_by_id(order_id)
            if order is None:
                raise OrderNotFoundError()
            logger.info(
                "payment_status_not_terminal",
                order_id=order_id,
                payment_id=payment_id,
                provider_status=str(provider_status),
                channel=channel.value
            )
            return ReconcileResult(order=order, payment_status=status, applied=False)

        target = ORDER_STATUS_FOR_PAYMENT[status]
        applied = await self.orders.apply_payment_status(
            order_id,
            payment_status=status,
            order_status=target,
            payment_id=payment_id,
        )
        await self.session.commit()

        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError()

        if applied:
            logger.info(
                "payment_status_applied",
                order_id=order_id,
                payment_id=payment_id or order.mercadopago_payment_id,
                payment_status=status.value,
                order_status=target.value,
                channel=channel.value
            )
            await self._broadcast(order, status, channel, payment_id)

        elif order.payment_status != status:
            # Stale notification that disagrees with what already happened
            logger.warning(
                "payment_status_conflict_ignored",
                order_id=order_id,
                payment_id=payment_id,
                incoming=status.value,
                current_payment_status=order.payment_status.value,
                current_order_status=order.status.value,
                channel=channel.value
            )

        else:
            logger.info(
                "payment_status_duplicate",
                order_id=order_id,
                payment_status=status.value,
                channel=channel.value
            )

        return ReconcileResult(order=order, payment_status=status, applied=applied)

    async def apply_provider_payment(
        self,
        payment: Dict[str, Any],
        channel: ReconcileChannel,
    ) -> Optional[ReconcileResult]:
        """
        Reconcile from a Mercado Pago payment object.

        The order is found by external_reference (our order id), or by the
        stored payment id. Returns None when no order matches.
        """
        payment_id = str(payment.get("id")) if payment.get("id") is not None else None
        order_id = payment.get("external_reference")

        order = await self.orders.get_by_id(order_id) if order_id else None
        if order is None and payment_id:
            order = await self.orders.get_by_payment_id(payment_id)

        if order is None:
            logger.warning(
                "payment_without_order",
                payment_id=payment_id,
                external_reference=order_id,
                channel=channel.value
            )
            return None

        return await self.apply(order.id, payment.get("status"), channel, payment_id=payment_id)

    async def _broadcast(
        self,
        order: Order,
        status: PaymentStatus,
        channel: ReconcileChannel,
        payment_id: Optional[str],
    ) -> None:
        payment_id = payment_id or order.mercadopago_payment_id

        await self.broadcaster.publish(
            [ADMIN_TOPIC, order_topic(order.id)],
            {
                "type": "ORDER_STATUS_UPDATE",
                "orderId": order.id,
                "orderNumber": order.order_number,
                "status": order.status.value,
                "paymentStatus": order.payment_status.value,
            },
        )

        topics = [order_topic(order.id)]
        if payment_id:
            topics.append(payment_topic(payment_id))
        await self.broadcaster.publish(
            topics,
            {
                "type": "PAYMENT_STATUS_UPDATE",
                "paymentId": payment_id,
                "orderId": order.id,
                "status": status.value,
                "channel": channel.value,
            },
        )
