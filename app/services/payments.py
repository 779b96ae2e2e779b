# app/services/payments.py
"""
Payment service.

Business logic of the payment screens:
- PIX: create the QR code (or fall back to the hosted checkout)
- Card: charge a tokenized card synchronously
- Status: poll / manual check / webhook, all reconciled the same way

The stored order total is the amount charged; the amount sent by the
storefront is only compared.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from config.settings import config
from infrastructure.database.models import Order, OrderStatus, PaymentStatus
from infrastructure.database.repositories import OrderRepository

from app.schemas import (
    CreateCardPaymentRequest,
    CreatePixRequest,
    CreatePreferenceRequest,
    OrderOut,
    only_digits,
)
from app.services.broadcaster import OrderBroadcaster
from app.services.exceptions import OrderNotFoundError, OrderValidationError, PaymentProviderError
from app.services.mercadopago import PaymentProvider
from app.services.money import ZERO, money
from app.services.reconciler import (
    PaymentReconciler,
    ReconcileChannel,
    ReconcileResult,
    normalize_payment_status,
)

logger = structlog.get_logger()


# ==========================================
# CARD REJECTION MESSAGES
# ==========================================

CARD_REJECTION_MESSAGES = {
    "cc_rejected_insufficient_amount": "Cartão sem saldo suficiente",
    "cc_rejected_bad_filled_card_number": "Número do cartão incorreto",
    "cc_rejected_bad_filled_date": "Data de vencimento incorreta",
    "cc_rejected_bad_filled_security_code": "Código de segurança incorreto",
    "cc_rejected_bad_filled_other": "Dados do cartão incorretos",
    "cc_rejected_blacklist": "Cartão não autorizado",
    "cc_rejected_call_for_authorize": "Autorize o pagamento com o banco",
    "cc_rejected_card_disabled": "Cartão desabilitado",
    "cc_rejected_duplicated_payment": "Pagamento duplicado",
    "cc_rejected_high_risk": "Pagamento recusado por risco",
    "cc_rejected_max_attempts": "Máximo de tentativas excedido",
    "cc_rejected_other_reason": "Pagamento recusado pelo banco",
}

DEFAULT_REJECTION_MESSAGE = "Pagamento recusado. Verifique os dados ou tente outro cartão."


def rejection_message(status_detail: Optional[str]) -> str:
    """
    Example:
        rejection_message("cc_rejected_insufficient_amount")  → "Cartão sem saldo suficiente"
        rejection_message("something_new")                   → DEFAULT_REJECTION_MESSAGE
    """
    return CARD_REJECTION_MESSAGES.get(status_detail or "", DEFAULT_REJECTION_MESSAGE)


# Answers of the "Já paguei" button
CHECK_MESSAGES = {
    PaymentStatus.APPROVED: "Pagamento confirmado! Seu pedido está sendo preparado.",
    PaymentStatus.PENDING: "Pagamento ainda está pendente. Aguarde alguns minutos e tente novamente.",
    PaymentStatus.REJECTED: "Pagamento não foi aprovado. Verifique os dados e tente novamente.",
}


def _split_name(name: str):
    parts = (name or "").split()
    first = parts[0] if parts else "Cliente"
    last = " ".join(parts[1:]) or "Cliente"
    return first, last


def _expiration(minutes: int) -> str:
    moment = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return moment.isoformat(timespec="milliseconds")


def payment_summary(payment: Dict[str, Any]) -> Dict[str, Any]:
    """The subset of a Mercado Pago payment the storefront uses."""
    return {
        "id": payment.get("id"),
        "status": payment.get("status"),
        "status_detail": payment.get("status_detail"),
        "transaction_amount": payment.get("transaction_amount"),
        "currency_id": payment.get("currency_id"),
        "date_created": payment.get("date_created"),
        "date_approved": payment.get("date_approved"),
        "date_last_updated": payment.get("date_last_updated"),
        "external_reference": payment.get("external_reference"),
        "payment_method_id": payment.get("payment_method_id"),
        "payment_type_id": payment.get("payment_type_id"),
    }


class PaymentService:
    """PIX, card and status operations for one request."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        broadcaster: OrderBroadcaster,
    ):
        self.session = session
        self.provider = provider
        self.orders = OrderRepository(session)
        self.reconciler = PaymentReconciler(session, broadcaster)

    async def _payable_order(self, order_id: str, claimed_amount=None) -> Order:
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError()

        if order.status != OrderStatus.PENDING or order.payment_status != PaymentStatus.PENDING:
            raise OrderValidationError("Este pedido não está aguardando pagamento")

        if money(order.total) <= ZERO:
            raise OrderValidationError("Invalid payment amount")

        if claimed_amount is not None and money(claimed_amount) != money(order.total):
            logger.warning(
                "payment_amount_mismatch",
                order_id=order.id,
                claimed=str(claimed_amount),
                charged=str(order.total)
            )

        return order

    # ==========================================
    # PIX
    # ==========================================

    async def create_pix(self, request: CreatePixRequest) -> Dict[str, Any]:
        """
        Create a PIX payment for an order.

        Success → {id, status, qr_code, qr_code_base64, ticket_url}
        Fallback → {id, status: "pending", init_point, fallback_to_preference: True}
        The fallback is final for the storefront: it redirects and stops polling.
        """
        if request.amount is not None and request.amount <= 0:
            raise OrderValidationError("Invalid payment amount")

        order = await self._payable_order(request.order_id, request.amount)
        amount = money(order.total)
        description = request.description or f"Pedido #{order.order_number}"
        first_name, last_name = _split_name(request.payer.name)

        body = {
            "transaction_amount": amount,
            "description": description,
            "payment_method_id": "pix",
            "payer": {
                "email": request.payer.email,
                "first_name": first_name,
                "last_name": last_name,
            },
            "external_reference": order.id,
            "date_of_expiration": _expiration(config.pix_expiration_minutes),
        }
        if config.public_base_url:
            body["notification_url"] = config.webhook_url

        try:
            result = await self.provider.create_payment(body)

        except PaymentProviderError as e:
            logger.warning("pix_direct_failed_trying_preference", order_id=order.id, error=e.message)
            return await self._pix_preference_fallback(order, request, amount, description)

        payment_id = str(result.get("id"))
        await self.orders.set_payment_reference(order.id, payment_id)
        await self.session.commit()

        transaction_data = (result.get("point_of_interaction") or {}).get("transaction_data") or {}
        logger.info("pix_payment_created", order_id=order.id, payment_id=payment_id, amount=str(amount))

        if normalize_payment_status(result.get("status")) in (PaymentStatus.APPROVED, PaymentStatus.REJECTED):
            await self.reconciler.apply(order.id, result.get("status"), ReconcileChannel.POLL, payment_id=payment_id)

        return {
            "id": result.get("id"),
            "status": result.get("status"),
            "qr_code": transaction_data.get("qr_code"),
            "qr_code_base64": transaction_data.get("qr_code_base64"),
            "ticket_url": transaction_data.get("ticket_url"),
            "expires_in": config.pix_expiration_minutes * 60,
        }

    async def _pix_preference_fallback(
        self,
        order: Order,
        request: CreatePixRequest,
        amount,
        description: str,
    ) -> Dict[str, Any]:
        phone = only_digits(request.payer.phone or order.customer_phone)
        body = {
            "items": [{
                "id": order.id,
                "title": description,
                "quantity": 1,
                "unit_price": amount,
                "currency_id": config.currency_id,
            }],
            "payer": {
                "name": request.payer.name,
                "email": request.payer.email,
                "phone": {"area_code": phone[:2], "number": phone[2:]},
            },
            "payment_methods": {
                "excluded_payment_types": [
                    {"id": "credit_card"},
                    {"id": "debit_card"},
                    {"id": "ticket"},
                ],
                "installments": 1,
            },
            **self._preference_common(order.id),
        }

        try:
            preference = await self.provider.create_preference(body)
        except PaymentProviderError as e:
            logger.error("pix_preference_fallback_failed", order_id=order.id, error=e.message)
            raise PaymentProviderError("Failed to create PIX payment", e.provider_status, e.payload) from e

        logger.info("pix_fallback_preference_created", order_id=order.id, preference_id=preference.get("id"))
        return {
            "id": preference.get("id"),
            "status": "pending",
            "init_point": preference.get("init_point"),
            "fallback_to_preference": True,
        }

    def _preference_common(self, order_id: str) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        return {
            "back_urls": {
                "success": f"{config.base_url}/payment/success",
                "failure": f"{config.base_url}/payment/failure",
                "pending": f"{config.base_url}/payment/pending",
            },
            "auto_return": "approved",
            "external_reference": order_id,
            "notification_url": config.webhook_url,
            "statement_descriptor": config.mercadopago_statement_descriptor,
            "expires": True,
            "expiration_date_from": now.isoformat(timespec="milliseconds"),
            "expiration_date_to": (now + timedelta(minutes=config.pix_expiration_minutes)).isoformat(timespec="milliseconds"),
        }

    # ==========================================
    # HOSTED CHECKOUT (preference)
    # ==========================================

    async def create_preference(self, request: CreatePreferenceRequest) -> Dict[str, Any]:
        order = await self._payable_order(request.order_id)
        body = {
            "items": [
                {
                    "id": f"item_{index}",
                    "title": item.title,
                    "quantity": item.quantity,
                    "unit_price": money(item.unit_price),
                    "currency_id": config.currency_id,
                }
                for index, item in enumerate(request.items)
            ],
            **self._preference_common(order.id),
        }
        if request.payer:
            body["payer"] = request.payer

        preference = await self.provider.create_preference(body)
        logger.info("preference_created", order_id=order.id, preference_id=preference.get("id"))
        return {"preferenceId": preference.get("id"), "initPoint": preference.get("init_point")}

    # ==========================================
    # CARD
    # ==========================================

    async def charge_card(self, request: CreateCardPaymentRequest) -> Dict[str, Any]:
        """
        Charge a tokenized card and settle the order right away.

        approved → order CONFIRMED
        rejected → order CANCELLED, with a readable message
        in_process/pending → order untouched, webhook/poll settle it later
        """
        payer = request.payer
        identification = payer.identification if payer else None

        if not request.order_id:
            raise OrderValidationError("Order ID é obrigatório")
        if request.amount is None or request.amount <= 0:
            raise OrderValidationError("Valor deve ser maior que zero")
        if not request.token:
            raise OrderValidationError("Token do cartão é obrigatório")
        if not payer or not payer.email:
            raise OrderValidationError("Email do pagador é obrigatório")
        if not payer.first_name:
            raise OrderValidationError("Nome do pagador é obrigatório")
        if not identification or not identification.number:
            raise OrderValidationError("CPF/CNPJ é obrigatório")

        order = await self._payable_order(request.order_id, request.amount)

        body = {
            "transaction_amount": money(order.total),
            "token": request.token,
            "description": request.description or f"Pedido #{order.order_number}",
            "installments": request.installments or 1,
            "payment_method_id": request.payment_method_id,
            "payer": {
                "email": payer.email,
                "first_name": payer.first_name,
                "last_name": payer.last_name or "",
                "identification": {
                    "type": identification.type or "CPF",
                    "number": only_digits(identification.number),
                },
            },
            "external_reference": order.id,
            "metadata": {"order_id": order.id},
        }
        if request.issuer_id and request.issuer_id.isdigit():
            body["issuer_id"] = int(request.issuer_id)

        result = await self.provider.create_payment(body)

        payment_id = str(result.get("id")) if result.get("id") is not None else None
        status = normalize_payment_status(result.get("status"))
        status_detail = result.get("status_detail")

        if status in (PaymentStatus.APPROVED, PaymentStatus.REJECTED):
            reconciled = await self.reconciler.apply(
                order.id, status, ReconcileChannel.CARD, payment_id=payment_id
            )
            order_status = reconciled.order.status
        else:
            if payment_id:
                await self.orders.set_payment_reference(order.id, payment_id)
                await self.session.commit()
            order_status = order.status

        if status is PaymentStatus.APPROVED:
            message = "Pagamento aprovado!"
        elif status is PaymentStatus.REJECTED:
            message = rejection_message(status_detail)
        else:
            message = "Pagamento em análise. Você será avisado quando for aprovado."

        logger.info(
            "card_payment_processed",
            order_id=order.id,
            payment_id=payment_id,
            status=result.get("status"),
            status_detail=status_detail
        )

        return {
            "id": result.get("id"),
            "status": result.get("status"),
            "status_detail": status_detail,
            "transaction_amount": result.get("transaction_amount"),
            "payment_method_id": result.get("payment_method_id"),
            "external_reference": result.get("external_reference", order.id),
            "order_status": order_status.value,
            "message": message,
        }

    # ==========================================
    # STATUS CHANNELS
    # ==========================================

    async def poll_payment(self, payment_id: str) -> Dict[str, Any]:
        """
        Status for the polling PIX screen. A terminal status found here
        settles the order like a webhook would.
        """
        payment = await self.provider.get_payment(payment_id)
        result = await self.reconciler.apply_provider_payment(payment, ReconcileChannel.POLL)

        response = payment_summary(payment)
        response["last_check"] = datetime.now(timezone.utc).isoformat()
        if result is not None:
            response["order_status"] = result.order.status.value
        return response

    async def check_order_payment(self, order_id: str) -> Dict[str, Any]:
        """The "Já paguei" button: ask the provider now and settle the order."""
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError()
        if not order.mercadopago_payment_id:
            raise OrderValidationError("No payment ID found for this order")

        payment = await self.provider.get_payment(order.mercadopago_payment_id)
        result = await self.reconciler.apply(
            order.id,
            payment.get("status"),
            ReconcileChannel.MANUAL,
            payment_id=order.mercadopago_payment_id,
        )

        status = result.payment_status or PaymentStatus.REJECTED
        return {
            "success": status is PaymentStatus.APPROVED,
            "message": CHECK_MESSAGES[status],
            "order": OrderOut.model_validate(result.order).to_json(),
            "paymentStatus": payment_summary(payment),
        }

    async def handle_notification(
        self,
        notification_type: Optional[str],
        payment_id: Optional[str],
    ) -> Optional[ReconcileResult]:
        """
        Webhook: re-read the payment from Mercado Pago (the notification
        body is not trusted) and reconcile.
        """
        if notification_type != "payment" or not payment_id:
            logger.info("webhook_ignored", notification_type=notification_type, payment_id=payment_id)
            return None

        payment = await self.provider.get_payment(str(payment_id))
        return await self.reconciler.apply_provider_payment(payment, ReconcileChannel.WEBHOOK)
