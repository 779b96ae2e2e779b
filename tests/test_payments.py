# tests/test_payments.py

import hashlib
import hmac
from decimal import Decimal

import pytest

from config.settings import config
from app.services.payments import DEFAULT_REJECTION_MESSAGE, rejection_message

from tests.conftest import RecordingSocket


def pix_body(order, **fields) -> dict:
    body = {
        "orderId": order["id"],
        "amount": order["total"],
        "payer": {"name": "Maria Silva", "email": "maria@example.com", "phone": "11987654321"},
    }
    body.update(fields)
    return body


def card_body(order, **fields) -> dict:
    body = {
        "orderId": order["id"],
        "amount": order["total"],
        "token": "card-token-123",
        "payment_method_id": "visa",
        "issuer_id": 25,
        "installments": 1,
        "payer": {
            "email": "maria@example.com",
            "first_name": "Maria",
            "last_name": "Silva",
            "identification": {"type": "CPF", "number": "123.456.789-09"},
        },
    }
    body.update(fields)
    return body


async def create_pix(client, order) -> dict:
    response = await client.post("/api/mercadopago/create-pix", json=pix_body(order))
    assert response.status_code == 200, response.text
    return response.json()


# ==========================================
# PIX
# ==========================================

async def test_create_pix_keeps_order_pending(client, create_order, provider):
    order = await create_order()

    pix = await create_pix(client, order)

    assert pix["qr_code"] == "00020126..."
    assert pix["qr_code_base64"]
    sent = provider.created[0]
    assert sent["payment_method_id"] == "pix"
    assert sent["transaction_amount"] == Decimal("110.00")
    assert sent["external_reference"] == order["id"]
    assert sent["notification_url"] == "https://delivery.example.com/api/webhook/mercadopago"

    stored = (await client.get(f"/api/orders/{order['id']}")).json()
    assert stored["status"] == "PENDING"
    assert stored["mercadopagoPaymentId"] == str(pix["id"])


async def test_stored_total_is_charged(client, create_order, provider):
    order = await create_order()

    response = await client.post("/api/mercadopago/create-pix", json=pix_body(order, amount="1.00"))

    assert response.status_code == 200
    assert provider.created[0]["transaction_amount"] == Decimal("110.00")


async def test_pix_rejects_non_positive_amount(client, create_order):
    order = await create_order()

    response = await client.post("/api/mercadopago/create-pix", json=pix_body(order, amount="0"))

    assert response.status_code == 400


async def test_pix_falls_back_to_preference(client, create_order, provider):
    order = await create_order()
    provider.fail_create = True

    pix = await create_pix(client, order)

    assert pix == {
        "id": "pref-1",
        "status": "pending",
        "init_point": "https://mp.example/checkout/pref-1",
        "fallback_to_preference": True,
    }
    preference = provider.preferences[0]
    excluded = {item["id"] for item in preference["payment_methods"]["excluded_payment_types"]}
    assert excluded == {"credit_card", "debit_card", "ticket"}
    assert preference["payment_methods"]["installments"] == 1
    assert preference["external_reference"] == order["id"]


# ==========================================
# RECONCILIATION CHANNELS
# ==========================================

async def test_poll_confirms_order(client, create_order, provider, admin_socket):
    order = await create_order()
    pix = await create_pix(client, order)
    provider.set_status(pix["id"], "approved", "accredited")

    response = await client.get(f"/api/mercadopago/payment/{pix['id']}")

    assert response.status_code == 200
    assert response.json()["status"] == "approved"
    assert response.json()["order_status"] == "CONFIRMED"

    stored = (await client.get(f"/api/orders/{order['id']}")).json()
    assert stored["status"] == "CONFIRMED"
    assert stored["paymentStatus"] == "approved"
    assert stored["confirmedAt"] is not None
    assert admin_socket.types() == ["NEW_ORDER", "ORDER_STATUS_UPDATE"]


async def test_webhook_after_poll_keeps_confirmed(client, create_order, provider, broadcaster):
    order = await create_order()
    pix = await create_pix(client, order)
    payment_socket = RecordingSocket()
    broadcaster.subscribe(payment_socket, f"payment:{pix['id']}")
    provider.set_status(pix["id"], "approved")

    await client.get(f"/api/mercadopago/payment/{pix['id']}")
    response = await client.post(
        "/api/mercadopago/webhook",
        json={"type": "payment", "data": {"id": str(pix["id"])}},
    )

    assert response.status_code == 200
    assert response.text == "OK"
    stored = (await client.get(f"/api/orders/{order['id']}")).json()
    assert stored["status"] == "CONFIRMED"
    # Only the first channel broadcasts
    assert payment_socket.types() == ["PAYMENT_STATUS_UPDATE"]
    assert payment_socket.messages[0]["channel"] == "poll"


async def test_stale_rejection_is_ignored(client, create_order, provider):
    order = await create_order()
    pix = await create_pix(client, order)
    provider.set_status(pix["id"], "approved")
    await client.post("/api/webhook/mercadopago", json={"type": "payment", "data": {"id": pix["id"]}})

    provider.set_status(pix["id"], "rejected")
    await client.post(
        "/api/webhook/mercadopago",
        params={"topic": "payment", "id": str(pix["id"])},
    )

    stored = (await client.get(f"/api/orders/{order['id']}")).json()
    assert stored["status"] == "CONFIRMED"
    assert stored["paymentStatus"] == "approved"


async def test_rejected_pix_cancels(client, create_order, provider):
    order = await create_order()
    pix = await create_pix(client, order)
    provider.set_status(pix["id"], "cancelled")

    await client.post(
        "/api/mercadopago/webhook",
        params={"type": "payment", "data.id": str(pix["id"])},
    )

    stored = (await client.get(f"/api/orders/{order['id']}")).json()
    assert stored["status"] == "CANCELLED"
    assert stored["cancelledAt"] is not None


async def test_webhook_ignores_other_topics(client, provider):
    response = await client.post("/api/mercadopago/webhook", json={"type": "merchant_order", "data": {"id": "1"}})
    assert response.status_code == 200

    response = await client.post("/api/mercadopago/webhook", content=b"not json")
    assert response.status_code == 200


async def test_webhook_provider_failure_is_500(client, create_order, provider):
    order = await create_order()
    pix = await create_pix(client, order)
    provider.fail_get = True

    response = await client.post("/api/mercadopago/webhook", json={"type": "payment", "data": {"id": pix["id"]}})

    assert response.status_code == 500


async def test_webhook_signature(client, create_order, provider, monkeypatch):
    monkeypatch.setattr(config, "mercadopago_webhook_secret", "whsec")
    order = await create_order()
    pix = await create_pix(client, order)
    provider.set_status(pix["id"], "approved")
    body = {"type": "payment", "data": {"id": str(pix["id"])}}

    response = await client.post(
        "/api/mercadopago/webhook",
        json=body,
        headers={"x-signature": "ts=1,v1=deadbeef", "x-request-id": "req-1"},
    )
    assert response.status_code == 403

    manifest = f"id:{pix['id']};request-id:req-1;ts:1704908010;"
    digest = hmac.new(b"whsec", manifest.encode(), hashlib.sha256).hexdigest()
    response = await client.post(
        "/api/mercadopago/webhook",
        json=body,
        headers={"x-signature": f"ts=1704908010,v1={digest}", "x-request-id": "req-1"},
    )
    assert response.status_code == 200
    stored = (await client.get(f"/api/orders/{order['id']}")).json()
    assert stored["status"] == "CONFIRMED"


async def test_payment_poll_error_body(client, provider):
    response = await client.get("/api/mercadopago/payment/999")

    assert response.status_code == 500
    body = response.json()
    assert body["code"] == "PAYMENT_NOT_FOUND"
    assert body["paymentId"] == "999"
    assert "timestamp" in body


# ==========================================
# "JÁ PAGUEI"
# ==========================================

async def test_check_payment_messages(client, create_order, provider):
    order = await create_order()
    pix = await create_pix(client, order)

    response = await client.post(f"/api/orders/{order['id']}/check-payment")
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Pagamento ainda está pendente. Aguarde alguns minutos e tente novamente."
    assert body["order"]["status"] == "PENDING"

    provider.set_status(pix["id"], "approved")
    body = (await client.post(f"/api/orders/{order['id']}/check-payment")).json()
    assert body["success"] is True
    assert body["message"] == "Pagamento confirmado! Seu pedido está sendo preparado."
    assert body["order"]["status"] == "CONFIRMED"
    assert body["paymentStatus"]["status"] == "approved"


async def test_check_payment_errors(client, create_order):
    response = await client.post("/api/orders/missing/check-payment")
    assert response.status_code == 404

    order = await create_order()
    response = await client.post(f"/api/orders/{order['id']}/check-payment")
    assert response.status_code == 400
    assert response.json() == {"error": "No payment ID found for this order"}


# ==========================================
# CARD
# ==========================================

async def test_card_approved_confirms(client, create_order, provider):
    order = await create_order(paymentMethod="credit_card")
    provider.next_status, provider.next_status_detail = "approved", "accredited"

    response = await client.post("/api/mercadopago/create-card-payment", json=card_body(order))

    body = response.json()
    assert response.status_code == 200
    assert body["status"] == "approved"
    assert body["order_status"] == "CONFIRMED"
    sent = provider.created[0]
    assert sent["issuer_id"] == 25
    assert sent["payer"]["identification"]["number"] == "12345678909"


async def test_card_insufficient_amount_cancels(client, create_order, provider):
    order = await create_order(paymentMethod="CARD")
    provider.next_status = "rejected"
    provider.next_status_detail = "cc_rejected_insufficient_amount"

    body = (await client.post("/api/mercadopago/create-card-payment", json=card_body(order))).json()

    assert body["status"] == "rejected"
    assert body["message"] == "Cartão sem saldo suficiente"
    stored = (await client.get(f"/api/orders/{order['id']}")).json()
    assert stored["status"] == "CANCELLED"
    assert stored["paymentStatus"] == "rejected"


async def test_card_in_process_waits_for_webhook(client, create_order, provider):
    order = await create_order(paymentMethod="CARD")
    provider.next_status, provider.next_status_detail = "in_process", "pending_contingency"

    body = (await client.post("/api/mercadopago/create-card-payment", json=card_body(order))).json()

    assert body["order_status"] == "PENDING"
    stored = (await client.get(f"/api/orders/{order['id']}")).json()
    assert stored["mercadopagoPaymentId"] == str(body["id"])


@pytest.mark.parametrize("field, value, message", [
    ("orderId", None, "Order ID é obrigatório"),
    ("amount", "0", "Valor deve ser maior que zero"),
    ("token", "", "Token do cartão é obrigatório"),
    ("payer", {"first_name": "Maria", "identification": {"number": "1"}}, "Email do pagador é obrigatório"),
    ("payer", {"email": "m@example.com", "identification": {"number": "1"}}, "Nome do pagador é obrigatório"),
    ("payer", {"email": "m@example.com", "first_name": "Maria"}, "CPF/CNPJ é obrigatório"),
])
async def test_card_validation_messages(client, create_order, field, value, message):
    order = await create_order(paymentMethod="CARD")

    response = await client.post(
        "/api/mercadopago/create-card-payment",
        json=card_body(order, **{field: value}),
    )

    assert response.status_code == 400
    assert response.json() == {"error": message}


async def test_card_provider_error(client, create_order, provider):
    order = await create_order(paymentMethod="CARD")
    provider.fail_create = True

    response = await client.post("/api/mercadopago/create-card-payment", json=card_body(order))

    assert response.status_code == 500
    assert response.json() == {
        "error": "Failed to process card payment",
        "details": "invalid payment_method_id",
    }


def test_rejection_messages():
    assert rejection_message("cc_rejected_bad_filled_security_code") == "Código de segurança incorreto"
    assert rejection_message("cc_rejected_something_new") == DEFAULT_REJECTION_MESSAGE
    assert rejection_message(None) == DEFAULT_REJECTION_MESSAGE


async def test_public_key_and_config(client, monkeypatch):
    monkeypatch.setattr(config, "mercadopago_public_key", "TEST-pk")

    assert (await client.get("/api/mercadopago/public-key")).json() == {"publicKey": "TEST-pk"}
    body = (await client.get("/api/mercadopago/config")).json()
    assert body["publicKey"] == "TEST-pk"
    assert body["currencyId"] == "BRL"
