# tests/test_mercadopago.py

import hashlib
import hmac

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from app.services.exceptions import PaymentProviderError
from app.services.mercadopago import MercadoPagoClient, verify_webhook_signature


# ==========================================
# WEBHOOK SIGNATURE
# ==========================================

def sign(secret, data_id, request_id, ts):
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    return hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


def test_valid_signature():
    digest = sign("secret", "123", "req-9", "1704908010")
    assert verify_webhook_signature("secret", f"ts=1704908010,v1={digest}", "req-9", "123")


@pytest.mark.parametrize("header", ["", "ts=1704908010", "v1=abc", "ts=1704908010,v1=abc"])
def test_invalid_signature(header):
    assert not verify_webhook_signature("secret", header, "req-9", "123")


def test_signature_bound_to_payment_id():
    digest = sign("secret", "123", "req-9", "1")
    assert not verify_webhook_signature("secret", f"ts=1,v1={digest}", "req-9", "124")


@pytest.mark.parametrize("status, message, code", [
    (404, "not found", "PAYMENT_NOT_FOUND"),
    (401, "unauthorized", "AUTH_ERROR"),
    (None, "Request timeout", "TIMEOUT_ERROR"),
    (500, "boom", "PAYMENT_FETCH_ERROR"),
])
def test_provider_error_codes(status, message, code):
    assert PaymentProviderError(message, provider_status=status).code == code


# ==========================================
# HTTP CLIENT
# ==========================================

@pytest_asyncio.fixture
async def mp_server():
    received = {}

    async def create_payment(request):
        received["auth"] = request.headers.get("Authorization")
        received["idempotency"] = request.headers.get("X-Idempotency-Key")
        received["body"] = await request.json()
        return web.json_response({"id": 77, "status": "pending"}, status=201)

    async def get_payment(request):
        if request.match_info["payment_id"] == "404":
            return web.json_response({"message": "Payment not found"}, status=404)
        return web.json_response({"id": int(request.match_info["payment_id"]), "status": "approved"})

    app = web.Application()
    app.router.add_post("/v1/payments", create_payment)
    app.router.add_get("/v1/payments/{payment_id}", get_payment)

    server = TestServer(app)
    await server.start_server()
    client = MercadoPagoClient(access_token="TEST-token", base_url=str(server.make_url("")))
    yield client, received
    await client.close()
    await server.close()


async def test_client_sends_token_and_idempotency_key(mp_server):
    client, received = mp_server

    payment = await client.create_payment({"transaction_amount": "110.00", "payment_method_id": "pix"})

    assert payment == {"id": 77, "status": "pending"}
    assert received["auth"] == "Bearer TEST-token"
    assert received["idempotency"]
    assert received["body"]["transaction_amount"] == 110.0


async def test_client_maps_http_errors(mp_server):
    client, _ = mp_server

    assert (await client.get_payment("5"))["status"] == "approved"

    with pytest.raises(PaymentProviderError) as exc:
        await client.get_payment("404")
    assert exc.value.provider_status == 404
    assert exc.value.message == "Payment not found"


async def test_client_connection_error():
    client = MercadoPagoClient(access_token="x", base_url="http://127.0.0.1:9", timeout=1)
    try:
        with pytest.raises(PaymentProviderError):
            await client.get_payment("1")
    finally:
        await client.close()
