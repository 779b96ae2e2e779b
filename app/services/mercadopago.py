# app/services/mercadopago.py
"""
💳 MERCADO PAGO CLIENT

Thin async client for the three Mercado Pago calls the checkout needs:
- POST /v1/payments              (PIX and card payments)
- GET  /v1/payments/{id}         (status polling, webhooks)
- POST /checkout/preferences     (hosted checkout, PIX fallback)

Every failure (HTTP error, timeout, connection) becomes
PaymentProviderError, so callers handle one exception type.
"""

import hashlib
import hmac
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import aiohttp
import structlog

from config.settings import config
from app.services.exceptions import PaymentProviderError

logger = structlog.get_logger()


class PaymentProvider(Protocol):
    """What the payment service needs from a provider (faked in tests)."""

    async def create_payment(self, body: Dict[str, Any]) -> Dict[str, Any]: ...

    async def get_payment(self, payment_id: str) -> Dict[str, Any]: ...

    async def create_preference(self, body: Dict[str, Any]) -> Dict[str, Any]: ...


def _json_amount(value) -> float:
    # Mercado Pago expects a JSON number for transaction_amount
    return float(Decimal(str(value)))


# ==========================================
# CLIENT
# ==========================================

class MercadoPagoClient:
    """
    aiohttp based Mercado Pago client.

    Example:
        client = MercadoPagoClient(access_token="APP_USR-...")
        payment = await client.get_payment("123456789")
        payment["status"]  # "approved"
        await client.close()
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.access_token = access_token if access_token is not None else config.mercadopago_access_token
        self.base_url = (base_url or config.mercadopago_api_url).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout or config.mercadopago_timeout)
        self._session: Optional[aiohttp.ClientSession] = None

        if not self.access_token:
            logger.warning("mercadopago_token_missing", message="MERCADOPAGO_ACCESS_TOKEN is not set")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        idempotent: bool = False,
    ) -> Dict[str, Any]:
        headers = {}
        if idempotent:
            headers["X-Idempotency-Key"] = str(uuid.uuid4())

        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(method, url, json=json, headers=headers) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = {"message": await response.text()}

                if response.status >= 400:
                    message = (payload or {}).get("message") or f"HTTP {response.status}"
                    logger.error(
                        "mercadopago_http_error",
                        method=method,
                        path=path,
                        status=response.status,
                        error=message
                    )
                    raise PaymentProviderError(message, provider_status=response.status, payload=payload)

                return payload or {}

        except aiohttp.ClientError as e:
            logger.error("mercadopago_connection_error", method=method, path=path, error=str(e))
            raise PaymentProviderError(f"Connection error: {e}") from e

        except TimeoutError as e:
            logger.error("mercadopago_timeout", method=method, path=path)
            raise PaymentProviderError("Request timeout") from e

    # ==========================================
    # API
    # ==========================================

    async def create_payment(self, body: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(body)
        if "transaction_amount" in body:
            body["transaction_amount"] = _json_amount(body["transaction_amount"])
        return await self._request("POST", "/v1/payments", json=body, idempotent=True)

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/payments/{payment_id}")

    async def create_preference(self, body: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(body)
        body["items"] = [
            {**item, "unit_price": _json_amount(item["unit_price"])}
            for item in body.get("items", [])
        ]
        return await self._request("POST", "/checkout/preferences", json=body, idempotent=True)


# ==========================================
# WEBHOOK SIGNATURE
# ==========================================

def verify_webhook_signature(
    secret: str,
    signature_header: str,
    request_id: str,
    data_id: str,
) -> bool:
    """
    Check the x-signature header of a Mercado Pago notification.

    Header:   x-signature: ts=1704908010,v1=618c8534...
    Manifest: id:<data.id>;request-id:<x-request-id>;ts:<ts>;
    v1 = HMAC-SHA256(secret, manifest), compared in constant time.
    """
    parts = {}
    for chunk in (signature_header or "").split(","):
        key, _, value = chunk.strip().partition("=")
        if key:
            parts[key] = value

    ts = parts.get("ts")
    received = parts.get("v1")
    if not ts or not received:
        return False

    manifest = ""
    if data_id:
        manifest += f"id:{str(data_id).lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"

    expected = hmac.new(
        key=secret.encode(),
        msg=manifest.encode(),
        digestmod=hashlib.sha256
    ).hexdigest()

    return hmac.compare_digest(received, expected)
