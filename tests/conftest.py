# tests/conftest.py

from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.settings import config
from infrastructure.database.base import Base, enable_sqlite_savepoints, get_db_session
from infrastructure.database.models import (
    Coupon,
    CouponType,
    Establishment,
    Product,
    utcnow,
)

from app.api.app import create_app
from app.services.broadcaster import OrderBroadcaster
from app.services.exceptions import PaymentProviderError


# ==========================================
# DATABASE
# ==========================================

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def seed(session_maker) -> Dict[str, Any]:
    """One restaurant, three products, a set of coupons."""
    now = utcnow()
    async with session_maker() as session:
        establishment = Establishment(
            name="Cantina Teste",
            phone="11999990000",
            address="Rua das Flores, 1",
            delivery_fee=Decimal("10.00"),
        )
        session.add(establishment)
        await session.flush()

        products = {
            "burger": Product(establishment_id=establishment.id, name="X-Burger", price=Decimal("50.00")),
            "fries": Product(establishment_id=establishment.id, name="Batata", price=Decimal("25.00")),
            "old": Product(establishment_id=establishment.id, name="Antigo", price=Decimal("5.00"), is_active=False),
        }
        session.add_all(products.values())

        def coupon(code, **fields):
            fields.setdefault("name", code)
            fields.setdefault("type", CouponType.PERCENTAGE)
            fields.setdefault("value", Decimal("10"))
            fields.setdefault("valid_from", now - timedelta(days=1))
            return Coupon(code=code, establishment_id=establishment.id, **fields)

        coupons = {
            "PERCENT10": coupon("PERCENT10"),
            "CAP15": coupon("CAP15", value=Decimal("50"), maximum_discount=Decimal("15")),
            "FIXED200": coupon("FIXED200", type=CouponType.FIXED, value=Decimal("200")),
            "FRETEGRATIS": coupon("FRETEGRATIS", type=CouponType.FREE_DELIVERY, value=Decimal("0")),
            "MIN80": coupon("MIN80", minimum_order=Decimal("80")),
            "EXPIRED": coupon("EXPIRED", valid_until=now - timedelta(hours=1), usage_limit=1, usage_count=1, is_active=False),
            "FUTURE": coupon("FUTURE", valid_from=now + timedelta(days=1)),
            "INACTIVE": coupon("INACTIVE", is_active=False),
            "LIMIT2": coupon("LIMIT2", usage_limit=2),
            "PRIMEIRACOMPRA": coupon("PRIMEIRACOMPRA", value=Decimal("15")),
        }
        session.add_all(coupons.values())
        await session.commit()

        return {
            "establishment_id": establishment.id,
            "products": {key: product.id for key, product in products.items()},
            "coupons": {key: c.id for key, c in coupons.items()},
        }


# ==========================================
# FAKES
# ==========================================

class FakeProvider:
    """In-memory Mercado Pago."""

    def __init__(self):
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.created: List[Dict[str, Any]] = []
        self.preferences: List[Dict[str, Any]] = []
        self.next_status = "pending"
        self.next_status_detail = "pending_waiting_transfer"
        self.fail_create = False
        self.fail_get = False
        self._next_id = 1000

    async def create_payment(self, body):
        if self.fail_create:
            raise PaymentProviderError("invalid payment_method_id", provider_status=400)
        self._next_id += 1
        payment = {
            "id": self._next_id,
            "status": self.next_status,
            "status_detail": self.next_status_detail,
            "transaction_amount": float(body["transaction_amount"]),
            "payment_method_id": body.get("payment_method_id"),
            "external_reference": body.get("external_reference"),
            "point_of_interaction": {
                "transaction_data": {
                    "qr_code": "00020126...",
                    "qr_code_base64": "iVBORw0KGgo=",
                    "ticket_url": "https://mp.example/ticket",
                }
            },
        }
        self.created.append(body)
        self.payments[str(payment["id"])] = payment
        return payment

    async def get_payment(self, payment_id):
        if self.fail_get:
            raise PaymentProviderError("Request timeout")
        payment = self.payments.get(str(payment_id))
        if payment is None:
            raise PaymentProviderError("Payment not found", provider_status=404)
        return dict(payment)

    async def create_preference(self, body):
        self.preferences.append(body)
        return {"id": "pref-1", "init_point": "https://mp.example/checkout/pref-1"}

    def set_status(self, payment_id, status, status_detail=None):
        self.payments[str(payment_id)]["status"] = status
        if status_detail:
            self.payments[str(payment_id)]["status_detail"] = status_detail


class RecordingSocket:
    """Stands in for a WebSocket in broadcaster tests."""

    def __init__(self, fail: bool = False):
        self.messages: List[dict] = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.messages.append(data)

    def types(self) -> List[str]:
        return [message["type"] for message in self.messages]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def broadcaster():
    return OrderBroadcaster()


@pytest.fixture
def admin_socket(broadcaster):
    socket = RecordingSocket()
    broadcaster.subscribe(socket, "admin")
    return socket


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    monkeypatch.setattr(config, "admin_api_token", "")
    monkeypatch.setattr(config, "mercadopago_webhook_secret", "")
    monkeypatch.setattr(config, "public_base_url", "https://delivery.example.com")


# ==========================================
# API
# ==========================================

@pytest.fixture
def app(session_maker, broadcaster, provider):
    app = create_app(broadcaster=broadcaster, payment_provider=provider, manage_database=False)

    async def override_session():
        async with session_maker() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_session
    return app


@pytest_asyncio.fixture
async def client(app, seed):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def order_payload(seed, items=None, **order_fields) -> dict:
    """Storefront body for POST /api/orders (2 burgers = 100.00 by default)."""
    order = {
        "customerName": "Maria Silva",
        "customerPhone": "(11) 98765-4321",
        "customerEmail": "maria@example.com",
        "deliveryAddress": "Rua A, 10",
        "deliveryNeighborhood": "Centro",
        "paymentMethod": "PIX",
    }
    order.update(order_fields)
    if items is None:
        items = [{"productId": seed["products"]["burger"], "quantity": 2}]
    return {"order": order, "items": items}


@pytest_asyncio.fixture
async def create_order(client, seed):
    async def _create(**order_fields) -> dict:
        response = await client.post("/api/orders", json=order_payload(seed, **order_fields))
        assert response.status_code == 201, response.text
        return response.json()
    return _create
