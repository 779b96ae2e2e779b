# app/schemas.py
"""
📊 DATA SCHEMAS (Pydantic)

Request bodies and response shapes of the API.

The storefront speaks camelCase JSON (customerName, deliveryFee...),
the database speaks snake_case; aliases translate between them.
Responses are also what the broadcaster pushes over WebSocket.
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from infrastructure.database.models import CouponType, OrderStatus, PaymentMethod, PaymentStatus


def only_digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


class CamelModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ==========================================
# ORDERS: REQUEST
# ==========================================

class OrderItemIn(CamelModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1, le=999)
    unit_price: Optional[Decimal] = None
    # What the storefront displayed; the menu price wins
    total_price: Optional[Decimal] = None
    observations: Optional[str] = None
    selected_options: Optional[Any] = None


class OrderIn(CamelModel):
    customer_id: Optional[str] = None
    customer_name: str = Field(min_length=1, max_length=255)
    customer_phone: str
    customer_email: Optional[str] = None

    delivery_address: str = Field(
        min_length=1,
        validation_alias=AliasChoices("deliveryAddress", "customerAddress", "delivery_address"),
    )
    delivery_complement: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("deliveryComplement", "customerComplement", "delivery_complement"),
    )
    delivery_neighborhood: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("deliveryNeighborhood", "customerNeighborhood", "delivery_neighborhood"),
    )
    delivery_city: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("deliveryCity", "customerCity", "delivery_city"),
    )
    delivery_state: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("deliveryState", "customerState", "delivery_state"),
    )
    delivery_zip_code: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("deliveryZipCode", "customerZipCode", "delivery_zip_code"),
    )

    # Cart totals as computed by the storefront (compared, never trusted)
    subtotal: Optional[Decimal] = None
    delivery_fee: Optional[Decimal] = Field(default=None, ge=0)
    discount: Optional[Decimal] = None
    total: Optional[Decimal] = None

    coupon_code: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.PIX
    observations: Optional[str] = None
    estimated_time: Optional[int] = None

    @field_validator("customer_phone")
    @classmethod
    def phone_digits(cls, value: str) -> str:
        digits = only_digits(value)
        if len(digits) < 8:
            raise ValueError("Telefone inválido")
        return digits

    @field_validator("payment_method", mode="before")
    @classmethod
    def payment_method_upper(cls, value):
        if isinstance(value, str):
            value = value.strip().upper()
            if value in ("CREDIT_CARD", "DEBIT_CARD", "CARTAO", "CARTÃO"):
                return PaymentMethod.CARD.value
            if value == "DINHEIRO":
                return PaymentMethod.CASH.value
        return value

    @field_validator("coupon_code")
    @classmethod
    def coupon_upper(cls, value: Optional[str]) -> Optional[str]:
        value = (value or "").strip().upper()
        return value or None


class CreateOrderRequest(CamelModel):
    order: OrderIn
    items: List[OrderItemIn] = Field(min_length=1)


class OrderStatusUpdate(CamelModel):
    status: OrderStatus

    @field_validator("status", mode="before")
    @classmethod
    def status_upper(cls, value):
        return value.strip().upper() if isinstance(value, str) else value


# ==========================================
# ORDERS: RESPONSE
# ==========================================

class OrderItemOut(CamelModel):
    id: str
    product_id: str
    product_name: str
    product_description: Optional[str] = None
    product_price: Decimal
    quantity: int
    subtotal: Decimal
    options: Optional[Any] = None
    observations: Optional[str] = None


class OrderOut(CamelModel):
    id: str
    order_number: str
    customer_id: Optional[str] = None
    customer_name: str
    customer_phone: str
    customer_email: Optional[str] = None
    customer_address: str
    customer_complement: Optional[str] = None
    customer_neighborhood: Optional[str] = None
    customer_city: Optional[str] = None
    customer_state: Optional[str] = None
    customer_zip_code: Optional[str] = None

    subtotal: Decimal
    delivery_fee: Decimal
    discount_amount: Decimal
    coupon_code: Optional[str] = None
    total: Decimal

    payment_method: PaymentMethod
    payment_status: PaymentStatus
    mercadopago_payment_id: Optional[str] = None
    status: OrderStatus
    observations: Optional[str] = None
    estimated_delivery_time: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    preparing_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    out_delivery_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class OrderWithItemsOut(OrderOut):
    items: List[OrderItemOut] = []


# ==========================================
# COUPONS
# ==========================================

class CouponValidateRequest(CamelModel):
    code: str = Field(min_length=1)
    customer_phone: Optional[str] = None
    subtotal: Optional[Decimal] = Field(default=None, ge=0)
    delivery_fee: Optional[Decimal] = Field(default=None, ge=0)

    @field_validator("customer_phone")
    @classmethod
    def phone_digits(cls, value: Optional[str]) -> Optional[str]:
        return only_digits(value) or None


class CouponOut(CamelModel):
    id: str
    code: str
    name: str
    description: Optional[str] = None
    type: CouponType
    value: Decimal
    minimum_order: Decimal
    max_discount: Optional[Decimal] = Field(
        default=None,
        validation_alias=AliasChoices("maximum_discount", "maxDiscount"),
    )
    usage_limit: Optional[int] = None
    usage_count: int
    valid_from: datetime
    valid_until: Optional[datetime] = None
    is_active: bool
    free_delivery: bool
    first_purchase_only: bool


class DiscountPreview(CamelModel):
    subtotal: Decimal
    discount: Decimal
    delivery_fee: Decimal
    free_delivery: bool
    total: Decimal


# ==========================================
# PAYMENTS
# ==========================================

class PixPayer(CamelModel):
    name: str = "Cliente"
    email: str
    phone: Optional[str] = None


class CreatePixRequest(CamelModel):
    order_id: str = Field(min_length=1)
    amount: Optional[Decimal] = None
    payer: PixPayer
    description: Optional[str] = None


class CardIdentification(BaseModel):
    type: Optional[str] = "CPF"
    number: Optional[str] = None


class CardPayer(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    identification: Optional[CardIdentification] = None


class CreateCardPaymentRequest(CamelModel):
    """
    Card checkout body. Every field is optional here: the payment service
    answers missing data with the storefront's own messages.
    Mercado Pago's brick sends snake_case keys, both spellings are accepted.
    """
    order_id: Optional[str] = None
    amount: Optional[Decimal] = None
    token: Optional[str] = None
    description: Optional[str] = None
    payer: Optional[CardPayer] = None
    installments: Optional[int] = 1
    payment_method_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("payment_method_id", "paymentMethodId"),
    )
    issuer_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("issuer_id", "issuerId"),
    )

    @field_validator("issuer_id", mode="before")
    @classmethod
    def issuer_as_str(cls, value):
        return str(value) if value is not None else None


class PreferenceItem(CamelModel):
    title: str
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(
        gt=0,
        validation_alias=AliasChoices("unit_price", "unitPrice"),
    )


class CreatePreferenceRequest(CamelModel):
    order_id: str
    items: List[PreferenceItem] = Field(min_length=1)
    payer: Optional[dict] = None


# ==========================================
# ESTABLISHMENT
# ==========================================

class EstablishmentOut(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    phone: str
    email: Optional[str] = None
    address: str
    delivery_fee: Decimal
    minimum_order: Decimal
    is_open: bool
