# infrastructure/database/models.py
"""
Table definitions.
SQLAlchemy creates these tables on the first start (see init_db).

One class = one table
One attribute = one column

Money is always DECIMAL(10, 2) and Decimal in Python, never float.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    DECIMAL,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from infrastructure.database.base import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (stored the same way on SQLite and PostgreSQL)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ==========================================
# ENUMS
# ==========================================

class OrderStatus(str, PyEnum):
    """
    Order lifecycle.

    PENDING → CONFIRMED → PREPARING → READY → OUT_DELIVERY → DELIVERED
    CANCELLED is reachable from any non-terminal state.
    """
    PENDING = "PENDING"
    # Created, waiting for payment (or for the kitchen, for cash orders)
    CONFIRMED = "CONFIRMED"
    # Payment approved / accepted by the restaurant
    PREPARING = "PREPARING"
    READY = "READY"
    OUT_DELIVERY = "OUT_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class PaymentStatus(str, PyEnum):
    """Payment status as seen by the restaurant (provider statuses are normalized)."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class PaymentMethod(str, PyEnum):
    PIX = "PIX"
    CARD = "CARD"
    CASH = "CASH"


class CouponType(str, PyEnum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_DELIVERY = "free_delivery"


# ==========================================
# MODEL: Establishment (table establishments)
# ==========================================

class Establishment(Base):
    """
    The restaurant itself.
    The service runs for one establishment (the first active row).
    """
    __tablename__ = "establishments"

    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    phone = Column(String(32), nullable=False)
    email = Column(String(255), nullable=True)
    address = Column(Text, nullable=False)

    delivery_fee = Column(DECIMAL(10, 2), nullable=False, default=Decimal("0.00"))
    minimum_order = Column(DECIMAL(10, 2), nullable=False, default=Decimal("0.00"))

    is_open = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ==========================================
# MODEL: Customer (table customers)
# ==========================================

class Customer(Base):
    """
    Customer, identified by the WhatsApp number.

    total_orders / total_spent are aggregates maintained by the order
    transaction with an atomic increment.
    """
    __tablename__ = "customers"

    id = Column(String(64), primary_key=True, default=new_id)

    whatsapp = Column(
        String(32),
        nullable=False,
        unique=True,
        index=True
    )
    # Digits only, e.g. 11987654321

    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)

    address = Column(Text, nullable=True)
    complement = Column(String(255), nullable=True)
    neighborhood = Column(String(255), nullable=True)
    city = Column(String(255), nullable=True)
    state = Column(String(8), nullable=True)
    zip_code = Column(String(16), nullable=True)

    default_payment_method = Column(String(16), nullable=False, default=PaymentMethod.PIX.value)

    total_orders = Column(Integer, nullable=False, default=0)
    total_spent = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0.00"))
    last_order_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    orders = relationship("Order", back_populates="customer")


# ==========================================
# MODEL: Product (table products)
# ==========================================

class Product(Base):
    """Menu item. Orders keep a snapshot of name and price."""
    __tablename__ = "products"

    id = Column(String(64), primary_key=True, default=new_id)
    establishment_id = Column(
        String(64),
        ForeignKey("establishments.id"),
        nullable=False,
        index=True
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(DECIMAL(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ==========================================
# MODEL: Order (table orders)
# ==========================================

class Order(Base):
    """
    Orders.

    Invariant: total = subtotal + delivery_fee - discount_amount, total >= 0.

    id          | order_number | status    | payment_status | total
    3f2a...     | 10001        | CONFIRMED | approved       | 100.00
    """
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, default=new_id)

    order_number = Column(
        String(32),
        nullable=False,
        unique=True,
        index=True
    )
    # Human readable number, from the per-establishment counter

    establishment_id = Column(
        String(64),
        ForeignKey("establishments.id"),
        nullable=False,
        index=True
    )
    customer_id = Column(
        String(64),
        ForeignKey("customers.id"),
        nullable=True,
        index=True
    )

    # ==========================================
    # Customer / delivery snapshot
    # ==========================================
    customer_name = Column(String(255), nullable=False)
    customer_phone = Column(String(32), nullable=False, index=True)
    customer_email = Column(String(255), nullable=True)
    customer_address = Column(Text, nullable=False)
    customer_complement = Column(String(255), nullable=True)
    customer_neighborhood = Column(String(255), nullable=True)
    customer_city = Column(String(255), nullable=True)
    customer_state = Column(String(8), nullable=True)
    customer_zip_code = Column(String(16), nullable=True)

    # ==========================================
    # Money
    # ==========================================
    subtotal = Column(DECIMAL(10, 2), nullable=False)
    delivery_fee = Column(DECIMAL(10, 2), nullable=False, default=Decimal("0.00"))
    discount_amount = Column(DECIMAL(10, 2), nullable=False, default=Decimal("0.00"))
    coupon_code = Column(String(64), nullable=True)
    # Referenced by code, no foreign key
    total = Column(DECIMAL(10, 2), nullable=False)

    # ==========================================
    # Payment
    # ==========================================
    payment_method = Column(
        Enum(PaymentMethod, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
        default=PaymentMethod.PIX
    )
    payment_status = Column(
        Enum(PaymentStatus, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True
    )
    mercadopago_payment_id = Column(String(64), nullable=True, index=True)

    # ==========================================
    # Status and timestamps
    # ==========================================
    status = Column(
        Enum(OrderStatus, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True
    )
    observations = Column(Text, nullable=True)
    estimated_delivery_time = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    confirmed_at = Column(DateTime, nullable=True)
    preparing_at = Column(DateTime, nullable=True)
    ready_at = Column(DateTime, nullable=True)
    out_delivery_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.created_at"
    )
    customer = relationship("Customer", back_populates="orders")

    def __repr__(self):
        return f"<Order(id={self.id}, number='{self.order_number}', status={self.status})>"


# Which timestamp column a status transition stamps
STATUS_TIMESTAMP_FIELDS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.OUT_DELIVERY: "out_delivery_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


# ==========================================
# MODEL: OrderItem (table order_items)
# ==========================================

class OrderItem(Base):
    """
    Order line. Name and price are copied from the product at order time
    so later menu edits do not change old orders.
    """
    __tablename__ = "order_items"

    id = Column(String(64), primary_key=True, default=new_id)
    order_id = Column(
        String(64),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id = Column(String(64), nullable=False)
    product_name = Column(String(255), nullable=False)
    product_description = Column(Text, nullable=True)
    product_price = Column(DECIMAL(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    subtotal = Column(DECIMAL(10, 2), nullable=False)
    # quantity * product_price
    options = Column(JSON, nullable=True)
    observations = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem(id={self.id}, product='{self.product_name}', qty={self.quantity})>"


# ==========================================
# MODEL: Coupon (table coupons)
# ==========================================

class Coupon(Base):
    """
    Discount code.

    code is stored upper-case and never changes after creation.
    usage_count <= usage_limit is kept by a conditional UPDATE.
    """
    __tablename__ = "coupons"

    id = Column(String(64), primary_key=True, default=new_id)
    code = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    establishment_id = Column(
        String(64),
        ForeignKey("establishments.id"),
        nullable=False,
        index=True
    )

    type = Column(
        Enum(CouponType, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
        default=CouponType.PERCENTAGE
    )
    value = Column(DECIMAL(10, 2), nullable=False, default=Decimal("0.00"))
    minimum_order = Column(DECIMAL(10, 2), nullable=False, default=Decimal("0.00"))
    maximum_discount = Column(DECIMAL(10, 2), nullable=True)

    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)

    valid_from = Column(DateTime, nullable=False, default=utcnow)
    valid_until = Column(DateTime, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    free_delivery = Column(Boolean, nullable=False, default=False)
    first_purchase_only = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Coupon(code='{self.code}', type={self.type}, used={self.usage_count}/{self.usage_limit})>"


# ==========================================
# MODEL: OrderCounter (table order_counters)
# ==========================================

class OrderCounter(Base):
    """
    Per-establishment sequence for human readable order numbers.
    Incremented with a single UPDATE ... RETURNING inside the order transaction.
    """
    __tablename__ = "order_counters"

    establishment_id = Column(
        String(64),
        ForeignKey("establishments.id"),
        primary_key=True
    )
    last_value = Column(Integer, nullable=False)
