# infrastructure/database/repositories.py
"""
Repository pattern.

Instead of writing
    session.execute(select(...))
all over the code, services call
    repo.get_by_id(...)
    repo.apply_payment_status(...)

IMPORTANT: repositories never commit. The caller owns the transaction
(``async with session.begin()`` or an explicit ``session.commit()``), so
an order, its items, the coupon usage and the customer stats are written
together or not at all.

Every status change is a conditional UPDATE (compare-and-swap) and
returns whether a row was actually changed.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import structlog

from .models import (
    STATUS_TIMESTAMP_FIELDS,
    Coupon,
    Customer,
    Establishment,
    Order,
    OrderCounter,
    OrderStatus,
    PaymentStatus,
    Product,
    utcnow,
)

logger = structlog.get_logger()


# ==========================================
# REPOSITORY: Establishment
# ==========================================

class EstablishmentRepository:
    """The restaurant running this service."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active(self) -> Optional[Establishment]:
        """First active establishment (single-restaurant deployment)."""
        stmt = (
            select(Establishment)
            .where(Establishment.is_active.is_(True))
            .order_by(Establishment.created_at.asc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()


# ==========================================
# REPOSITORY: Customer
# ==========================================

class CustomerRepository:
    """Customers, looked up by WhatsApp number."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_whatsapp(self, whatsapp: str) -> Optional[Customer]:
        stmt = select(Customer).where(Customer.whatsapp == whatsapp)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_by_id(self, customer_id: str) -> Optional[Customer]:
        return await self.session.get(Customer, customer_id)

    async def get_or_create(self, whatsapp: str, **fields) -> Customer:
        """
        Get the customer by WhatsApp, or create one.

        Two checkouts from the same phone can race here; the loser of the
        unique constraint rolls back its savepoint and reads the winner's row.

        Example:
            customer = await repo.get_or_create(
                "11987654321",
                name="Maria",
                address="Rua A, 10",
            )
        """
        customer = await self.get_by_whatsapp(whatsapp)
        if customer:
            return customer

        try:
            async with self.session.begin_nested():
                customer = Customer(whatsapp=whatsapp, **fields)
                self.session.add(customer)
            logger.info("customer_created", whatsapp=whatsapp)
            return customer

        except IntegrityError:
            customer = await self.get_by_whatsapp(whatsapp)
            if customer:
                logger.info("customer_already_exists_after_race", whatsapp=whatsapp)
                return customer
            raise

    async def record_order(self, customer_id: str, amount: Decimal, at: datetime) -> None:
        """
        Add one order to the customer's aggregates.

        UPDATE customers
        SET total_orders = total_orders + 1, total_spent = total_spent + ?
        """
        stmt = (
            update(Customer)
            .where(Customer.id == customer_id)
            .values(
                total_orders=Customer.total_orders + 1,
                total_spent=Customer.total_spent + amount,
                last_order_at=at,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def count(self) -> int:
        result = await self.session.execute(select(func.count(Customer.id)))
        return int(result.scalar_one())


# ==========================================
# REPOSITORY: Product
# ==========================================

class ProductRepository:
    """Read-only menu access for order snapshots."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_many(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        """
        Load several products with one query.

        Example:
            products = await repo.get_many(["p1", "p2"])
            products["p1"].price
        """
        ids = list(set(product_ids))
        if not ids:
            return {}
        stmt = select(Product).where(Product.id.in_(ids))
        result = await self.session.execute(stmt)
        return {product.id: product for product in result.scalars().all()}


# ==========================================
# REPOSITORY: OrderCounter
# ==========================================

class OrderCounterRepository:
    """Atomic per-establishment order numbers."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def next_value(self, establishment_id: str, start: int) -> int:
        """
        Reserve the next order number.

        UPDATE order_counters SET last_value = last_value + 1
        WHERE establishment_id = ? RETURNING last_value

        The first call for an establishment seeds the row with start + 1.
        """
        value = await self._increment(establishment_id)
        if value is not None:
            return value

        try:
            async with self.session.begin_nested():
                self.session.add(OrderCounter(establishment_id=establishment_id, last_value=start + 1))
            return start + 1
        except IntegrityError:
            # Another checkout seeded the row first
            value = await self._increment(establishment_id)
            if value is None:
                raise
            return value

    async def _increment(self, establishment_id: str) -> Optional[int]:
        stmt = (
            update(OrderCounter)
            .where(OrderCounter.establishment_id == establishment_id)
            .values(last_value=OrderCounter.last_value + 1)
            .returning(OrderCounter.last_value)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


# ==========================================
# REPOSITORY: Order
# ==========================================

class OrderRepository:
    """
    All order reads and writes.

    Use the *_with_items() readers when the response needs the lines,
    they load them in the same round trip (no N+1).
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def add(self, order: Order) -> Order:
        self.session.add(order)
        return order

    async def get_by_id(self, order_id: str, with_items: bool = False) -> Optional[Order]:
        """
        Get an order by id. Always re-reads the row, so a status written
        by a conditional UPDATE in this session is visible.
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if with_items:
            stmt = stmt.options(selectinload(Order.items))
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_by_id_with_items(self, order_id: str) -> Optional[Order]:
        return await self.get_by_id(order_id, with_items=True)

    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        stmt = (
            select(Order)
            .where(Order.mercadopago_payment_id == str(payment_id))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_for_establishment(self, establishment_id: str, limit: int = 100) -> List[Order]:
        """Newest orders first, for the back office."""
        stmt = (
            select(Order)
            .where(Order.establishment_id == establishment_id)
            .order_by(Order.created_at.desc())
            .limit(limit)
            .options(selectinload(Order.items))
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_customer(self, customer_id: str) -> List[Order]:
        stmt = (
            select(Order)
            .where(Order.customer_id == customer_id)
            .order_by(Order.created_at.desc())
            .options(selectinload(Order.items))
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_phone(self, phone: str) -> int:
        """Orders already placed from a phone (first-purchase coupons)."""
        stmt = select(func.count(Order.id)).where(
            Order.customer_phone == phone,
            Order.status != OrderStatus.CANCELLED,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def set_payment_reference(self, order_id: str, payment_id: str) -> bool:
        """
        Remember the provider payment id of a still-pending order.

        Example:
            await repo.set_payment_reference(order.id, "123456789")
        """
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status == PaymentStatus.PENDING,
            )
            .values(mercadopago_payment_id=str(payment_id), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def apply_payment_status(
        self,
        order_id: str,
        payment_status: PaymentStatus,
        order_status: OrderStatus,
        payment_id: Optional[str] = None,
    ) -> bool:
        """
        Record a terminal payment status, only if the order still waits for it.

        UPDATE orders SET status = ?, payment_status = ?, <milestone> = now
        WHERE id = ? AND status = 'PENDING' AND payment_status = 'pending'

        Returns True when this call won the transition, False when another
        channel already settled the order (duplicate or stale notification).
        """
        now = utcnow()
        values = {
            "status": order_status,
            "payment_status": payment_status,
            "updated_at": now,
        }
        timestamp_field = STATUS_TIMESTAMP_FIELDS.get(order_status)
        if timestamp_field:
            values[timestamp_field] = now
        if payment_id:
            values["mercadopago_payment_id"] = func.coalesce(Order.mercadopago_payment_id, str(payment_id))

        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PENDING,
                Order.payment_status == PaymentStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def transition_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus,
    ) -> bool:
        """
        Move an order from ``expected`` to ``new_status`` (back office).

        UPDATE orders SET status = ? WHERE id = ? AND status = <expected>
        """
        now = utcnow()
        values = {"status": new_status, "updated_at": now}
        timestamp_field = STATUS_TIMESTAMP_FIELDS.get(new_status)
        if timestamp_field:
            values[timestamp_field] = now

        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        if result.rowcount == 1:
            logger.info(
                "order_status_updated",
                order_id=order_id,
                from_status=expected.value,
                to_status=new_status.value
            )
        return result.rowcount == 1

    async def stats_since(self, establishment_id: str, since: datetime) -> dict:
        """Order count and revenue (cancelled orders excluded) since a moment."""
        stmt = select(
            func.count(Order.id),
            func.coalesce(func.sum(Order.total), 0),
        ).where(
            Order.establishment_id == establishment_id,
            Order.created_at >= since,
            Order.status != OrderStatus.CANCELLED,
        )
        result = await self.session.execute(stmt)
        count, revenue = result.one()
        return {"count": int(count), "revenue": Decimal(str(revenue))}


# ==========================================
# REPOSITORY: Coupon
# ==========================================

class CouponRepository:
    """Coupons: case-insensitive lookup and capped usage counting."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_code(self, code: str, establishment_id: str) -> Optional[Coupon]:
        """
        Example:
            coupon = await repo.get_by_code("percent10", establishment.id)
            coupon.code  # "PERCENT10"
        """
        stmt = (
            select(Coupon)
            .where(
                func.upper(Coupon.code) == code.strip().upper(),
                Coupon.establishment_id == establishment_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def increment_usage(self, coupon_id: str) -> bool:
        """
        Count one redemption, never past the limit.

        UPDATE coupons SET usage_count = usage_count + 1
        WHERE id = ? AND (usage_limit IS NULL OR usage_count < usage_limit)
        """
        stmt = (
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
            )
            .values(usage_count=Coupon.usage_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1
