# app/services/coupons.py
"""
Coupon service.

- validate(): is this code usable right now, by this customer?
- compute_discount(): how much does it take off this cart?
- redeem(): count one use, never past the limit

The discount is always recomputed here at order creation; the amount
the storefront shows is only a preview.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from infrastructure.database.models import Coupon, CouponType, utcnow
from infrastructure.database.repositories import CouponRepository, OrderRepository

from app.services.exceptions import (
    CouponExhausted,
    CouponExpired,
    CouponFirstPurchaseOnly,
    CouponMinimumNotReached,
    CouponNotFound,
)
from app.services.money import ZERO, format_brl, money

logger = structlog.get_logger()

# Historical code that always meant "first purchase only"
FIRST_PURCHASE_CODE = "PRIMEIRACOMPRA"


@dataclass(frozen=True)
class CouponDiscount:
    """Result of applying a coupon to a cart."""
    discount: Decimal
    delivery_fee: Decimal
    free_delivery: bool

    def total(self, subtotal: Decimal) -> Decimal:
        return money(subtotal + self.delivery_fee - self.discount)


def is_first_purchase_only(coupon: Coupon) -> bool:
    return bool(coupon.first_purchase_only) or coupon.code.upper() == FIRST_PURCHASE_CODE


def compute_discount(coupon: Coupon, subtotal, delivery_fee) -> CouponDiscount:
    """
    Apply a validated coupon to a cart.

    - percentage    → subtotal * value / 100, capped at maximum_discount
    - fixed         → value
    - free_delivery → no discount, delivery fee waived
    The discount never goes above the subtotal, so the total stays >= 0.

    Example:
        compute_discount(percent10, Decimal("100"), Decimal("10"))
        → CouponDiscount(discount=10.00, delivery_fee=10.00, free_delivery=False)
    """
    subtotal = money(subtotal)
    delivery_fee = money(delivery_fee)

    minimum = money(coupon.minimum_order)
    if minimum > ZERO and subtotal < minimum:
        raise CouponMinimumNotReached(f"Pedido mínimo de {format_brl(minimum)} necessário")

    coupon_type = CouponType(coupon.type)
    free_delivery = bool(coupon.free_delivery) or coupon_type is CouponType.FREE_DELIVERY

    if coupon_type is CouponType.PERCENTAGE:
        discount = money(subtotal * money(coupon.value) / Decimal(100))
        if coupon.maximum_discount is not None:
            discount = min(discount, money(coupon.maximum_discount))
    elif coupon_type is CouponType.FIXED:
        discount = money(coupon.value)
    else:
        discount = ZERO

    discount = max(ZERO, min(discount, subtotal))

    return CouponDiscount(
        discount=discount,
        delivery_fee=ZERO if free_delivery else delivery_fee,
        free_delivery=free_delivery,
    )


class CouponService:
    """Validation and redemption against the database."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.coupons = CouponRepository(session)
        self.orders = OrderRepository(session)

    async def validate(
        self,
        code: str,
        establishment_id: str,
        customer_phone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Coupon:
        """
        Check that a coupon can be used.

        Order of checks:
        1. exists (case-insensitive code)
        2. inside [valid_from, valid_until], checked before anything else
        3. active
        4. usage_count < usage_limit
        5. first-purchase coupons: the phone has no previous orders

        Example:
            coupon = await CouponService(session).validate("percent10", establishment.id)
        """
        now = now or utcnow()
        code = (code or "").strip()

        coupon = await self.coupons.get_by_code(code, establishment_id) if code else None
        if coupon is None:
            logger.info("coupon_not_found", code=code)
            raise CouponNotFound()

        if (coupon.valid_until is not None and now > coupon.valid_until) or now < coupon.valid_from:
            logger.info("coupon_expired", code=coupon.code)
            raise CouponExpired()

        if not coupon.is_active:
            logger.info("coupon_inactive", code=coupon.code)
            raise CouponNotFound()

        if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
            logger.info("coupon_exhausted", code=coupon.code, usage_limit=coupon.usage_limit)
            raise CouponExhausted()

        if customer_phone and is_first_purchase_only(coupon):
            previous_orders = await self.orders.count_by_phone(customer_phone)
            if previous_orders > 0:
                logger.info("coupon_first_purchase_violation", code=coupon.code, phone=customer_phone)
                raise CouponFirstPurchaseOnly()

        return coupon

    async def redeem(self, coupon: Coupon) -> None:
        """
        Count one use inside the caller's transaction.
        Raises CouponExhausted if a concurrent checkout took the last use.
        """
        if not await self.coupons.increment_usage(coupon.id):
            logger.warning("coupon_redeem_race_lost", code=coupon.code)
            raise CouponExhausted()

        logger.info("coupon_redeemed", code=coupon.code)
