# app/api/routes/coupons.py

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from infrastructure.database.base import get_db_session
from infrastructure.database.repositories import EstablishmentRepository

from app.schemas import CouponOut, CouponValidateRequest, DiscountPreview
from app.services.coupons import CouponService, compute_discount
from app.services.exceptions import EstablishmentNotFoundError
from app.services.money import money

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/validate")
async def validate_coupon(
    request: CouponValidateRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """
    Check a code typed in the cart.

    With "subtotal" the answer also carries a preview of the discount:
        {"code": "PERCENT10", ..., "preview": {"discount": "10.00", "total": "100.00", ...}}

    The usage counter is NOT touched here, only when the order is created.
    """
    establishment = await EstablishmentRepository(session).get_active()
    if establishment is None:
        raise EstablishmentNotFoundError()

    coupon = await CouponService(session).validate(
        request.code,
        establishment.id,
        customer_phone=request.customer_phone,
    )
    body = CouponOut.model_validate(coupon).to_json()

    if request.subtotal is not None:
        subtotal = money(request.subtotal)
        delivery_fee = request.delivery_fee if request.delivery_fee is not None else establishment.delivery_fee
        applied = compute_discount(coupon, subtotal, delivery_fee)
        body["preview"] = DiscountPreview(
            subtotal=subtotal,
            discount=applied.discount,
            delivery_fee=applied.delivery_fee,
            free_delivery=applied.free_delivery,
            total=applied.total(subtotal),
        ).to_json()

    return body
