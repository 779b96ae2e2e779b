# app/services/orders.py
"""
🍽️ ORDER SERVICE

Turns a storefront cart into a persisted order, and moves orders through
the kitchen lifecycle for the back office.

create_order() writes everything in ONE transaction:
    1. next order number (atomic counter)
    2. the order row
    3. the item rows (name/price snapshot of the menu)
    4. coupon usage (+1, never past the limit)
    5. customer get-or-create + stats (+1 order, +total)
If any step fails, nothing is written.

Only after the commit is NEW_ORDER broadcast to the back office.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from config.settings import config
from infrastructure.database.models import (
    Establishment,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    utcnow,
)
from infrastructure.database.repositories import (
    CustomerRepository,
    EstablishmentRepository,
    OrderCounterRepository,
    OrderRepository,
    ProductRepository,
)

from app.schemas import CreateOrderRequest, OrderOut, OrderWithItemsOut
from app.services.broadcaster import ADMIN_TOPIC, OrderBroadcaster, order_topic
from app.services.coupons import CouponService, compute_discount
from app.services.exceptions import (
    EstablishmentNotFoundError,
    InvalidStatusTransition,
    OrderNotFoundError,
    OrderValidationError,
    StatusConflict,
)
from app.services.money import ZERO, money

logger = structlog.get_logger()


# ==========================================
# LIFECYCLE
# ==========================================

# Kitchen flow, in order. CANCELLED is allowed from any non-terminal state.
STATUS_FLOW = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.OUT_DELIVERY,
    OrderStatus.DELIVERED,
]


def can_transition(current: OrderStatus, new_status: OrderStatus) -> bool:
    """
    Example:
        can_transition(OrderStatus.CONFIRMED, OrderStatus.READY)      → True
        can_transition(OrderStatus.READY, OrderStatus.CONFIRMED)      → False
        can_transition(OrderStatus.DELIVERED, OrderStatus.CANCELLED)  → False
    """
    if current.is_terminal or current == new_status:
        return False
    if new_status is OrderStatus.CANCELLED:
        return True
    return STATUS_FLOW.index(new_status) > STATUS_FLOW.index(current)


def order_json(order: Order, with_items: bool = False) -> dict:
    schema = OrderWithItemsOut if with_items else OrderOut
    return schema.model_validate(order).to_json()


class OrderService:
    """
    Order creation and back office operations.

    Example:
        service = OrderService(session, broadcaster)
        order = await service.create_order(CreateOrderRequest.model_validate(body))
        order.order_number  # "10001"
    """

    def __init__(self, session: AsyncSession, broadcaster: OrderBroadcaster):
        self.session = session
        self.broadcaster = broadcaster
        self.orders = OrderRepository(session)
        self.customers = CustomerRepository(session)
        self.products = ProductRepository(session)
        self.counters = OrderCounterRepository(session)
        self.establishments = EstablishmentRepository(session)
        self.coupons = CouponService(session)

    async def get_establishment(self) -> Establishment:
        establishment = await self.establishments.get_active()
        if establishment is None:
            raise EstablishmentNotFoundError()
        return establishment

    # ==========================================
    # CREATE
    # ==========================================

    async def create_order(self, request: CreateOrderRequest) -> Order:
        establishment = await self.get_establishment()
        data = request.order

        try:
            order = await self._materialize(establishment, request)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        order = await self.orders.get_by_id_with_items(order.id)

        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order.order_number,
            total=str(order.total),
            payment_method=order.payment_method.value,
            coupon_code=order.coupon_code
        )

        await self.broadcaster.publish(
            [ADMIN_TOPIC],
            {"type": "NEW_ORDER", "order": order_json(order, with_items=True)},
        )

        if data.total is not None and money(data.total) != money(order.total):
            logger.warning(
                "order_total_mismatch",
                order_id=order.id,
                client_total=str(data.total),
                server_total=str(order.total)
            )

        return order

    async def _materialize(self, establishment: Establishment, request: CreateOrderRequest) -> Order:
        data = request.order
        now = utcnow()

        # ========== menu snapshot ==========
        products = await self.products.get_many(item.product_id for item in request.items)

        lines = []
        subtotal = ZERO
        for item in request.items:
            product = products.get(item.product_id)
            if product is None or not product.is_active:
                raise OrderValidationError(f"Produto indisponível: {item.product_id}")

            price = money(product.price)
            line_total = money(price * item.quantity)
            if item.unit_price is not None and money(item.unit_price) != price:
                logger.warning(
                    "item_price_mismatch",
                    product_id=product.id,
                    client_price=str(item.unit_price),
                    menu_price=str(price)
                )

            lines.append((product, item, price, line_total))
            subtotal += line_total

        subtotal = money(subtotal)

        # ========== money ==========
        delivery_fee = money(establishment.delivery_fee)
        if data.delivery_fee is not None and money(data.delivery_fee) != delivery_fee:
            logger.warning(
                "order_delivery_fee_mismatch",
                client_fee=str(data.delivery_fee),
                server_fee=str(delivery_fee)
            )

        discount = ZERO
        coupon = None

        if data.coupon_code:
            coupon = await self.coupons.validate(
                data.coupon_code,
                establishment.id,
                customer_phone=data.customer_phone,
                now=now,
            )
            applied = compute_discount(coupon, subtotal, delivery_fee)
            discount = applied.discount
            delivery_fee = applied.delivery_fee

        total = money(subtotal + delivery_fee - discount)
        if total < ZERO:
            raise OrderValidationError("Total do pedido inválido")

        if data.discount is not None and money(data.discount) != discount:
            logger.warning(
                "order_discount_mismatch",
                coupon_code=data.coupon_code,
                client_discount=str(data.discount),
                server_discount=str(discount)
            )

        # ========== write ==========
        number = await self.counters.next_value(establishment.id, config.order_number_start)

        customer = await self.customers.get_or_create(
            data.customer_phone,
            name=data.customer_name,
            email=data.customer_email,
            address=data.delivery_address,
            complement=data.delivery_complement,
            neighborhood=data.delivery_neighborhood,
            city=data.delivery_city,
            state=data.delivery_state,
            zip_code=data.delivery_zip_code,
            default_payment_method=data.payment_method.value,
        )

        order = Order(
            order_number=str(number),
            establishment_id=establishment.id,
            customer_id=customer.id,
            customer_name=data.customer_name,
            customer_phone=data.customer_phone,
            customer_email=data.customer_email,
            customer_address=data.delivery_address,
            customer_complement=data.delivery_complement,
            customer_neighborhood=data.delivery_neighborhood,
            customer_city=data.delivery_city,
            customer_state=data.delivery_state,
            customer_zip_code=data.delivery_zip_code,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            discount_amount=discount,
            coupon_code=coupon.code if coupon else None,
            total=total,
            payment_method=data.payment_method,
            payment_status=PaymentStatus.PENDING,
            status=OrderStatus.PENDING,
            observations=data.observations,
            estimated_delivery_time=(
                f"{data.estimated_time} min" if data.estimated_time else None
            ),
            created_at=now,
            updated_at=now,
        )
        order.items = [
            OrderItem(
                product_id=product.id,
                product_name=product.name,
                product_description=product.description,
                product_price=price,
                quantity=item.quantity,
                subtotal=line_total,
                options=item.selected_options,
                observations=item.observations,
                created_at=now,
            )
            for product, item, price, line_total in lines
        ]
        self.orders.add(order)
        await self.session.flush()

        if coupon is not None:
            await self.coupons.redeem(coupon)

        await self.customers.record_order(customer.id, total, now)

        return order

    # ==========================================
    # READ
    # ==========================================

    async def get_order(self, order_id: str, with_items: bool = False) -> Order:
        order = await self.orders.get_by_id(order_id, with_items=with_items)
        if order is None:
            raise OrderNotFoundError()
        return order

    async def list_orders(self, limit: int = 100) -> List[Order]:
        establishment = await self.get_establishment()
        return await self.orders.list_for_establishment(establishment.id, limit=limit)

    async def list_customer_orders(self, customer_id: str) -> List[Order]:
        return await self.orders.list_for_customer(customer_id)

    # ==========================================
    # BACK OFFICE
    # ==========================================

    async def update_status(self, order_id: str, new_status: OrderStatus) -> Order:
        """
        Move an order along the kitchen flow.

        - forward only (CONFIRMED → PREPARING → ...), or CANCELLED
        - the write is conditional on the status we just read:
          if a payment webhook moved the order in between → StatusConflict (409)
        """
        order = await self.get_order(order_id)
        current = order.status

        if not can_transition(current, new_status):
            raise InvalidStatusTransition(
                f"Transição inválida: {current.value} → {new_status.value}"
            )

        changed = await self.orders.transition_status(order.id, current, new_status)
        await self.session.commit()

        if not changed:
            logger.warning(
                "order_status_conflict",
                order_id=order.id,
                expected=current.value,
                requested=new_status.value
            )
            raise StatusConflict("O pedido foi alterado por outra operação, recarregue e tente novamente")

        order = await self.get_order(order.id)

        await self.broadcaster.publish(
            [ADMIN_TOPIC, order_topic(order.id)],
            {
                "type": "ORDER_STATUS_UPDATE",
                "orderId": order.id,
                "orderNumber": order.order_number,
                "status": order.status.value,
                "paymentStatus": order.payment_status.value,
            },
        )
        return order

    async def dashboard_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Example:
            {"todayOrders": 12, "todayRevenue": "1234.50",
             "totalCustomers": 80, "averageTicket": "102.88"}
        """
        establishment = await self.get_establishment()
        now = now or utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

        today = await self.orders.stats_since(establishment.id, start_of_day)
        month = await self.orders.stats_since(establishment.id, start_of_day - timedelta(days=30))
        customers = await self.customers.count()

        revenue = money(today["revenue"])
        average = money(revenue / today["count"]) if today["count"] else ZERO

        return {
            "todayOrders": today["count"],
            "todayRevenue": str(revenue),
            "averageTicket": str(average),
            "last30DaysOrders": month["count"],
            "last30DaysRevenue": str(money(month["revenue"])),
            "totalCustomers": customers,
        }
