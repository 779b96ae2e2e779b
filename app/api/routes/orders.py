# app/api/routes/orders.py
"""
Order endpoints.

POST /api/orders                       → create from the cart
GET  /api/orders/{id}                  → tracking screen
GET  /api/orders/{id}/items
GET  /api/orders/customer/{customer_id}
POST /api/orders/{id}/check-payment    → "Já paguei"

Back office (X-Admin-Token):
GET  /api/orders
PUT  /api/orders/{id}/status
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.dependencies import get_order_service, get_payment_service, require_admin
from app.schemas import CreateOrderRequest, OrderItemOut, OrderStatusUpdate
from app.services.orders import OrderService, order_json
from app.services.payments import PaymentService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("")
async def create_order(
    request: CreateOrderRequest,
    service: OrderService = Depends(get_order_service),
):
    """
    Example body:
        {
            "order": {"customerName": "Maria", "customerPhone": "11987654321",
                      "deliveryAddress": "Rua A, 10", "paymentMethod": "PIX",
                      "couponCode": "PERCENT10"},
            "items": [{"productId": "p1", "quantity": 2}]
        }
    """
    order = await service.create_order(request)
    return JSONResponse(status_code=201, content=order_json(order, with_items=True))


@router.get("", dependencies=[Depends(require_admin)])
async def list_orders(limit: int = 100, service: OrderService = Depends(get_order_service)):
    orders = await service.list_orders(limit=min(max(limit, 1), 500))
    return [order_json(order, with_items=True) for order in orders]


@router.get("/customer/{customer_id}")
async def list_customer_orders(customer_id: str, service: OrderService = Depends(get_order_service)):
    orders = await service.list_customer_orders(customer_id)
    return [order_json(order, with_items=True) for order in orders]


@router.get("/{order_id}")
async def get_order(order_id: str, service: OrderService = Depends(get_order_service)):
    order = await service.get_order(order_id, with_items=True)
    return order_json(order, with_items=True)


@router.get("/{order_id}/items")
async def get_order_items(order_id: str, service: OrderService = Depends(get_order_service)):
    order = await service.get_order(order_id, with_items=True)
    return [OrderItemOut.model_validate(item).to_json() for item in order.items]


@router.put("/{order_id}/status", dependencies=[Depends(require_admin)])
async def update_order_status(
    order_id: str,
    update: OrderStatusUpdate,
    service: OrderService = Depends(get_order_service),
):
    order = await service.update_status(order_id, update.status)
    return order_json(order)


@router.post("/{order_id}/check-payment")
async def check_payment(order_id: str, service: PaymentService = Depends(get_payment_service)):
    return await service.check_order_payment(order_id)
