# app/api/routes/admin.py

from fastapi import APIRouter, Depends

from app.api.dependencies import get_order_service, require_admin
from app.schemas import EstablishmentOut
from app.services.orders import OrderService

router = APIRouter(tags=["admin"])


@router.get("/establishment")
async def get_establishment(service: OrderService = Depends(get_order_service)):
    """Public data of the restaurant (name, delivery fee, minimum order...)."""
    establishment = await service.get_establishment()
    return EstablishmentOut.model_validate(establishment).to_json()


@router.get("/dashboard/stats", dependencies=[Depends(require_admin)])
async def dashboard_stats(service: OrderService = Depends(get_order_service)):
    return await service.dashboard_stats()
