from fastapi import APIRouter

from backend.app.api.v1.endpoints.health import router as health_router
from backend.app.api.v1.endpoints.receiving import router as receiving_router
from backend.app.api.v1.endpoints.orders import router as orders_router
from backend.app.api.v1.endpoints.admin import router as admin_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
# /orders/receiving must be matched before /orders/{order_id}
router.include_router(receiving_router, tags=["receiving"])
router.include_router(orders_router, tags=["orders"])
router.include_router(admin_router, tags=["admin"])
