from fastapi import APIRouter

from storefront.app.api.v1.endpoints.products import router as products_router
from storefront.app.api.v1.endpoints.inventory import router as inventory_router
from storefront.app.api.v1.endpoints.orders import router as orders_router
from storefront.app.api.v1.endpoints.security_logs import router as security_logs_router

router = APIRouter()
router.include_router(products_router, tags=["products"])
router.include_router(inventory_router, tags=["inventory"])
router.include_router(orders_router, tags=["orders"])
router.include_router(security_logs_router, tags=["security"])
