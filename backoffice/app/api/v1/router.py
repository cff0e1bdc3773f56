from fastapi import APIRouter

from backoffice.app.api.v1.endpoints.health import router as health_router
from backoffice.app.api.v1.endpoints.items import router as items_router
from backoffice.app.api.v1.endpoints.locations import router as locations_router
from backoffice.app.api.v1.endpoints.inventory import router as inventory_router
from backoffice.app.api.v1.endpoints.promo_codes import router as promo_codes_router
from backoffice.app.api.v1.endpoints.sales_orders import router as sales_orders_router
from backoffice.app.api.v1.endpoints.purchase_orders import router as purchase_orders_router
from backoffice.app.api.v1.endpoints.online_orders import router as online_orders_router
from backoffice.app.api.v1.endpoints.assemblies import router as assemblies_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(items_router, tags=["items"])
router.include_router(locations_router, tags=["locations"])
router.include_router(inventory_router, tags=["inventory"])
router.include_router(promo_codes_router, tags=["promo_codes"])
router.include_router(sales_orders_router, tags=["sales_orders"])
router.include_router(purchase_orders_router, tags=["purchase_orders"])
router.include_router(online_orders_router, tags=["online_orders"])
router.include_router(assemblies_router, tags=["assemblies"])
