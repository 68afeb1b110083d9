from fastapi import APIRouter

from lastmile.api.v1.endpoints.health import router as health_router
from lastmile.api.v1.endpoints.delivery_requests import router as delivery_requests_router
from lastmile.api.v1.endpoints.driver import router as driver_router
from lastmile.api.v1.endpoints.admin import router as admin_router
from lastmile.api.v1.endpoints.callbacks import router as callbacks_router


router = APIRouter(prefix="/v1")
router.include_router(health_router, tags=["health"])
router.include_router(delivery_requests_router, tags=["delivery-requests"])
router.include_router(driver_router, tags=["driver"])
router.include_router(admin_router, tags=["admin"])
router.include_router(callbacks_router, tags=["callbacks"])
