from fastapi import APIRouter

from marketplace.api.v1.endpoints.health import router as health_router
from marketplace.api.v1.endpoints.webhooks import router as webhooks_router
from marketplace.api.v1.endpoints.listings import router as listings_router
from marketplace.api.v1.endpoints.me import router as me_router
from marketplace.api.v1.endpoints.admin import router as admin_router
from marketplace.api.v1.endpoints.payments import router as payments_router


router = APIRouter(prefix="/v1")
router.include_router(health_router, tags=["health"])
router.include_router(webhooks_router, tags=["webhooks"])
router.include_router(listings_router, tags=["listings"])
router.include_router(me_router, tags=["me"])
router.include_router(admin_router, tags=["admin"])
router.include_router(payments_router, tags=["payments"])
