"""
API Routes
"""
from fastapi import APIRouter

from eventrelay.api.routes.deliveries import router as deliveries_router
from eventrelay.api.routes.events import router as events_router

router = APIRouter()

router.include_router(deliveries_router, prefix="/deliveries", tags=["deliveries"])
router.include_router(events_router, prefix="/events", tags=["events"])
