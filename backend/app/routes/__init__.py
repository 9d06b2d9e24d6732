"""API route registration."""

from fastapi import APIRouter
from .answer_sheets import router as answer_sheets_router
from .flags import router as flags_router
from .incidents import router as incidents_router
from .notifications import router as notifications_router
from .staff_access import router as staff_access_router
from .ws import router as ws_router


def register_all_routes(api_router: APIRouter):
    """Include all route modules on the main API router."""
    api_router.include_router(answer_sheets_router)
    api_router.include_router(flags_router)
    api_router.include_router(incidents_router)
    api_router.include_router(notifications_router)
    api_router.include_router(staff_access_router)
    api_router.include_router(ws_router)
