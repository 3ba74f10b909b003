"""
API Routes
"""
from fastapi import APIRouter

from guardchat.api.routes.sessions import router as sessions_router
from guardchat.api.routes.workflows import router as workflows_router
from guardchat.api.routes.admin import router as admin_router

router = APIRouter()

router.include_router(sessions_router, prefix="/sessions", tags=["Sessions"])
router.include_router(workflows_router, prefix="/workflows", tags=["Workflows"])
router.include_router(admin_router, prefix="/admin", tags=["Admin"])
