"""
API Routes
"""
from fastapi import APIRouter

from relay.api.routes.admin import router as admin_router

router = APIRouter()

router.include_router(admin_router, prefix="/admin", tags=["admin"])
