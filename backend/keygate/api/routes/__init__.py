"""API route registrations."""
from fastapi import APIRouter

from keygate.api.routes import admin, keys, usage


api_router = APIRouter()
api_router.include_router(keys.router)
api_router.include_router(usage.router)
api_router.include_router(admin.router)

__all__ = ["api_router"]
