from fastapi import APIRouter

from updates.api.routes import health, updates

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(updates.router, tags=["updates"])
