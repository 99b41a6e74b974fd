"""
Main API router that includes all endpoint routers.
"""
from fastapi import APIRouter

from echoes_billing.app.api.endpoints import (
    health,
    session_api,
    billing_api,
)


api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(session_api.router, prefix="/session", tags=["session"])
api_router.include_router(billing_api.router, prefix="/billing", tags=["billing"])
