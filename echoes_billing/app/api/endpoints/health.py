"""
Health check endpoints.
"""
from fastapi import APIRouter
from typing import Dict, Any

from echoes_billing.core.config.general_config import settings
from echoes_billing.core.config.store_config import AppleStoreConfig, GooglePlayConfig

router = APIRouter()


@router.get("/")
async def health_check() -> Dict[str, Any]:
    """
    Health check endpoint.
    """
    return {
        "status": "healthy",
        "message": "Service is running",
        "service": "echoes-billing-api"
    }


@router.get("/detailed")
async def detailed_health_check() -> Dict[str, Any]:
    """
    Detailed health check endpoint.
    """
    return {
        "status": "healthy",
        "message": "Service is running",
        "service": "echoes-billing-api",
        "version": settings.VERSION,
        "environment": "development" if settings.DEBUG else "production",
        "entitlement_store": settings.ENTITLEMENT_STORE,
        "apple_configured": AppleStoreConfig.is_configured(),
        "google_configured": GooglePlayConfig.is_configured(),
    }
