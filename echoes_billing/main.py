"""
Main FastAPI application entry point.
"""
import os

import logfire
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from echoes_billing.app.api.api import api_router
from echoes_billing.core.config.general_config import settings
from echoes_billing.core.config.store_config import AppleStoreConfig, GooglePlayConfig

LOGFIRE_TOKEN = os.getenv("LOGFIRE_TOKEN")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logfire.configure(
        token=LOGFIRE_TOKEN,
        send_to_logfire="if-token-present",
        service_name="echoes-billing",
    )
    logfire.instrument_fastapi(app)
    AppleStoreConfig.validate(strict=False)
    GooglePlayConfig.validate(strict=False)
    logfire.info("Starting up billing API...")
    yield
    # Shutdown
    logfire.info("Shutting down billing API...")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description=settings.DESCRIPTION,
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
        lifespan=lifespan,
    )

    # Set all CORS enabled origins
    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin)
                           for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    # Include API router
    app.include_router(api_router, prefix=settings.API_PREFIX)

    return app


app = create_application()
@app.get("/")
def read_root():
    return {"message": "Echoes billing API. Visit /docs for API documentation."}
