"""FastAPI application entrypoint.

Configures CORS, includes routers, initializes Sentry and exposes a
healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import attribution as attribution_router
from .routers import contacts as contacts_router
from .routers import webhooks as webhooks_router
from .telemetry import init_observability

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    app = FastAPI(
        title="leadgraph API",
        description="""
        Identity resolution and attribution engine.

        This API provides endpoints for:
        - CRM webhooks (contacts, payments, appointments)
        - Last-touch attribution per contact and per ad / adset / campaign
        - Duplicate contact statistics and cleanup
        - Ad touchpoint replacement for the ad-platform sync
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhooks_router.router)
    app.include_router(attribution_router.router)
    app.include_router(contacts_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    status = init_observability()
    logger.info(f"[STARTUP] Observability: {status}")

    return app


app = create_app()
