"""
Connector Hub — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import Settings, config
from connectors.credential_store import CredentialStore
from connectors.encryption import get_codec
from connectors.registry import build_registry
from connectors.routes import register_error_handlers, router as integrations_router
from connectors.service import IntegrationService
from database.helpers import init_models
from database.session import build_engine, build_session_factory

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "googleapiclient", "sqlalchemy.engine"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

_DEFAULT_STATE_SECRET = "change-me-oauth-state"


def create_app(
    settings: Settings = config,
    service: Optional[IntegrationService] = None,
) -> FastAPI:
    app = FastAPI(
        title="Connector Hub",
        version="1.0.0",
        description="Multi-tenant integration registry and credential lifecycle manager.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    # Routes
    app.include_router(integrations_router, prefix="/api/v1/integrations")

    @app.get("/api/v1/health")
    async def health_check():
        return {"status": "ok"}

    if service is not None:
        app.state.integrations = service
        return app

    @app.on_event("startup")
    async def on_startup():
        if settings.oauth_state_secret == _DEFAULT_STATE_SECRET:
            logger.warning("OAUTH_STATE_SECRET is the default value; set it before going live")

        engine = build_engine(settings.database_url)
        await init_models(engine)
        app.state.engine = engine

        logger.info("Building connector registry…")
        registry = build_registry(settings)
        await registry.initialize_all()

        store = CredentialStore(build_session_factory(engine), get_codec(settings))
        app.state.integrations = IntegrationService(registry, store, settings)

        configured = [c.provider_id for c in registry.list_configured()]
        logger.info("Configured integrations: %s", ", ".join(configured) or "none")
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
