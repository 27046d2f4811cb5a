# src/folio_shield/main.py
"""Main entry point for the Folio Shield application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from folio_shield.api.errors import register_exception_handlers
from folio_shield.api.v1 import presence_router, system_router, visitors_router
from folio_shield.core.logging import setup_logging
from folio_shield.core.settings import settings
from folio_shield.db.session import DatabaseUnavailableError, check_connection, create_tables
from folio_shield.security.maintenance import SecurityMaintenanceWorker
from folio_shield.security.middleware import SecurityMiddleware
from folio_shield.security.pipeline import SecurityState, build_pipeline
from folio_shield.services.presence import PresenceReconciler, get_presence_hub

setup_logging(settings)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Portfolio backend: request defense pipeline and live visitor presence",
    version=settings.app_version,
)

security_state = SecurityState.from_settings(settings)
security_pipeline = build_pipeline(settings, security_state)
app.state.security = security_state
app.state.security_pipeline = security_pipeline

# Middleware added last runs first: CORS, then compression, then the security pipeline.
app.add_middleware(
    SecurityMiddleware,
    pipeline=security_pipeline,
    max_body_bytes=settings.max_json_body_bytes,
)
app.add_middleware(GZipMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods_list,
    allow_headers=settings.cors_allow_headers_list,
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
)

register_exception_handlers(app)

# Include API routers
app.include_router(visitors_router, prefix="/api")
app.include_router(system_router)
app.include_router(system_router, prefix="/api")
app.include_router(presence_router)


@app.on_event("startup")
async def on_startup() -> None:
    try:
        check_connection()
    except DatabaseUnavailableError:
        logger.critical("Database unavailable at startup; exiting")
        raise SystemExit(1) from None
    create_tables()

    reconciler = PresenceReconciler(get_presence_hub())
    await reconciler.start()
    app.state.presence_reconciler = reconciler

    maintenance = SecurityMaintenanceWorker(
        security_state,
        settings.security_cleanup_interval_seconds,
    )
    await maintenance.start()
    app.state.security_maintenance = maintenance
    logger.info("%s %s started (%s)", settings.app_name, settings.app_version, settings.environment)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    for attr in ("presence_reconciler", "security_maintenance"):
        worker = getattr(app.state, attr, None)
        if worker:
            await worker.stop()
    await security_state.close()


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("folio_shield.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
