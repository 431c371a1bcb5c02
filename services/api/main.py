"""
FastAPI application exposing one site's migration orchestrator.

The partner site talks to this API to read operation status (readiness
polling) and operators use it in place of the CLI.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import psutil

from config import CONFIG
from core.service import MigrationService
from logger import get_logger
from services.api.routers import cutover, jobs, maintenance, operations, replication
from services.api.schemas import HealthResponse

log = get_logger(__name__)


def create_app(service: Optional[MigrationService] = None) -> FastAPI:
    """
    Build the application. When *service* is given (tests, embedding) the
    lifespan neither connects nor closes anything.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = service is None
        log.info("Starting migration API for site %s...", CONFIG.coordination.site_name)
        if owned:
            try:
                app.state.service = MigrationService.from_config()
                app.state.service.initialize_metadata()
                log.info("Data and metadata databases connected")
            except Exception as e:
                log.error("Failed to initialize services: %s", e)
                raise
        else:
            app.state.service = service

        yield

        log.info("Shutting down migration API...")
        if owned:
            try:
                app.state.service.close()
                log.info("Connections closed successfully")
            except Exception as e:
                log.error("Error during shutdown: %s", e)

    app = FastAPI(
        title="Table Migration Orchestrator API",
        description="Coordinated archive/migrate/cutover of tables across a replicated site pair",
        version=CONFIG.app_version,
        lifespan=lifespan,
    )
    if service is not None:
        app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(operations.router)
    app.include_router(jobs.router)
    app.include_router(replication.router)
    app.include_router(cutover.router)
    app.include_router(maintenance.router)

    @app.get("/", tags=["root"])
    def root():
        return {
            "service": CONFIG.app_name,
            "version": CONFIG.app_version,
            "site": app.state.service.site_name,
            "status": "operational",
        }

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    def health_check():
        """Connectivity of both databases plus process memory."""
        svc: MigrationService = app.state.service
        data_healthy = False
        metadata_healthy = False
        try:
            data_healthy = svc.db.is_connected
        except Exception as e:
            log.error("Data DB health check failed: %s", e)
        try:
            metadata_healthy = svc.metadata_healthy()
        except Exception as e:
            log.error("Metadata DB health check failed: %s", e)

        memory_mb = psutil.Process().memory_info().rss / 1024 / 1024
        return HealthResponse(
            status="healthy" if (data_healthy and metadata_healthy) else "unhealthy",
            timestamp=datetime.now(timezone.utc),
            site_name=svc.site_name,
            data_db=data_healthy,
            metadata_db=metadata_healthy,
            memory_mb=round(memory_mb, 2),
            forwarding_failures=svc.forwarding_failures().total,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.api.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
