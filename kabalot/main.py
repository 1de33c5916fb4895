"""
FastAPI application entrypoint for the receipt ingestion service.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from kabalot.api.routes import router as api_router
from kabalot.core.config import get_settings
from kabalot.core.logging import configure_logging
from kabalot.dependencies import get_job_scheduler, get_receipt_pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    settings.input_folder.mkdir(parents=True, exist_ok=True)
    yield
    if get_job_scheduler.cache_info().currsize:
        await get_job_scheduler().shutdown()
        await get_receipt_pipeline().drain_notifications()


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Kabalot Receipt Pipeline",
        version="0.1.0",
        description="REST API for receipt ingestion, expense extraction and report generation.",
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()

__all__ = ["app", "create_app"]
