"""
FastAPI application entrypoint for the OAuth token lifecycle service.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from oauth_lifecycle.api.routes import router as api_router
from oauth_lifecycle.core.config import get_settings
from oauth_lifecycle.core.logging import configure_logging
from oauth_lifecycle.dependencies import get_auth_context
from oauth_lifecycle.services import MetricsRecorder, TokenRefreshEngine

logger = logging.getLogger(__name__)


async def log_metrics_periodically(metrics: MetricsRecorder, interval_seconds: float) -> None:
    """Emit the metrics overview every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        metrics.log_summary()


async def refresh_expiring_periodically(
    engine: TokenRefreshEngine, interval_seconds: float, batch_size: int
) -> None:
    """Refresh tokens nearing expiry every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await engine.refresh_expiring(batch_size=batch_size)
        except Exception:  # pylint: disable=broad-except
            # Keep the schedule alive; the next pass starts from the store again.
            logger.exception("Refresh sweep failed")


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    context = get_auth_context()
    summary_task = None
    sweep_task = None
    interval = settings.metrics.summary_interval_seconds
    if interval > 0:
        summary_task = asyncio.create_task(log_metrics_periodically(context.metrics, interval))
    if settings.refresh.sweep_interval_seconds > 0:
        sweep_task = asyncio.create_task(
            refresh_expiring_periodically(
                context.engine,
                settings.refresh.sweep_interval_seconds,
                settings.refresh.sweep_batch_size,
            )
        )
    try:
        yield
    finally:
        await _cancel(sweep_task)
        await _cancel(summary_task)
        await context.aclose()
        get_auth_context.cache_clear()


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="OAuth Token Lifecycle Service",
        version="0.1.0",
        description="Token refresh, credential validation and circuit breaker status for SaaS adapters.",
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()

__all__ = [
    "app",
    "create_app",
    "lifespan",
    "log_metrics_periodically",
    "refresh_expiring_periodically",
]
