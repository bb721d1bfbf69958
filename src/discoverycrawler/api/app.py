"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from discoverycrawler.api.routes import get_runtime, router
from discoverycrawler.runtime import CrawlerRuntime, load_runtime

logger = logging.getLogger(__name__)

AUTOSTART_ENV_VAR = "CRAWLER_AUTOSTART"


class HealthResponse(BaseModel):
    status: str = "ok"
    scheduler_running: bool = False
    running_jobs: int = 0


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def create_app(runtime: CrawlerRuntime | None = None, *, autostart: bool | None = None) -> FastAPI:
    """Create the admin API.

    ``runtime`` is built lazily from the configuration file when omitted. The
    scheduler is started with the application when ``autostart`` is true, or,
    if ``autostart`` is ``None``, when ``CRAWLER_AUTOSTART`` is set.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        should_start = _truthy(os.environ.get(AUTOSTART_ENV_VAR)) if autostart is None else autostart
        scheduler = None
        if should_start:
            if app.state.runtime is None:
                app.state.runtime = await run_in_threadpool(load_runtime)
            scheduler = app.state.runtime.scheduler
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                await run_in_threadpool(scheduler.stop)

    app = FastAPI(
        title="Discovery Crawler",
        description="Admin API for the content-discovery crawler",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.include_router(router, prefix="/api")

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        current = request.app.state.runtime
        if current is None:
            return HealthResponse()
        return HealthResponse(
            scheduler_running=current.scheduler.running,
            running_jobs=len(current.scheduler.running_sources()),
        )

    return app


app = create_app()

__all__ = ["HealthResponse", "app", "create_app", "get_runtime"]
