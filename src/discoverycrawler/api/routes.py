"""Admin API routes: source management, crawl jobs, history and statistics."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, HttpUrl

from discoverycrawler.errors import JobAlreadyRunningError, SourceNotFoundError
from discoverycrawler.models import (
    CrawlerSource,
    CrawlHistoryEntry,
    CrawlJob,
    GlobalStats,
    JobStatus,
    SourceStats,
    SourceType,
)
from discoverycrawler.runtime import CrawlerRuntime, load_runtime
from discoverycrawler.services.store import JobNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()


class SourceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: SourceType
    url: HttpUrl
    crawl_frequency_hours: float = Field(default=24, ge=1, le=168)
    topics: List[str] = Field(default_factory=list)
    enabled: bool = True
    extract_links: bool = False
    allow_external_links: bool = False


class SourceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    type: Optional[SourceType] = None
    url: Optional[HttpUrl] = None
    crawl_frequency_hours: Optional[float] = Field(default=None, ge=1, le=168)
    topics: Optional[List[str]] = None
    enabled: Optional[bool] = None
    extract_links: Optional[bool] = None
    allow_external_links: Optional[bool] = None


class StatsResponse(BaseModel):
    summary: GlobalStats
    sources: List[SourceStats] = Field(default_factory=list)


def get_runtime(request: Request) -> CrawlerRuntime:
    """Return the application's runtime, building it from configuration on first use."""

    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        try:
            runtime = load_runtime()
        except FileNotFoundError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        request.app.state.runtime = runtime
    return runtime


def _not_found(exc: KeyError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


# --------------------------------------------------------------------------- sources


@router.get("/sources", response_model=List[CrawlerSource])
async def list_sources(
    enabled: Optional[bool] = None, runtime: CrawlerRuntime = Depends(get_runtime)
) -> List[CrawlerSource]:
    return runtime.sources.list(enabled=enabled)


@router.get("/sources/{source_id}", response_model=CrawlerSource)
async def get_source(source_id: str, runtime: CrawlerRuntime = Depends(get_runtime)) -> CrawlerSource:
    try:
        return runtime.sources.get(source_id)
    except SourceNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post("/sources", response_model=CrawlerSource, status_code=status.HTTP_201_CREATED)
async def create_source(payload: SourceCreate, runtime: CrawlerRuntime = Depends(get_runtime)) -> CrawlerSource:
    source = CrawlerSource(**payload.model_dump())
    try:
        return await run_in_threadpool(runtime.sources.add, source)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.put("/sources/{source_id}", response_model=CrawlerSource)
async def update_source(
    source_id: str, payload: SourceUpdate, runtime: CrawlerRuntime = Depends(get_runtime)
) -> CrawlerSource:
    changes = payload.model_dump(exclude_unset=True)
    try:
        return await run_in_threadpool(runtime.sources.update, source_id, changes)
    except SourceNotFoundError as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.delete("/sources/{source_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_source(source_id: str, runtime: CrawlerRuntime = Depends(get_runtime)) -> Response:
    try:
        await run_in_threadpool(runtime.sources.delete, source_id)
    except SourceNotFoundError as exc:
        raise _not_found(exc) from exc
    runtime.stats.remove(source_id)
    if runtime.scheduler.is_running(source_id):
        runtime.executor.request_cancellation(source_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --------------------------------------------------------------------------- jobs


@router.get("/jobs", response_model=List[CrawlJob])
async def list_jobs(
    source_id: Optional[str] = None,
    job_status: Optional[JobStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    runtime: CrawlerRuntime = Depends(get_runtime),
) -> List[CrawlJob]:
    return runtime.jobs.list(source_id=source_id, status=job_status, limit=limit)


@router.get("/jobs/{job_id}", response_model=CrawlJob)
async def get_job(job_id: str, runtime: CrawlerRuntime = Depends(get_runtime)) -> CrawlJob:
    try:
        return runtime.jobs.get(job_id)
    except JobNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post("/crawl/{source_id}", response_model=CrawlJob, status_code=status.HTTP_202_ACCEPTED)
async def trigger_crawl(source_id: str, runtime: CrawlerRuntime = Depends(get_runtime)) -> CrawlJob:
    """Queue an immediate crawl of one source and return the pending job."""

    try:
        return await run_in_threadpool(runtime.scheduler.trigger, source_id)
    except SourceNotFoundError as exc:
        raise _not_found(exc) from exc
    except JobAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


# --------------------------------------------------------------------------- history and stats


@router.get("/history/{source_id}", response_model=List[CrawlHistoryEntry])
async def list_history(
    source_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: CrawlerRuntime = Depends(get_runtime),
) -> List[CrawlHistoryEntry]:
    try:
        runtime.sources.get(source_id)
    except SourceNotFoundError as exc:
        raise _not_found(exc) from exc
    return runtime.ledger.entries(source_id, limit=limit)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(runtime: CrawlerRuntime = Depends(get_runtime)) -> StatsResponse:
    return StatsResponse(summary=runtime.stats.summary(), sources=runtime.stats.all())


@router.get("/stats/{source_id}", response_model=SourceStats)
async def get_source_stats(source_id: str, runtime: CrawlerRuntime = Depends(get_runtime)) -> SourceStats:
    try:
        runtime.sources.get(source_id)
    except SourceNotFoundError as exc:
        raise _not_found(exc) from exc
    return runtime.stats.get(source_id)
