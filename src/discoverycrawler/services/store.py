"""JSON-backed stores for crawler sources and crawl jobs."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from discoverycrawler.blobstore import read_json, write_json
from discoverycrawler.errors import SourceNotFoundError
from discoverycrawler.models import CrawlerSource, CrawlJob, JobStatus, utcnow

__all__ = ["JobNotFoundError", "JobStore", "SourceStore"]

logger = logging.getLogger(__name__)

SOURCES_FILENAME = "sources.json"
JOBS_FILENAME = "jobs.json"
MAX_STORED_JOBS = 5000
ORPHANED_JOB_MESSAGE = "Job interrupted by service restart"

_EARLIEST = datetime.min.replace(tzinfo=UTC)


class JobNotFoundError(KeyError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")

    def __str__(self) -> str:
        return self.args[0]


def _blob_path(blob_root: Path | str | None, filename: str) -> Optional[Path]:
    return Path(blob_root) / filename if blob_root is not None else None


class SourceStore:
    """Registered sources; the admin API writes them, the scheduler reads them."""

    def __init__(self, blob_root: Path | str | None = None) -> None:
        self._path = _blob_path(blob_root, SOURCES_FILENAME)
        self._lock = threading.Lock()
        self._sources: Dict[str, CrawlerSource] = {}
        if self._path is not None:
            for raw in read_json(self._path, default=[]):
                source = CrawlerSource.model_validate(raw)
                self._sources[source.id] = source

    def _persist(self) -> None:
        if self._path is None:
            return
        write_json(self._path, [source.model_dump(mode="json") for source in self._sources.values()])

    def list(self, *, enabled: bool | None = None) -> List[CrawlerSource]:
        with self._lock:
            sources = [source.model_copy() for source in self._sources.values()]
        if enabled is not None:
            sources = [source for source in sources if source.enabled == enabled]
        return sorted(sources, key=lambda source: source.created_at)

    def get(self, source_id: str) -> CrawlerSource:
        with self._lock:
            source = self._sources.get(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source.model_copy()

    def add(self, source: CrawlerSource) -> CrawlerSource:
        with self._lock:
            if source.id in self._sources:
                raise ValueError(f"Source already exists: {source.id}")
            self._sources[source.id] = source.model_copy()
            self._persist()
        logger.info("Registered %s source %s (%s)", source.type.value, source.name, source.url)
        return source.model_copy()

    def update(self, source_id: str, changes: Mapping[str, Any]) -> CrawlerSource:
        """Apply a partial update; invalid values raise :class:`ValueError`."""

        with self._lock:
            current = self._sources.get(source_id)
            if current is None:
                raise SourceNotFoundError(source_id)
            data = current.model_dump()
            data.update(changes)
            data.update(id=source_id, created_at=current.created_at, updated_at=utcnow())
            try:
                updated = CrawlerSource.model_validate(data)
            except ValidationError as exc:
                raise ValueError(str(exc)) from exc
            self._sources[source_id] = updated
            self._persist()
        return updated.model_copy()

    def delete(self, source_id: str) -> None:
        with self._lock:
            if self._sources.pop(source_id, None) is None:
                raise SourceNotFoundError(source_id)
            self._persist()
        logger.info("Deleted source %s", source_id)

    def seed(self, sources: Iterable[CrawlerSource]) -> int:
        """Add configured sources that are not stored yet; returns how many were added."""

        added = 0
        with self._lock:
            for source in sources:
                if source.id not in self._sources:
                    self._sources[source.id] = source.model_copy()
                    added += 1
            if added:
                self._persist()
        if added:
            logger.info("Seeded %d sources from configuration", added)
        return added

    def due(self, now: datetime | None = None) -> List[CrawlerSource]:
        """Enabled sources whose ``next_crawl_at`` has passed, earliest due first."""

        now = now or utcnow()
        due = [source for source in self.list(enabled=True) if source.is_due(now)]
        return sorted(due, key=lambda source: source.next_crawl_at or _EARLIEST)

    def mark_crawled(self, source_id: str, *, last_crawled_at: datetime, next_crawl_at: datetime) -> CrawlerSource:
        with self._lock:
            current = self._sources.get(source_id)
            if current is None:
                raise SourceNotFoundError(source_id)
            updated = current.model_copy(
                update={"last_crawled_at": last_crawled_at, "next_crawl_at": next_crawl_at}
            )
            self._sources[source_id] = updated
            self._persist()
        return updated.model_copy()


class JobStore:
    """Crawl job records, newest first. Finished jobs beyond ``max_jobs`` are pruned."""

    def __init__(self, blob_root: Path | str | None = None, *, max_jobs: int = MAX_STORED_JOBS) -> None:
        self._path = _blob_path(blob_root, JOBS_FILENAME)
        self._max_jobs = max_jobs
        self._lock = threading.Lock()
        self._jobs: Dict[str, CrawlJob] = {}
        if self._path is not None:
            for raw in read_json(self._path, default=[]):
                job = CrawlJob.model_validate(raw)
                self._jobs[job.id] = job

    def _persist(self) -> None:
        if len(self._jobs) > self._max_jobs:
            finished = sorted(
                (job for job in self._jobs.values() if job.is_finished), key=lambda job: job.created_at
            )
            for job in finished[: len(self._jobs) - self._max_jobs]:
                del self._jobs[job.id]
        if self._path is None:
            return
        write_json(self._path, [job.model_dump(mode="json") for job in self._jobs.values()])

    def create(self, source_id: str) -> CrawlJob:
        job = CrawlJob(source_id=source_id)
        with self._lock:
            self._jobs[job.id] = job.model_copy()
            self._persist()
        return job

    def save(self, job: CrawlJob) -> CrawlJob:
        with self._lock:
            self._jobs[job.id] = job.model_copy()
            self._persist()
        return job

    def get(self, job_id: str) -> CrawlJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.model_copy()

    def list(
        self,
        *,
        source_id: str | None = None,
        status: JobStatus | None = None,
        limit: int | None = None,
    ) -> List[CrawlJob]:
        with self._lock:
            jobs = [job.model_copy() for job in reversed(self._jobs.values())]
        if source_id is not None:
            jobs = [job for job in jobs if job.source_id == source_id]
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit] if limit is not None else jobs

    def fail_orphans(self, message: str = ORPHANED_JOB_MESSAGE) -> int:
        """Mark jobs a previous process left ``running`` or ``pending`` as failed."""

        now = utcnow()
        failed = 0
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if job.is_finished:
                    continue
                self._jobs[job_id] = job.model_copy(
                    update={"status": JobStatus.failed, "completed_at": now, "error_message": message}
                )
                failed += 1
            if failed:
                self._persist()
        if failed:
            logger.warning("Marked %d interrupted jobs as failed", failed)
        return failed
