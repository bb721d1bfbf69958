"""Tick-driven dispatch of due sources onto a bounded pool of crawl workers."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional

from discoverycrawler.errors import JobAlreadyRunningError
from discoverycrawler.models import CrawlerSource, CrawlJob, utcnow
from discoverycrawler.services.crawler import CrawlJobExecutor
from discoverycrawler.services.store import JobStore, SourceStore

__all__ = ["CrawlScheduler"]

logger = logging.getLogger(__name__)


class CrawlScheduler:
    """Wakes every ``tick_interval`` seconds and dispatches due sources.

    At most ``max_concurrent_jobs`` jobs run at once. A source that is already
    running is never dispatched again, and when a job finishes its slot is
    refilled with the next due source without waiting for the next tick.
    """

    def __init__(
        self,
        executor: CrawlJobExecutor,
        sources: SourceStore,
        jobs: JobStore,
        *,
        max_concurrent_jobs: int = 5,
        tick_interval: float = 900.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._executor = executor
        self._sources = sources
        self._jobs = jobs
        self._max_concurrent_jobs = max_concurrent_jobs
        self._tick_interval = tick_interval
        self._clock = clock

        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._running: Dict[str, str] = {}
        self._futures: Dict[str, Future] = {}
        self._dispatched: List[str] = []
        self._pool: Optional[ThreadPoolExecutor] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def max_concurrent_jobs(self) -> int:
        return self._max_concurrent_jobs

    def running_sources(self) -> List[str]:
        with self._lock:
            return list(self._running)

    def is_running(self, source_id: str) -> bool:
        with self._lock:
            return source_id in self._running

    # ------------------------------------------------------------------ lifecycle

    def _ensure_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self._max_concurrent_jobs, thread_name_prefix="crawl-job"
            )
        return self._pool

    def start(self) -> None:
        if self.running:
            return
        self._jobs.fail_orphans()
        self._stop.clear()
        self._executor.reset()
        with self._lock:
            self._ensure_pool()
        self._thread = threading.Thread(target=self._loop, name="crawl-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            "Scheduler started: tick every %ss, up to %d concurrent jobs",
            self._tick_interval,
            self._max_concurrent_jobs,
        )

    def stop(self, *, wait: bool = True, timeout: float | None = None) -> None:
        """Stop ticking and cancel running jobs at their next candidate boundary."""

        self._stop.set()
        self._executor.cancel_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def join(self, timeout: float | None = None) -> None:
        """Block until the tick loop exits or ``timeout`` elapses."""

        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop.wait(self._tick_interval)

    # ------------------------------------------------------------------ dispatch

    def tick(self, now: datetime | None = None) -> List[CrawlJob]:
        """Dispatch due sources into free slots; the rest wait for a slot or the next tick."""

        now = now or self._clock()
        dispatched: List[CrawlJob] = []
        deferred = 0
        for source in self._sources.due(now):
            with self._lock:
                if self._stop.is_set():
                    break
                if source.id in self._running or not self._still_due(source.id, now):
                    continue
                if len(self._running) >= self._max_concurrent_jobs:
                    deferred += 1
                    continue
                dispatched.append(self._dispatch_locked(source))

        if dispatched or deferred:
            logger.info("Tick: dispatched %d sources, %d deferred", len(dispatched), deferred)
        return dispatched

    def _still_due(self, source_id: str, now: datetime) -> bool:
        """Re-read the source; a job that just finished has moved its next_crawl_at."""

        try:
            return self._sources.get(source_id).is_due(now)
        except KeyError:
            return False

    def trigger(self, source_id: str) -> CrawlJob:
        """Start a crawl of one source now, outside the normal tick."""

        source = self._sources.get(source_id)
        with self._lock:
            if source.id in self._running:
                raise JobAlreadyRunningError(source.id)
            job = self._dispatch_locked(source)
        logger.info("Manually triggered crawl of %s as job %s", source.name, job.id)
        return job

    def _dispatch_locked(self, source: CrawlerSource) -> CrawlJob:
        if self._stop.is_set():
            raise RuntimeError("Scheduler has been stopped")
        job = self._jobs.create(source.id)
        self._running[source.id] = job.id
        self._dispatched.append(job.id)
        future = self._ensure_pool().submit(self._executor.run, source, job.model_copy())
        self._futures[job.id] = future
        future.add_done_callback(
            lambda done, source_id=source.id, job_id=job.id: self._finished(source_id, job_id, done)
        )
        return job

    def _finished(self, source_id: str, job_id: str, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Job %s for source %s raised", job_id, source_id, exc_info=exc)

        with self._lock:
            self._running.pop(source_id, None)
            self._futures.pop(job_id, None)
            if not self._running:
                self._idle.notify_all()

        if not self._stop.is_set() and self.running:
            # Refill the freed slot within the current tick window.
            try:
                self.tick()
            except RuntimeError:
                logger.debug("Pool shut down before the freed slot could be refilled")

    # ------------------------------------------------------------------ one-shot helpers

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._running, timeout)

    def wait_for(self, job_id: str, timeout: float | None = None) -> CrawlJob:
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout)
        return self._jobs.get(job_id)

    def run_due_once(self, now: datetime | None = None, *, timeout: float | None = None) -> List[CrawlJob]:
        """Crawl every due source, at most ``max_concurrent_jobs`` at a time, and wait for all of them."""

        with self._lock:
            start = len(self._dispatched)
        now = now or self._clock()
        self.tick(now)
        while True:
            if not self.wait_idle(timeout):
                break
            # Slots freed by finished jobs are refilled here since no tick loop runs.
            if not self.tick(now):
                break
        with self._lock:
            job_ids = self._dispatched[start:]
        return [self._jobs.get(job_id) for job_id in job_ids]
