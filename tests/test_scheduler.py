from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from discoverycrawler.config import AppConfig
from discoverycrawler.errors import JobAlreadyRunningError, SourceNotFoundError
from discoverycrawler.models import CrawlerSource, JobStatus, SourceType, utcnow
from discoverycrawler.runtime import build_runtime
from discoverycrawler.services.scheduler import CrawlScheduler
from discoverycrawler.services.store import JobStore, SourceStore


class FakeExecutor:
    """Executor stand-in that optionally blocks until released and tracks concurrency."""

    def __init__(self, sources: SourceStore, jobs: JobStore, gate: threading.Event | None = None) -> None:
        self.sources = sources
        self.jobs = jobs
        self.gate = gate
        self.runs = []
        self.active = 0
        self.max_active = 0
        self.cancelled = False
        self._lock = threading.Lock()

    def run(self, source, job):
        with self._lock:
            self.runs.append(source.id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if self.gate is not None:
            self.gate.wait(5)
        job.status = JobStatus.completed
        job.completed_at = utcnow()
        self.jobs.save(job)
        self.sources.mark_crawled(
            source.id, last_crawled_at=job.completed_at, next_crawl_at=job.completed_at + timedelta(hours=1)
        )
        with self._lock:
            self.active -= 1
        return job

    def cancel_all(self) -> None:
        self.cancelled = True

    def reset(self) -> None:
        self.cancelled = False


def _stores(count: int):
    sources = SourceStore()
    now = utcnow()
    for index in range(count):
        sources.add(
            CrawlerSource(
                name=f"Source {index}",
                type=SourceType.rss,
                url=f"https://site{index}.example.com/feed",
                next_crawl_at=now - timedelta(minutes=count - index),
            )
        )
    return sources, JobStore()


def test_tick_respects_ceiling_and_skips_running_sources() -> None:
    sources, jobs = _stores(3)
    gate = threading.Event()
    executor = FakeExecutor(sources, jobs, gate)
    scheduler = CrawlScheduler(executor, sources, jobs, max_concurrent_jobs=2)
    try:
        first = scheduler.tick()
        assert len(first) == 2
        assert scheduler.tick() == []
        assert sorted(scheduler.running_sources()) == sorted(job.source_id for job in first)

        gate.set()
        assert scheduler.wait_idle(timeout=5)

        third = scheduler.tick()
        assert len(third) == 1
        assert scheduler.wait_idle(timeout=5)
    finally:
        scheduler.stop()

    assert sorted(executor.runs) == sorted(source.id for source in sources.list())
    # Earliest due source goes first.
    assert first[0].source_id == sources.list()[0].id


def test_run_due_once_drains_every_due_source_within_the_ceiling() -> None:
    sources, jobs = _stores(5)
    executor = FakeExecutor(sources, jobs)
    scheduler = CrawlScheduler(executor, sources, jobs, max_concurrent_jobs=2)
    try:
        finished = scheduler.run_due_once(timeout=5)
    finally:
        scheduler.stop()

    assert len(finished) == 5
    assert all(job.status == JobStatus.completed for job in finished)
    assert len(set(executor.runs)) == 5
    assert executor.max_active <= 2
    assert sources.due() == []


def test_trigger_rejects_unknown_and_running_sources() -> None:
    sources, jobs = _stores(1)
    gate = threading.Event()
    scheduler = CrawlScheduler(FakeExecutor(sources, jobs, gate), sources, jobs)
    source_id = sources.list()[0].id
    try:
        with pytest.raises(SourceNotFoundError):
            scheduler.trigger("missing")

        job = scheduler.trigger(source_id)
        assert job.status == JobStatus.pending
        with pytest.raises(JobAlreadyRunningError):
            scheduler.trigger(source_id)

        gate.set()
        assert scheduler.wait_for(job.id, timeout=5).status == JobStatus.completed
    finally:
        scheduler.stop()


def test_start_fails_orphaned_jobs_and_stop_cancels() -> None:
    sources, jobs = _stores(0)
    orphan = jobs.create("gone")
    orphan.status = JobStatus.running
    jobs.save(orphan)
    executor = FakeExecutor(sources, jobs)
    scheduler = CrawlScheduler(executor, sources, jobs, tick_interval=3600)

    scheduler.start()
    assert scheduler.running
    scheduler.stop()

    assert not scheduler.running
    assert executor.cancelled
    assert jobs.get(orphan.id).status == JobStatus.failed


def test_trigger_runs_the_real_executor(web, settings) -> None:
    web.add(
        "https://blog.example.com/feed.xml",
        '<?xml version="1.0"?><rss><channel><item><title>Hello</title>'
        "<link>https://blog.example.com/hello</link></item></channel></rss>",
        content_type="application/rss+xml",
    )
    web.add("https://blog.example.com/hello", "<html><body><h1>Hello</h1></body></html>")
    source = CrawlerSource(name="Blog", type=SourceType.rss, url="https://blog.example.com/feed.xml")
    runtime = build_runtime(AppConfig(settings=settings, sources=[source]), blob_root=None, session=web, environ={})
    try:
        job = runtime.scheduler.trigger(source.id)
        finished = runtime.scheduler.wait_for(job.id, timeout=5)
        assert runtime.scheduler.wait_idle(timeout=5)
    finally:
        runtime.scheduler.stop()

    assert finished.status == JobStatus.completed
    assert finished.items_submitted == 1
    assert not runtime.scheduler.is_running(source.id)


def test_nothing_is_dispatched_after_stop() -> None:
    sources, jobs = _stores(2)
    executor = FakeExecutor(sources, jobs)
    scheduler = CrawlScheduler(executor, sources, jobs)

    scheduler.stop()

    assert scheduler.tick() == []
    with pytest.raises(RuntimeError):
        scheduler.trigger(sources.list()[0].id)
    assert executor.runs == []
    assert jobs.list() == []
