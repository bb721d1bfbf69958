"""End-to-end crawl of one source: parse, filter, fetch, extract, submit, record."""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from discoverycrawler.config import CrawlerSettings
from discoverycrawler.errors import CrawlerError, FetchError, SourceNotFoundError, SubmissionError
from discoverycrawler.models import (
    Candidate,
    CrawlerSource,
    CrawlJob,
    ExtractedMetadata,
    HistoryOutcome,
    JobStatus,
    SubmissionResult,
    utcnow,
)
from discoverycrawler.services.extractor import MetadataExtractor
from discoverycrawler.services.fetcher import Fetcher
from discoverycrawler.services.history import HistoryLedger
from discoverycrawler.services.parsers import ParseContext, parse_source
from discoverycrawler.services.stats import StatsAggregator
from discoverycrawler.services.store import JobStore, SourceStore
from discoverycrawler.services.submission import SubmissionClient
from discoverycrawler.urls import host_of, normalize_url

__all__ = ["CrawlJobExecutor"]

logger = logging.getLogger(__name__)

_SUBMISSION_OUTCOMES = {
    SubmissionResult.accepted: HistoryOutcome.submitted,
    SubmissionResult.already_exists: HistoryOutcome.duplicate,
    SubmissionResult.rejected: HistoryOutcome.rejected,
}


@dataclass
class _Survivor:
    candidate: Candidate
    normalized_url: str


class CrawlJobExecutor:
    """Runs crawl jobs; safe to share between the scheduler's worker threads.

    Per-candidate failures are recorded in the ledger and counted, never
    raised. Only a failure to obtain candidates at all fails the job.
    """

    def __init__(
        self,
        *,
        settings: CrawlerSettings,
        sources: SourceStore,
        jobs: JobStore,
        ledger: HistoryLedger,
        stats: StatsAggregator,
        fetcher: Fetcher,
        submitter: SubmissionClient,
        extractor: MetadataExtractor | None = None,
        clock: Callable[[], datetime] = utcnow,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self._settings = settings
        self._sources = sources
        self._jobs = jobs
        self._ledger = ledger
        self._stats = stats
        self._fetcher = fetcher
        self._submitter = submitter
        self._extractor = extractor or MetadataExtractor()
        self._clock = clock
        self._jitter = jitter
        self._shutdown = threading.Event()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._cancel_lock = threading.Lock()

    # ------------------------------------------------------------------ cancellation

    def _cancel_event(self, source_id: str) -> threading.Event:
        with self._cancel_lock:
            return self._cancel_events.setdefault(source_id, threading.Event())

    def request_cancellation(self, source_id: str) -> None:
        """Stop the source's pending or running job at its next candidate boundary.

        The request stays in force until that job finishes.
        """

        self._cancel_event(source_id).set()

    def cancel_all(self) -> None:
        self._shutdown.set()

    def reset(self) -> None:
        """Allow jobs to run again after :meth:`cancel_all`."""

        self._shutdown.clear()

    def is_cancelled(self, source_id: str) -> bool:
        return self._shutdown.is_set() or self._cancel_event(source_id).is_set()

    # ------------------------------------------------------------------ job lifecycle

    def run(self, source: CrawlerSource, job: CrawlJob | None = None) -> CrawlJob:
        """Execute one crawl of ``source`` and return the finished job."""

        job = job or self._jobs.create(source.id)
        job.status = JobStatus.running
        job.started_at = self._clock()
        self._jobs.save(job)
        logger.info("Crawling %s (%s) as job %s", source.name, source.url, job.id)

        try:
            candidates = parse_source(source, ParseContext(fetcher=self._fetcher, settings=self._settings))
        except CrawlerError as exc:
            logger.error("Job %s for %s failed: %s", job.id, source.url, exc)
            return self._finalize(source, job, JobStatus.failed, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error while parsing %s", source.url)
            return self._finalize(source, job, JobStatus.failed, f"Unexpected error: {exc}")

        job.items_found = len(candidates)
        survivors = self._filter(source, job, candidates)
        self._jobs.save(job)

        try:
            error_message = self._process_all(source, job, survivors)
        except Exception as exc:
            logger.exception("Job %s for %s aborted", job.id, source.url)
            return self._finalize(source, job, JobStatus.failed, f"Unexpected error: {exc}")
        return self._finalize(source, job, JobStatus.completed, error_message)

    def _filter(self, source: CrawlerSource, job: CrawlJob, candidates: List[Candidate]) -> List[_Survivor]:
        """Drop ledger hits and repeats as duplicates, stale or excess candidates as skipped."""

        now = self._clock()
        cutoff = (
            now - timedelta(days=self._settings.recency_days) if self._settings.recency_days is not None else None
        )
        cap = self._settings.max_candidates_per_job
        seen: set[str] = set()
        survivors: List[_Survivor] = []

        for candidate in candidates:
            normalized = normalize_url(candidate.url)
            if normalized in seen or self._ledger.has(source.id, normalized):
                logger.debug("Already discovered %s", normalized)
                job.items_duplicate += 1
                seen.add(normalized)
                continue
            seen.add(normalized)
            if cutoff is not None and candidate.published_at is not None and candidate.published_at < cutoff:
                job.items_skipped += 1
                continue
            if cap is not None and len(survivors) >= cap:
                job.items_skipped += 1
                continue
            survivors.append(_Survivor(candidate=candidate, normalized_url=normalized))

        logger.info(
            "Job %s: %d candidates, %d new, %d duplicate, %d skipped",
            job.id,
            job.items_found,
            len(survivors),
            job.items_duplicate,
            job.items_skipped,
        )
        return survivors

    def _process_all(self, source: CrawlerSource, job: CrawlJob, survivors: List[_Survivor]) -> Optional[str]:
        if not survivors:
            return None

        with ThreadPoolExecutor(
            max_workers=self._settings.candidate_workers, thread_name_prefix=f"job-{job.id[:8]}"
        ) as pool:
            outcomes = list(pool.map(lambda survivor: self._process_safely(source, job, survivor), survivors))

        for outcome in outcomes:
            if outcome is None:
                job.items_skipped += 1
            elif outcome == HistoryOutcome.submitted:
                job.items_submitted += 1
            elif outcome == HistoryOutcome.duplicate:
                job.items_duplicate += 1
            else:
                job.items_failed += 1

        unprocessed = sum(1 for outcome in outcomes if outcome is None)
        if unprocessed:
            return f"Cancelled after {len(outcomes) - unprocessed} of {len(outcomes)} candidates"
        return None

    def _process_safely(
        self, source: CrawlerSource, job: CrawlJob, survivor: _Survivor
    ) -> Optional[HistoryOutcome]:
        try:
            return self._process(source, job, survivor)
        except Exception as exc:
            logger.exception("Unexpected error while processing %s", survivor.candidate.url)
            return self._record(
                source,
                job,
                survivor,
                HistoryOutcome.error,
                title=survivor.candidate.title,
                error=f"Unexpected error: {exc}",
            )

    def _process(self, source: CrawlerSource, job: CrawlJob, survivor: _Survivor) -> Optional[HistoryOutcome]:
        """Fetch, extract and submit one candidate, then record it. ``None`` means cancelled."""

        if self.is_cancelled(source.id):
            return None

        candidate = survivor.candidate
        try:
            page = self._fetcher.fetch(candidate.url)
        except FetchError as exc:
            logger.warning("Could not fetch %s: %s", candidate.url, exc)
            return self._record(source, job, survivor, HistoryOutcome.error, title=candidate.title, error=str(exc))

        try:
            metadata = self._extractor.extract(page, candidate)
        except Exception:
            logger.exception("Metadata extraction failed for %s", candidate.url)
            metadata = ExtractedMetadata(url=candidate.url, domain=host_of(candidate.url))
        self._merge_source_topics(source, metadata)

        try:
            result = self._submitter.submit(candidate.url, metadata)
        except SubmissionError as exc:
            logger.warning("Could not submit %s: %s", candidate.url, exc)
            return self._record(source, job, survivor, HistoryOutcome.error, title=metadata.title, error=str(exc))

        outcome = _SUBMISSION_OUTCOMES[result]
        error = "Rejected by the intake service" if outcome == HistoryOutcome.rejected else None
        return self._record(source, job, survivor, outcome, title=metadata.title, error=error)

    @staticmethod
    def _merge_source_topics(source: CrawlerSource, metadata: ExtractedMetadata) -> None:
        for topic in source.topics:
            if topic not in metadata.topics:
                metadata.topics.append(topic)

    def _record(
        self,
        source: CrawlerSource,
        job: CrawlJob,
        survivor: _Survivor,
        outcome: HistoryOutcome,
        *,
        title: str | None,
        error: str | None,
    ) -> HistoryOutcome:
        self._ledger.record(
            source.id,
            survivor.normalized_url,
            outcome,
            url=survivor.candidate.url,
            job_id=job.id,
            title=title,
            error_message=error,
        )
        return outcome

    def _next_crawl_at(self, source: CrawlerSource, completed_at: datetime, status: JobStatus) -> datetime:
        hours = source.crawl_frequency_hours
        if status == JobStatus.failed and self._settings.failure_retry_hours is not None:
            hours = self._settings.failure_retry_hours
        jitter = self._jitter() * self._settings.schedule_jitter
        return completed_at + timedelta(hours=hours, seconds=jitter)

    def _finalize(
        self, source: CrawlerSource, job: CrawlJob, status: JobStatus, error_message: str | None
    ) -> CrawlJob:
        job.status = status
        job.error_message = error_message
        job.completed_at = max(self._clock(), job.started_at or job.created_at)
        self._jobs.save(job)
        self._ledger.flush()
        with self._cancel_lock:
            self._cancel_events.pop(source.id, None)

        next_crawl_at = self._next_crawl_at(source, job.completed_at, status)
        try:
            self._sources.mark_crawled(source.id, last_crawled_at=job.completed_at, next_crawl_at=next_crawl_at)
        except SourceNotFoundError:
            logger.info("Source %s was deleted while job %s ran; not updating its stats", source.id, job.id)
        else:
            self._stats.update(source.id, job)
        logger.info(
            "Job %s %s: found=%d submitted=%d duplicate=%d failed=%d skipped=%d; next crawl at %s",
            job.id,
            status.value,
            job.items_found,
            job.items_submitted,
            job.items_duplicate,
            job.items_failed,
            job.items_skipped,
            next_crawl_at.isoformat(),
        )
        return job
