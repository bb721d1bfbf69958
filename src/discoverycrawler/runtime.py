"""Wiring of the crawl engine's long-lived components."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import requests

from discoverycrawler.blobstore import DEFAULT_BLOB_ROOT, ensure_blob_root
from discoverycrawler.config import AppConfig, CrawlerSettings
from discoverycrawler.services.crawler import CrawlJobExecutor
from discoverycrawler.services.fetcher import Fetcher, build_session
from discoverycrawler.services.history import HistoryLedger
from discoverycrawler.services.ratelimit import RateLimiter
from discoverycrawler.services.robots import RobotsPolicyCache
from discoverycrawler.services.scheduler import CrawlScheduler
from discoverycrawler.services.stats import StatsAggregator
from discoverycrawler.services.store import JobStore, SourceStore
from discoverycrawler.services.submission import SubmissionClient

__all__ = ["CONFIG_ENV_VAR", "CrawlerRuntime", "build_runtime", "load_runtime"]

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CRAWLER_CONFIG"
BLOB_ROOT_ENV_VAR = "CRAWLER_BLOB_ROOT"

_DEFAULT = object()


@dataclass
class CrawlerRuntime:
    settings: CrawlerSettings
    sources: SourceStore
    jobs: JobStore
    ledger: HistoryLedger
    stats: StatsAggregator
    robots: RobotsPolicyCache
    rate_limiter: RateLimiter
    fetcher: Fetcher
    submitter: SubmissionClient
    executor: CrawlJobExecutor
    scheduler: CrawlScheduler


def build_runtime(
    config: AppConfig | None = None,
    *,
    blob_root: Path | str | None | object = _DEFAULT,
    session: requests.Session | None = None,
    environ: Mapping[str, str] | None = None,
) -> CrawlerRuntime:
    """Assemble every component from ``config``.

    ``blob_root`` defaults to :data:`DEFAULT_BLOB_ROOT`; ``None`` keeps all
    records in memory. ``session`` replaces the HTTP session used for crawling
    and submission, which is how tests avoid the network.
    """

    config = config or AppConfig()
    settings = CrawlerSettings.with_env_overrides(config.settings, environ)

    root: Path | None
    if blob_root is _DEFAULT:
        root = ensure_blob_root(DEFAULT_BLOB_ROOT)
    elif blob_root is None:
        root = None
    else:
        root = ensure_blob_root(blob_root)  # type: ignore[arg-type]

    http = session or build_session(settings)

    sources = SourceStore(root)
    sources.seed(config.iter_sources())
    jobs = JobStore(root)
    ledger = HistoryLedger(root, retry_failed=settings.retry_failed_candidates)
    stats = StatsAggregator(root)

    rate_limiter = RateLimiter(settings.default_crawl_delay)
    robots = RobotsPolicyCache(
        http,
        user_agent=settings.user_agent,
        ttl=settings.robots_ttl,
        timeout=settings.robots_timeout,
        rate_limiter=rate_limiter,
    )
    fetcher = Fetcher(
        http, robots, rate_limiter, timeout=settings.request_timeout, max_redirects=settings.max_redirects
    )
    submitter = SubmissionClient.from_settings(settings, session=http)
    if submitter.dry_run:
        logger.info("No submission_url configured; running in dry-run mode")

    executor = CrawlJobExecutor(
        settings=settings,
        sources=sources,
        jobs=jobs,
        ledger=ledger,
        stats=stats,
        fetcher=fetcher,
        submitter=submitter,
    )
    scheduler = CrawlScheduler(
        executor,
        sources,
        jobs,
        max_concurrent_jobs=settings.max_concurrent_jobs,
        tick_interval=settings.tick_interval,
    )
    return CrawlerRuntime(
        settings=settings,
        sources=sources,
        jobs=jobs,
        ledger=ledger,
        stats=stats,
        robots=robots,
        rate_limiter=rate_limiter,
        fetcher=fetcher,
        submitter=submitter,
        executor=executor,
        scheduler=scheduler,
    )


def load_runtime(environ: Mapping[str, str] | None = None) -> CrawlerRuntime:
    """Build the runtime from the configuration file named by ``CRAWLER_CONFIG``."""

    env = os.environ if environ is None else environ
    config = AppConfig.from_file(env.get(CONFIG_ENV_VAR) or None)
    blob_root = env.get(BLOB_ROOT_ENV_VAR) or DEFAULT_BLOB_ROOT
    return build_runtime(config, blob_root=blob_root, environ=env)
