"""Service layer entry points for the discovery crawler."""

from __future__ import annotations

from .crawler import CrawlJobExecutor  # noqa: F401
from .extractor import MetadataExtractor  # noqa: F401
from .fetcher import FetchedPage, Fetcher, build_session  # noqa: F401
from .history import HistoryLedger  # noqa: F401
from .parsers import ParseContext, parse_source  # noqa: F401
from .ratelimit import RateLimiter  # noqa: F401
from .robots import RobotsPolicyCache  # noqa: F401
from .scheduler import CrawlScheduler  # noqa: F401
from .stats import StatsAggregator  # noqa: F401
from .store import JobStore, SourceStore  # noqa: F401
from .submission import SubmissionClient  # noqa: F401

__all__ = [
    "CrawlJobExecutor",
    "CrawlScheduler",
    "FetchedPage",
    "Fetcher",
    "HistoryLedger",
    "JobStore",
    "MetadataExtractor",
    "ParseContext",
    "RateLimiter",
    "RobotsPolicyCache",
    "SourceStore",
    "StatsAggregator",
    "SubmissionClient",
    "build_session",
    "parse_source",
]
