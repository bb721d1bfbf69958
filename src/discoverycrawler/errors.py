"""Exception taxonomy for the crawl engine."""

from __future__ import annotations

from enum import Enum


class CrawlerError(Exception):
    """Base class for every error raised by the crawler."""


class ParseError(CrawlerError):
    """The feed, sitemap or page could not be turned into candidates at all."""


class FetchErrorKind(str, Enum):
    robots_disallowed = "robots_disallowed"
    http_status = "http_status"
    network = "network"
    timeout = "timeout"


class FetchError(CrawlerError):
    """A single request could not produce a usable response."""

    def __init__(self, url: str, kind: FetchErrorKind, detail: str = "", *, status_code: int | None = None) -> None:
        self.url = url
        self.kind = kind
        self.status_code = status_code
        message = f"{kind.value}: {url}"
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class SubmissionError(CrawlerError):
    """The content-intake service could not be reached or answered unexpectedly."""


class SourceNotFoundError(CrawlerError, KeyError):
    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        super().__init__(f"Source not found: {source_id}")

    def __str__(self) -> str:
        return self.args[0]


class JobAlreadyRunningError(CrawlerError):
    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        super().__init__(f"Source {source_id} is already being crawled")


__all__ = [
    "CrawlerError",
    "FetchError",
    "FetchErrorKind",
    "JobAlreadyRunningError",
    "ParseError",
    "SourceNotFoundError",
    "SubmissionError",
]
