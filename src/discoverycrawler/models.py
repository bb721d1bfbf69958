"""Domain models shared by the crawl engine, the stores and the admin API."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, HttpUrl, computed_field


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""

    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class SourceType(str, Enum):
    rss = "rss"
    sitemap = "sitemap"
    web = "web"


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class HistoryOutcome(str, Enum):
    submitted = "submitted"
    duplicate = "duplicate"
    rejected = "rejected"
    error = "error"


class SubmissionResult(str, Enum):
    accepted = "accepted"
    rejected = "rejected"
    already_exists = "already_exists"


class CrawlerSource(BaseModel):
    """A feed, sitemap or website that the scheduler polls periodically."""

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=255, description="Human friendly source name")
    type: SourceType = Field(..., description="Which parser turns the source into candidates")
    url: HttpUrl = Field(..., description="Feed, sitemap or root page URL")
    crawl_frequency_hours: float = Field(default=24, ge=1, le=168)
    topics: List[str] = Field(default_factory=list, description="Topics merged into every submission")
    enabled: bool = True
    extract_links: bool = Field(
        default=False,
        description=(
            "Treat an RSS source as a link aggregator: candidates are the external links "
            "embedded in each entry instead of the entry itself."
        ),
    )
    allow_external_links: bool = Field(
        default=False,
        description="Let a web source propose links outside its own domain.",
    )
    next_crawl_at: Optional[datetime] = None
    last_crawled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def domain(self) -> str:
        return (urlparse(str(self.url)).hostname or "").lower()

    def is_due(self, now: datetime) -> bool:
        return self.enabled and (self.next_crawl_at is None or self.next_crawl_at <= now)


class JobCounts(BaseModel):
    items_found: int = 0
    items_submitted: int = 0
    items_duplicate: int = 0
    items_failed: int = 0
    items_skipped: int = 0


class CrawlJob(JobCounts):
    """One execution attempt against one source."""

    id: str = Field(default_factory=new_id)
    source_id: str
    status: JobStatus = JobStatus.pending
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.completed, JobStatus.failed)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class CrawlHistoryEntry(BaseModel):
    source_id: str
    normalized_url: str
    url: str
    discovered_at: datetime = Field(default_factory=utcnow)
    outcome: HistoryOutcome
    job_id: Optional[str] = None
    title: Optional[str] = None
    error_message: Optional[str] = None


class Candidate(BaseModel):
    """A URL discovered during parsing, with whatever the source said about it inline."""

    url: str
    title: Optional[str] = None
    summary: Optional[str] = None
    published_at: Optional[datetime] = None
    author: Optional[str] = None


class ExtractedMetadata(BaseModel):
    """Normalised page metadata; ``sources`` names the fallback tier behind each field."""

    url: str
    domain: str
    title: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    body_excerpt: Optional[str] = None
    word_count: Optional[int] = None
    topics: List[str] = Field(default_factory=list)
    sources: Dict[str, str] = Field(default_factory=dict)


class SourceStats(BaseModel):
    source_id: str
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    items_found: int = 0
    items_submitted: int = 0
    items_duplicate: int = 0
    items_failed: int = 0
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[JobStatus] = None
    last_run_duration_ms: Optional[int] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> float:
        return self.successful_runs / self.total_runs if self.total_runs else 0.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def submission_rate(self) -> float:
        return self.items_submitted / self.items_found if self.items_found else 0.0


class GlobalStats(BaseModel):
    sources: int = 0
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    items_found: int = 0
    items_submitted: int = 0
    items_duplicate: int = 0
    items_failed: int = 0
    last_run_at: Optional[datetime] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> float:
        return self.successful_runs / self.total_runs if self.total_runs else 0.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def submission_rate(self) -> float:
        return self.items_submitted / self.items_found if self.items_found else 0.0
