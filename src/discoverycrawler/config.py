"""Configuration models and helpers for the discovery crawler."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Iterable, List, Mapping

from pydantic import BaseModel, Field, ValidationError

from discoverycrawler.models import CrawlerSource

__all__ = [
    "AppConfig",
    "CrawlerSettings",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_USER_AGENT",
    "ENV_PREFIX",
]

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "data" / "crawler.json"
DEFAULT_USER_AGENT = "DiscoveryCrawler/1.0 (+https://github.com/discovery-crawler; crawler@discovery-crawler.dev)"
ENV_PREFIX = "CRAWLER_"

DEFAULT_BLOCKED_DOMAINS = [
    "facebook.com",
    "twitter.com",
    "x.com",
    "instagram.com",
    "tiktok.com",
    "linkedin.com",
    "bit.ly",
    "tinyurl.com",
    "t.co",
    "goo.gl",
    "doubleclick.net",
    "googleadservices.com",
    "googlesyndication.com",
    "outbrain.com",
    "taboola.com",
]


class CrawlerSettings(BaseModel):
    """Process-wide knobs read once at start-up."""

    default_crawl_delay: float = Field(
        default=1.0, ge=0, description="Minimum seconds between two requests to the same domain"
    )
    max_concurrent_jobs: int = Field(default=5, ge=1, description="Crawl jobs allowed to run at once")
    request_timeout: float = Field(default=10.0, gt=0, description="Hard per-request timeout in seconds")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent sent with every request")
    tick_interval: float = Field(default=900.0, gt=0, description="Seconds between scheduler ticks")
    robots_ttl: float = Field(default=86400.0, gt=0, description="Seconds a cached robots.txt policy stays valid")
    robots_timeout: float = Field(default=5.0, gt=0)
    max_redirects: int = Field(default=5, ge=0)
    max_retries: int = Field(
        default=0,
        ge=0,
        description="Transport-level retries per request; zero keeps candidate fetches single-attempt",
    )
    recency_days: float | None = Field(
        default=30,
        description="Drop candidates dated older than this many days; None disables the window",
    )
    max_candidates_per_job: int | None = Field(default=100, ge=1)
    candidate_workers: int = Field(default=2, ge=1, description="Per-job candidate concurrency")
    schedule_jitter: float = Field(
        default=0.0, ge=0, description="Upper bound in seconds of random delay added to next_crawl_at"
    )
    failure_retry_hours: float | None = Field(
        default=None,
        gt=0,
        description="Reschedule failed sources after this many hours instead of their normal frequency",
    )
    retry_failed_candidates: bool = Field(
        default=False,
        description="Let URLs whose last outcome was an error be tried again on later runs",
    )
    aggregator_domains: List[str] = Field(
        default_factory=lambda: ["reddit.com", "redd.it", "news.ycombinator.com"],
        description="RSS sources on these domains have their entries' external links extracted",
    )
    blocked_domains: List[str] = Field(default_factory=lambda: list(DEFAULT_BLOCKED_DOMAINS))
    submission_url: str | None = Field(
        default=None,
        description="Content-intake endpoint; when unset, submissions are accepted locally (dry run)",
    )
    submission_token: str | None = None
    submission_timeout: float = Field(default=10.0, gt=0)

    @classmethod
    def with_env_overrides(
        cls, base: "CrawlerSettings | None" = None, environ: Mapping[str, str] | None = None
    ) -> "CrawlerSettings":
        """Return ``base`` with any ``CRAWLER_<FIELD>`` environment variables applied."""

        env = os.environ if environ is None else environ
        data = (base or cls()).model_dump()
        for name, field in cls.model_fields.items():
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if field.annotation in (List[str], list[str]):
                data[name] = [item.strip() for item in raw.split(",") if item.strip()]
            elif raw.strip().lower() in {"none", "null"}:
                data[name] = None
            else:
                data[name] = raw

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid crawler environment override\n{exc}") from exc


class AppConfig(BaseModel):
    """Crawler settings plus the sources seeded into the store on first start."""

    settings: CrawlerSettings = Field(default_factory=CrawlerSettings)
    sources: List[CrawlerSource] = Field(default_factory=list)

    @classmethod
    def from_file(cls, path: Path | str | None = None) -> "AppConfig":
        """Load configuration data from a JSON file."""

        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise FileNotFoundError(f"Configuration file not found: {config_path}") from exc
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in configuration file: {config_path}") from exc

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Configuration file is invalid: {config_path}\n{exc}") from exc

    def dump(self, path: Path | str | None = None) -> None:
        """Persist the configuration back to disk as JSON."""

        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(self.model_dump_json(indent=2), encoding="utf-8")

    def iter_sources(self) -> Iterable[CrawlerSource]:
        """Iterate over configured sources."""

        return iter(self.sources)
