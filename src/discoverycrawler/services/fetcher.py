"""Polite HTTP fetching: robots check and per-domain rate limit before every request, redirects included."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from discoverycrawler.config import CrawlerSettings
from discoverycrawler.errors import FetchError, FetchErrorKind
from discoverycrawler.services.ratelimit import RateLimiter
from discoverycrawler.services.robots import RobotsPolicyCache
from discoverycrawler.urls import absolute_url, host_of

__all__ = ["FetchedPage", "Fetcher", "build_session"]

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = (301, 302, 303, 307, 308)
ACCEPT_HEADER = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "application/rss+xml,application/atom+xml;q=0.9,*/*;q=0.8"
)


@dataclass
class FetchedPage:
    """A successful (2xx) response."""

    url: str
    final_url: str
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    content: bytes = b""

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", self.headers.get("content-type", ""))


def build_session(settings: CrawlerSettings) -> requests.Session:
    """Return a session carrying the crawler's identity, retry and redirect limits."""

    retry = Retry(
        total=settings.max_retries,
        connect=settings.max_retries,
        read=settings.max_retries,
        status=0,
        backoff_factor=1,
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
    )

    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": settings.user_agent,
            "Accept": ACCEPT_HEADER,
            "Accept-Language": "en-US,en;q=0.9",
            "Accept-Encoding": "gzip, deflate",
        }
    )
    session.max_redirects = settings.max_redirects
    session.mount("https://", HTTPAdapter(max_retries=retry))
    session.mount("http://", HTTPAdapter(max_retries=retry))
    return session


class Fetcher:
    """Performs every outbound request made on behalf of a crawl job."""

    def __init__(
        self,
        session: requests.Session,
        robots: RobotsPolicyCache,
        rate_limiter: RateLimiter,
        *,
        timeout: float = 10.0,
        max_redirects: int = 5,
    ) -> None:
        self._session = session
        self._robots = robots
        self._rate_limiter = rate_limiter
        self._timeout = timeout
        self._max_redirects = max_redirects

    @property
    def robots(self) -> RobotsPolicyCache:
        return self._robots

    def fetch(self, url: str) -> FetchedPage:
        """Return the 2xx response for ``url`` or raise :class:`FetchError`.

        Redirects are followed here rather than by requests, so every hop is
        checked against its own domain's robots.txt and waits for that domain's
        rate-limit slot.
        """

        current = url
        hops = 0
        while True:
            response = self._request(current)
            location = response.headers.get("Location") if response.status_code in REDIRECT_STATUSES else None
            if not location:
                break
            if hops >= self._max_redirects:
                raise FetchError(url, FetchErrorKind.network, "too many redirects")
            hops += 1
            target = absolute_url(location, current)
            if target is None:
                raise FetchError(url, FetchErrorKind.network, f"unusable redirect to {location}")
            logger.debug("%s redirected to %s", current, target)
            current = target

        if not 200 <= response.status_code < 300:
            raise FetchError(url, FetchErrorKind.http_status, status_code=response.status_code)

        # requests assumes ISO-8859-1 when the header names no charset.
        if response.encoding is None or response.encoding.lower() == "iso-8859-1":
            response.encoding = response.apparent_encoding or "utf-8"

        return FetchedPage(
            url=url,
            final_url=current,
            status_code=response.status_code,
            headers=dict(response.headers),
            text=response.text,
            content=response.content,
        )

    def _request(self, url: str) -> requests.Response:
        """One robots-checked, rate-limited GET that does not follow redirects."""

        domain = host_of(url)
        if not domain:
            raise FetchError(url, FetchErrorKind.network, "URL has no host")

        policy = self._robots.policy_for(url)
        if not policy.is_allowed(url):
            logger.info("robots.txt disallows %s", url)
            raise FetchError(url, FetchErrorKind.robots_disallowed)

        self._rate_limiter.acquire(domain, policy.crawl_delay)

        try:
            return self._session.get(url, timeout=self._timeout, allow_redirects=False)
        except requests.Timeout as exc:
            raise FetchError(url, FetchErrorKind.timeout, f"no response within {self._timeout}s") from exc
        except requests.TooManyRedirects as exc:
            raise FetchError(url, FetchErrorKind.network, "too many redirects") from exc
        except requests.RequestException as exc:
            raise FetchError(url, FetchErrorKind.network, str(exc)) from exc
