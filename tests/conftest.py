from __future__ import annotations

import threading
from typing import Any, Dict, List

import pytest

from discoverycrawler.config import CrawlerSettings
from discoverycrawler.services.ratelimit import RateLimiter


class DummyResponse:
    def __init__(
        self,
        text: str = "",
        status_code: int = 200,
        *,
        url: str = "",
        content_type: str = "text/html; charset=utf-8",
        content: bytes | None = None,
        json_data: Any = None,
        headers: Dict[str, str] | None = None,
    ) -> None:
        self.text = text
        self.status_code = status_code
        self.url = url
        self.headers = {"Content-Type": content_type, **(headers or {})}
        self.content = content if content is not None else text.encode("utf-8")
        self.encoding = "utf-8"
        self.apparent_encoding = "utf-8"
        self._json = json_data

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self) -> None:
        self.now = 100.0
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class RecordingLimiter(RateLimiter):
    """Rate limiter that remembers every slot it hands out."""

    def __init__(self, default_delay: float = 0.0, **kwargs: Any) -> None:
        super().__init__(default_delay, **kwargs)
        self.calls: List[tuple] = []
        self.slots: List[tuple] = []

    def acquire(self, domain: str, crawl_delay: float | None = None) -> float:
        self.calls.append((domain, crawl_delay))
        slot = super().acquire(domain, crawl_delay)
        self.slots.append((domain, slot))
        return slot


class FakeWeb:
    """Stand-in for ``requests.Session`` serving canned pages by URL.

    Unknown URLs answer 404, so every robots.txt that was not registered is
    treated as allow-all.
    """

    def __init__(self) -> None:
        self.pages: Dict[str, Any] = {}
        self.requests: List[str] = []
        self.posts: List[Dict[str, Any]] = []
        self.post_response = DummyResponse(status_code=201)

    def add(self, url: str, text: str = "", status_code: int = 200, **kwargs: Any) -> None:
        self.pages[url] = DummyResponse(text, status_code, url=url, **kwargs)

    def redirect(self, url: str, location: str, status_code: int = 302) -> None:
        self.add(url, "", status_code, headers={"Location": location})

    def fail(self, url: str, exc: Exception) -> None:
        self.pages[url] = exc

    def get(self, url: str, **kwargs: Any) -> DummyResponse:
        self.requests.append(url)
        page = self.pages.get(url)
        if isinstance(page, Exception):
            raise page
        if page is None:
            return DummyResponse("not found", 404, url=url)
        return page

    def post(self, url: str, **kwargs: Any) -> DummyResponse:
        self.posts.append({"url": url, **kwargs})
        if isinstance(self.post_response, Exception):
            raise self.post_response
        return self.post_response

    def content_requests(self) -> List[str]:
        return [url for url in self.requests if not url.endswith("/robots.txt")]


@pytest.fixture
def web() -> FakeWeb:
    return FakeWeb()


@pytest.fixture
def settings() -> CrawlerSettings:
    return CrawlerSettings(default_crawl_delay=0, recency_days=None, candidate_workers=1)


@pytest.fixture
def dummy_response():
    return DummyResponse


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_limiter():
    return RecordingLimiter
