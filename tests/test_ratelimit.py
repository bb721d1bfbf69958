from __future__ import annotations

import threading

from discoverycrawler.services.ratelimit import RateLimiter


def test_effective_delay_is_max_of_robots_and_default() -> None:
    limiter = RateLimiter(1.5)

    assert limiter.effective_delay(None) == 1.5
    assert limiter.effective_delay(0.5) == 1.5
    assert limiter.effective_delay(4) == 4


def test_consecutive_requests_to_one_domain_are_spaced(fake_clock) -> None:
    clock = fake_clock
    limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)

    first = limiter.acquire("example.com")
    second = limiter.acquire("example.com")
    third = limiter.acquire("example.com", crawl_delay=5)

    assert second - first >= 2.0
    assert third - second >= 5.0


def test_domains_do_not_wait_for_each_other(fake_clock) -> None:
    clock = fake_clock
    slept = []
    limiter = RateLimiter(10.0, clock=clock, sleep=lambda s: (slept.append(s), clock.sleep(s)))

    limiter.acquire("a.example")
    limiter.acquire("b.example")

    assert slept == []


def test_concurrent_callers_on_one_domain_respect_the_gap(fake_clock) -> None:
    clock = fake_clock
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
    stamps = []
    stamps_lock = threading.Lock()

    def worker() -> None:
        for _ in range(5):
            stamp = limiter.acquire("Shared.example")
            with stamps_lock:
                stamps.append(stamp)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stamps.sort()
    assert len(stamps) == 20
    assert all(later - earlier >= 1.0 for earlier, later in zip(stamps, stamps[1:]))
    assert limiter.last_request_at("shared.example") == stamps[-1]
