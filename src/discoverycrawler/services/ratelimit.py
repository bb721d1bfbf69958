"""Per-domain politeness gate shared by every running crawl job."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

__all__ = ["RateLimiter"]

logger = logging.getLogger(__name__)


@dataclass
class _DomainState:
    last_request_at: Optional[float] = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class RateLimiter:
    """Blocks callers until the domain's minimum request interval has elapsed.

    The effective interval is ``max(crawl_delay, default_delay)``. Callers for
    the same domain queue on that domain's lock, so two jobs hitting one site
    are serialised while other domains proceed independently.
    """

    def __init__(
        self,
        default_delay: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._default_delay = default_delay
        self._clock = clock
        self._sleep = sleep
        self._states: Dict[str, _DomainState] = {}
        self._lock = threading.Lock()

    @property
    def default_delay(self) -> float:
        return self._default_delay

    def effective_delay(self, crawl_delay: Optional[float] = None) -> float:
        return max(crawl_delay or 0.0, self._default_delay)

    def acquire(self, domain: str, crawl_delay: Optional[float] = None) -> float:
        """Wait for ``domain``'s slot and return the timestamp the request may go out at."""

        domain = domain.lower()
        with self._lock:
            state = self._states.setdefault(domain, _DomainState())

        delay = self.effective_delay(crawl_delay)
        with state.lock:
            now = self._clock()
            while state.last_request_at is not None:
                wait = state.last_request_at + delay - now
                if wait <= 0:
                    break
                logger.debug("Waiting %.2fs before requesting %s", wait, domain)
                self._sleep(wait)
                now = self._clock()
            state.last_request_at = now
            return now

    def last_request_at(self, domain: str) -> Optional[float]:
        state = self._states.get(domain.lower())
        return state.last_request_at if state else None
