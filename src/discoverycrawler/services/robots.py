"""robots.txt fetching, parsing and per-domain caching."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import requests

from discoverycrawler.services.ratelimit import RateLimiter

__all__ = ["DomainPolicy", "RobotsPolicyCache", "parse_robots_txt"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RobotsRule:
    allow: bool
    path: str
    pattern: re.Pattern[str]

    @property
    def specificity(self) -> int:
        return len(self.path)


@dataclass
class DomainPolicy:
    """The robots rules that apply to this crawler on one domain."""

    domain: str
    rules: List[RobotsRule] = field(default_factory=list)
    crawl_delay: Optional[float] = None
    sitemaps: List[str] = field(default_factory=list)
    fetched_at: float = 0.0
    ttl: float = 86400.0

    def expired(self, now: float) -> bool:
        return now - self.fetched_at >= self.ttl

    def is_allowed(self, url: str) -> bool:
        """Longest matching rule wins; ``Allow`` wins a tie with ``Disallow``."""

        parsed = urlparse(url)
        target = unquote(parsed.path or "/")
        if parsed.query:
            target = f"{target}?{parsed.query}"

        best: RobotsRule | None = None
        for rule in self.rules:
            if not rule.pattern.match(target):
                continue
            if (
                best is None
                or rule.specificity > best.specificity
                or (rule.specificity == best.specificity and rule.allow and not best.allow)
            ):
                best = rule
        return best is None or best.allow


def _compile_rule_path(path: str) -> re.Pattern[str]:
    anchored = path.endswith("$")
    if anchored:
        path = path[:-1]
    body = ".*".join(re.escape(part) for part in unquote(path).split("*"))
    return re.compile(body + ("$" if anchored else ""))


def _agent_token(user_agent: str) -> str:
    """Return the product token of a User-Agent string, lower-cased."""

    return user_agent.split("/", 1)[0].split()[0].strip().lower() if user_agent.strip() else "*"


def parse_robots_txt(
    text: str, user_agent: str, *, domain: str = "", fetched_at: float = 0.0, ttl: float = 86400.0
) -> DomainPolicy:
    """Parse ``text`` and keep the group addressed to ``user_agent`` (falling back to ``*``)."""

    token = _agent_token(user_agent)
    groups: List[Tuple[List[str], List[Tuple[str, str]]]] = []
    sitemaps: List[str] = []
    current_agents: List[str] = []
    current_lines: List[Tuple[str, str]] = []
    in_rules = False

    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()

        if key == "sitemap":
            if value:
                sitemaps.append(value)
            continue

        if key == "user-agent":
            if in_rules:
                groups.append((current_agents, current_lines))
                current_agents, current_lines = [], []
                in_rules = False
            current_agents.append(value.lower())
            continue

        if not current_agents:
            continue
        in_rules = True
        current_lines.append((key, value))

    if current_agents:
        groups.append((current_agents, current_lines))

    specific = [lines for agents, lines in groups if any(a and a != "*" and a in token for a in agents)]
    wildcard = [lines for agents, lines in groups if "*" in agents]
    selected = specific or wildcard

    rules: List[RobotsRule] = []
    crawl_delay: Optional[float] = None
    for lines in selected:
        for key, value in lines:
            if key in {"allow", "disallow"}:
                if not value:
                    # An empty Disallow allows everything and adds no rule.
                    continue
                rules.append(RobotsRule(allow=key == "allow", path=value, pattern=_compile_rule_path(value)))
            elif key == "crawl-delay":
                try:
                    delay = float(value)
                except ValueError:
                    logger.debug("Ignoring malformed Crawl-delay %r for %s", value, domain)
                    continue
                if delay >= 0:
                    crawl_delay = delay if crawl_delay is None else max(crawl_delay, delay)

    return DomainPolicy(
        domain=domain,
        rules=rules,
        crawl_delay=crawl_delay,
        sitemaps=sitemaps,
        fetched_at=fetched_at,
        ttl=ttl,
    )


class RobotsPolicyCache:
    """Lazily fetches ``/robots.txt`` per domain and answers allow and delay queries.

    A failed fetch (404, 5xx, timeout, connection error) caches a permissive
    policy for the normal TTL so a broken robots.txt never blocks a domain.
    With a ``rate_limiter`` the robots.txt request takes the domain's slot like
    any other request to that domain.
    """

    def __init__(
        self,
        session: requests.Session,
        *,
        user_agent: str,
        ttl: float = 86400.0,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._session = session
        self._rate_limiter = rate_limiter
        self._user_agent = user_agent
        self._ttl = ttl
        self._timeout = timeout
        self._clock = clock
        self._policies: Dict[str, DomainPolicy] = {}
        self._domain_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def is_allowed(self, url: str) -> bool:
        parsed = urlparse(url)
        if not parsed.hostname:
            return False
        return self.policy_for(url).is_allowed(url)

    def crawl_delay(self, domain: str) -> Optional[float]:
        return self.policy_for(f"https://{domain}/").crawl_delay

    def sitemaps(self, domain: str) -> List[str]:
        return list(self.policy_for(f"https://{domain}/").sitemaps)

    def policy_for(self, url: str) -> DomainPolicy:
        parsed = urlparse(url)
        domain = (parsed.hostname or "").lower()
        scheme = parsed.scheme or "https"

        with self._lock:
            domain_lock = self._domain_locks.setdefault(domain, threading.Lock())

        with domain_lock:
            now = self._clock()
            policy = self._policies.get(domain)
            if policy is not None and not policy.expired(now):
                return policy

            netloc = parsed.netloc.rsplit("@", 1)[-1] or domain
            previous_delay = policy.crawl_delay if policy is not None else None
            policy = self._fetch_policy(f"{scheme}://{netloc}/robots.txt", domain, now, previous_delay)
            with self._lock:
                self._policies[domain] = policy
            return policy

    def _fetch_policy(
        self, robots_url: str, domain: str, now: float, crawl_delay: Optional[float] = None
    ) -> DomainPolicy:
        if self._rate_limiter is not None:
            self._rate_limiter.acquire(domain, crawl_delay)
        try:
            response = self._session.get(
                robots_url,
                headers={"User-Agent": self._user_agent},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Could not fetch %s (%s); allowing all", robots_url, exc)
            return DomainPolicy(domain=domain, fetched_at=now, ttl=self._ttl)

        if response.status_code >= 400:
            logger.info("robots.txt for %s returned HTTP %s; allowing all", domain, response.status_code)
            return DomainPolicy(domain=domain, fetched_at=now, ttl=self._ttl)

        policy = parse_robots_txt(
            response.text,
            self._user_agent,
            domain=domain,
            fetched_at=now,
            ttl=self._ttl,
        )
        logger.debug(
            "Loaded robots.txt for %s: %d rules, crawl-delay=%s",
            domain,
            len(policy.rules),
            policy.crawl_delay,
        )
        return policy
