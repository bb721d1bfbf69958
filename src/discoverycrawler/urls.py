"""URL helpers: the normalised form used as the dedup key, and domain matching."""

from __future__ import annotations

from typing import Iterable
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

__all__ = [
    "TRACKING_PARAMS",
    "absolute_url",
    "domain_matches",
    "host_of",
    "normalize_url",
]

TRACKING_PARAMS = frozenset(
    {
        "fbclid",
        "gclid",
        "dclid",
        "msclkid",
        "mc_cid",
        "mc_eid",
        "igshid",
        "yclid",
        "_ga",
        "_gl",
        "ref",
        "ref_src",
        "spm",
    }
)
_TRACKING_PREFIXES = ("utm_",)
_DEFAULT_PORTS = {"http": 80, "https": 443}


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(_TRACKING_PREFIXES)


def normalize_url(url: str) -> str:
    """Return the canonical form of ``url`` used to decide whether it was seen before.

    The scheme and host are lower-cased, default ports, fragments, trailing
    slashes and known tracking parameters are dropped, and the remaining query
    parameters keep their original order.
    """

    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()

    try:
        port = parsed.port
    except ValueError:
        port = None
    netloc = host
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"
    if parsed.username:
        credentials = parsed.username
        if parsed.password:
            credentials = f"{credentials}:{parsed.password}"
        netloc = f"{credentials}@{netloc}"

    path = parsed.path.rstrip("/")

    query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    query = urlencode(query_pairs)

    return urlunparse((scheme, netloc, path, parsed.params, query, ""))


def host_of(url: str) -> str:
    """Return the lower-cased host of ``url`` (empty string when absent)."""

    return (urlparse(url).hostname or "").lower()


def domain_matches(host: str, domains: Iterable[str]) -> bool:
    """Return ``True`` if ``host`` equals or is a subdomain of any of ``domains``."""

    host = host.lower()
    for domain in domains:
        domain = domain.lower().strip(".")
        if host == domain or host.endswith(f".{domain}"):
            return True
    return False


def absolute_url(href: str, base_url: str) -> str | None:
    """Resolve ``href`` against ``base_url`` and keep it only if it is http(s)."""

    candidate = urljoin(base_url, href.strip())
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return candidate.split("#", 1)[0]
