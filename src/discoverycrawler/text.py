"""Small text and date helpers shared by the parsers and the metadata extractor."""

from __future__ import annotations

import re
from datetime import UTC, datetime

from bs4 import BeautifulSoup
from dateutil import parser as dateparser

__all__ = ["clean_text", "parse_date", "strip_html", "truncate"]

_WHITESPACE = re.compile(r"\s+")


def clean_text(value: str | None) -> str | None:
    """Collapse whitespace; return ``None`` for empty results."""

    if value is None:
        return None
    cleaned = _WHITESPACE.sub(" ", value).strip()
    return cleaned or None


def truncate(value: str | None, limit: int) -> str | None:
    if value is None or len(value) <= limit:
        return value
    return value[: limit - 3].rstrip() + "..."


def strip_html(value: str | None) -> str | None:
    """Return the visible text of an HTML fragment."""

    if not value:
        return None
    if "<" not in value:
        return clean_text(value)
    return clean_text(BeautifulSoup(value, "lxml").get_text(" ", strip=True))


def parse_date(value: str | None) -> datetime | None:
    """Parse ISO 8601, RFC 822 and most human formats into an aware UTC datetime."""

    if not value or not value.strip():
        return None
    try:
        parsed = dateparser.parse(value.strip())
    except (ValueError, OverflowError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
