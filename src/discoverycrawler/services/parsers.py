"""Source parsers turning a feed, sitemap or web page into candidate URLs.

One parser function per :class:`~discoverycrawler.models.SourceType`, looked up
in :data:`PARSERS` by the source's ``type`` field.
"""

from __future__ import annotations

import gzip
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Tag

from discoverycrawler.config import CrawlerSettings
from discoverycrawler.errors import FetchError, ParseError
from discoverycrawler.models import Candidate, CrawlerSource, SourceType
from discoverycrawler.services.fetcher import FetchedPage, Fetcher
from discoverycrawler.text import clean_text, parse_date, strip_html, truncate
from discoverycrawler.urls import absolute_url, domain_matches, host_of

__all__ = ["PARSERS", "ParseContext", "parse_rss", "parse_sitemap", "parse_source", "parse_web"]

logger = logging.getLogger(__name__)

MAX_CHILD_SITEMAPS = 20
MAX_SUMMARY_LENGTH = 500
SKIPPED_EXTENSIONS = (
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico",
    ".css", ".js", ".json", ".xml", ".zip", ".gz", ".pdf", ".mp3", ".mp4",
)
FEED_TYPES = ("application/rss+xml", "application/atom+xml")


@dataclass
class ParseContext:
    fetcher: Fetcher
    settings: CrawlerSettings


ParserFn = Callable[[CrawlerSource, ParseContext], List[Candidate]]


def _fetch_document(url: str, ctx: ParseContext) -> FetchedPage:
    try:
        return ctx.fetcher.fetch(url)
    except FetchError as exc:
        raise ParseError(f"Could not fetch {url}: {exc}") from exc


def _xml_soup(page: FetchedPage) -> BeautifulSoup:
    data: bytes | str = page.content or page.text
    if isinstance(data, bytes) and data[:2] == b"\x1f\x8b":
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError) as exc:
            raise ParseError(f"Corrupt gzip payload at {page.url}") from exc
    return BeautifulSoup(data, "xml")


def _child_text(node: Tag, *names: str) -> Optional[str]:
    for name in names:
        child = node.find(name)
        if child is not None:
            text = child.get_text(strip=True)
            if text:
                return text
    return None


# --------------------------------------------------------------------------- RSS / Atom


def _entry_link(entry: Tag) -> Optional[str]:
    for link in entry.find_all("link", recursive=False):
        href = link.get("href")
        if href and link.get("rel", "alternate") in ("alternate", ["alternate"]):
            return href.strip()
        text = link.get_text(strip=True)
        if text:
            return text
    guid = entry.find("guid")
    if guid is not None and guid.get("isPermaLink", "true") != "false":
        text = guid.get_text(strip=True)
        if text.startswith(("http://", "https://")):
            return text
    return None


def _entry_html(entry: Tag) -> str:
    for name in ("encoded", "content", "description", "summary"):
        node = entry.find(name)
        if node is not None and node.get_text(strip=True):
            return node.get_text()
    return ""


def _entry_author(entry: Tag) -> Optional[str]:
    author = entry.find("author")
    if author is not None:
        name = author.find("name")
        text = name.get_text(strip=True) if name is not None else author.get_text(strip=True)
        if text:
            return text
    return _child_text(entry, "creator")


def _feed_entries(soup: BeautifulSoup, feed_url: str) -> List[Tag]:
    root = soup.find(["rss", "feed", "RDF"])
    if root is None:
        raise ParseError(f"{feed_url} is not an RSS or Atom feed")
    return root.find_all(["item", "entry"])


def _is_aggregator(source: CrawlerSource, settings: CrawlerSettings) -> bool:
    return source.extract_links or domain_matches(source.domain, settings.aggregator_domains)


def _external_links(
    entry: Tag, link: Optional[str], source: CrawlerSource, settings: CrawlerSettings
) -> List[str]:
    """Links an aggregator entry points at, excluding the aggregator itself."""

    excluded = [source.domain, *settings.aggregator_domains]
    blocked = settings.blocked_domains

    found: List[str] = []
    hrefs: List[str] = [link] if link else []
    html = _entry_html(entry)
    if html:
        fragment = BeautifulSoup(html, "lxml")
        hrefs.extend(anchor.get("href", "") for anchor in fragment.find_all("a", href=True))

    for href in hrefs:
        url = absolute_url(href, link or str(source.url))
        if url is None:
            continue
        host = host_of(url)
        if domain_matches(host, excluded) or domain_matches(host, blocked):
            continue
        if url not in found:
            found.append(url)
    return found


def _candidates_from_feed(
    soup: BeautifulSoup, feed_url: str, source: CrawlerSource, settings: CrawlerSettings
) -> List[Candidate]:
    aggregator = _is_aggregator(source, settings)
    candidates: List[Candidate] = []

    for entry in _feed_entries(soup, feed_url):
        link = _entry_link(entry)
        title = clean_text(_child_text(entry, "title"))
        summary = truncate(strip_html(_entry_html(entry)), MAX_SUMMARY_LENGTH)
        published = parse_date(_child_text(entry, "pubDate", "published", "updated", "date"))
        author = clean_text(_entry_author(entry))

        if aggregator:
            for url in _external_links(entry, link, source, settings):
                candidates.append(
                    Candidate(
                        url=url,
                        title=f"{title} (via {source.domain})" if title else None,
                        published_at=published,
                    )
                )
            continue

        if not link:
            continue
        url = absolute_url(link, feed_url)
        if url is None:
            continue
        candidates.append(
            Candidate(url=url, title=title, summary=summary, published_at=published, author=author)
        )

    return candidates


def parse_rss(source: CrawlerSource, ctx: ParseContext) -> List[Candidate]:
    """Parse an RSS 2.0, RSS 1.0 (RDF) or Atom feed."""

    feed_url = str(source.url)
    page = _fetch_document(feed_url, ctx)
    candidates = _candidates_from_feed(_xml_soup(page), feed_url, source, ctx.settings)
    logger.info("Feed %s yielded %d candidates", feed_url, len(candidates))
    return candidates


# --------------------------------------------------------------------------- Sitemap


def _urlset_candidates(root: Tag) -> List[Candidate]:
    candidates: List[Candidate] = []
    for node in root.find_all("url"):
        loc = _child_text(node, "loc")
        if not loc:
            continue
        # Google News sitemaps carry a title and publication date per URL.
        news_title = node.find("title")
        candidates.append(
            Candidate(
                url=loc,
                title=clean_text(news_title.get_text()) if news_title is not None else None,
                published_at=parse_date(_child_text(node, "publication_date", "lastmod")),
            )
        )
    return candidates


def _sitemap_root(page: FetchedPage) -> Tag:
    root = _xml_soup(page).find(["urlset", "sitemapindex"])
    if root is None:
        raise ParseError(f"{page.url} is not an XML sitemap")
    return root


def parse_sitemap(source: CrawlerSource, ctx: ParseContext) -> List[Candidate]:
    """Parse a ``<urlset>`` or a ``<sitemapindex>`` whose children are url sets.

    Only one level of nesting is followed; indexes found inside an index are
    skipped.
    """

    return _sitemap_candidates(str(source.url), ctx)


def _sitemap_candidates(sitemap_url: str, ctx: ParseContext) -> List[Candidate]:
    root = _sitemap_root(_fetch_document(sitemap_url, ctx))

    if root.name == "urlset":
        candidates = _urlset_candidates(root)
        logger.info("Sitemap %s yielded %d candidates", sitemap_url, len(candidates))
        return candidates

    children = []
    for node in root.find_all("sitemap"):
        loc = _child_text(node, "loc")
        if loc:
            children.append((parse_date(_child_text(node, "lastmod")), loc))
    children.sort(key=lambda item: item[0] or datetime.min.replace(tzinfo=UTC), reverse=True)

    candidates: List[Candidate] = []
    failures = 0
    for _, child_url in children[:MAX_CHILD_SITEMAPS]:
        try:
            child_root = _sitemap_root(_fetch_document(child_url, ctx))
        except ParseError as exc:
            failures += 1
            logger.warning("Skipping child sitemap %s: %s", child_url, exc)
            continue
        if child_root.name != "urlset":
            logger.info("Not following nested sitemap index %s", child_url)
            continue
        candidates.extend(_urlset_candidates(child_root))

    if children and failures == len(children[:MAX_CHILD_SITEMAPS]):
        raise ParseError(f"None of the {failures} sitemaps listed by {sitemap_url} could be read")

    logger.info(
        "Sitemap index %s yielded %d candidates from %d child sitemaps",
        sitemap_url,
        len(candidates),
        min(len(children), MAX_CHILD_SITEMAPS),
    )
    return candidates


# --------------------------------------------------------------------------- Web page


def _declared_feeds(soup: BeautifulSoup, base_url: str) -> List[str]:
    feeds: List[str] = []
    for link in soup.find_all("link", href=True):
        if (link.get("type") or "").lower() not in FEED_TYPES:
            continue
        url = absolute_url(link["href"], base_url)
        if url and url not in feeds:
            feeds.append(url)
    return feeds


def _bare_host(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


def _page_links(
    soup: BeautifulSoup, base_url: str, source: CrawlerSource
) -> Iterable[Candidate]:
    root_host = _bare_host(source.domain)
    root_normalized = base_url.rstrip("/")
    seen: set[str] = set()

    for anchor in soup.find_all("a", href=True):
        url = absolute_url(anchor["href"], base_url)
        if url is None or url.rstrip("/") == root_normalized:
            continue
        parsed = urlparse(url)
        if parsed.path.lower().endswith(SKIPPED_EXTENSIONS):
            continue
        if not source.allow_external_links and not domain_matches(
            _bare_host(parsed.hostname or ""), [root_host]
        ):
            continue
        if url in seen:
            continue
        seen.add(url)
        yield Candidate(url=url, title=clean_text(anchor.get_text(" ", strip=True)))


def _discovered_sitemaps(base_url: str, ctx: ParseContext) -> List[str]:
    """Sitemaps named in robots.txt, or the conventional /sitemap.xml."""

    parsed = urlparse(base_url)
    advertised = ctx.fetcher.robots.sitemaps(host_of(base_url))
    return advertised or [f"{parsed.scheme}://{parsed.netloc}/sitemap.xml"]


def parse_web(source: CrawlerSource, ctx: ParseContext) -> List[Candidate]:
    """Discover candidates from a website's root page.

    A feed advertised through ``<link rel="alternate">`` is preferred since its
    entries carry titles and dates; otherwise outbound anchors are harvested.
    A page without usable links falls back to the site's sitemap, and as a
    last resort the page itself is the only candidate.
    """

    root_url = str(source.url)
    page = _fetch_document(root_url, ctx)
    content_type = page.content_type.lower()
    if content_type and "html" not in content_type:
        raise ParseError(f"{root_url} returned {content_type} instead of an HTML page")
    soup = BeautifulSoup(page.text, "lxml")
    if soup.find("body") is None and soup.find("a") is None:
        raise ParseError(f"{root_url} did not return an HTML page")

    base_url = page.final_url or root_url
    for feed_url in _declared_feeds(soup, base_url):
        try:
            feed_page = _fetch_document(feed_url, ctx)
            candidates = _candidates_from_feed(_xml_soup(feed_page), feed_url, source, ctx.settings)
        except ParseError as exc:
            logger.info("Ignoring advertised feed %s: %s", feed_url, exc)
            continue
        if candidates:
            logger.info("Using feed %s advertised by %s", feed_url, root_url)
            return candidates

    candidates = list(_page_links(soup, base_url, source))
    if candidates:
        logger.info("Page %s yielded %d candidates", root_url, len(candidates))
        return candidates

    for sitemap_url in _discovered_sitemaps(base_url, ctx):
        try:
            candidates = _sitemap_candidates(sitemap_url, ctx)
        except ParseError as exc:
            logger.info("Ignoring sitemap %s: %s", sitemap_url, exc)
            continue
        if candidates:
            logger.info("Using sitemap %s for %s", sitemap_url, root_url)
            return candidates

    logger.info("No links or sitemaps found on %s; using the page itself", root_url)
    return [Candidate(url=root_url)]


PARSERS: Dict[SourceType, ParserFn] = {
    SourceType.rss: parse_rss,
    SourceType.sitemap: parse_sitemap,
    SourceType.web: parse_web,
}


def parse_source(source: CrawlerSource, ctx: ParseContext) -> List[Candidate]:
    """Run the parser registered for ``source.type``."""

    try:
        parser = PARSERS[SourceType(source.type)]
    except (KeyError, ValueError) as exc:
        raise ParseError(f"Unsupported source type: {source.type}") from exc
    return parser(source, ctx)
