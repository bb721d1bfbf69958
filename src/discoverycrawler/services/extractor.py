"""Metadata extraction through ordered, per-field fallback chains.

Every field is resolved independently: the tiers of its chain are tried in
order and the first one returning a non-empty value wins. The winning tier's
name is recorded in :attr:`ExtractedMetadata.sources`.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from discoverycrawler.models import Candidate, ExtractedMetadata
from discoverycrawler.services.fetcher import FetchedPage
from discoverycrawler.text import clean_text, parse_date, truncate
from discoverycrawler.urls import host_of

__all__ = ["MetadataExtractor", "PageContext", "TOPIC_KEYWORDS", "extract_metadata"]

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 500
MAX_AUTHOR_LENGTH = 100
MAX_BODY_LENGTH = 2000
MIN_BODY_LENGTH = 50
MIN_PARAGRAPH_LENGTH = 80
MAX_TOPICS = 10

CONTENT_SELECTORS = (
    "[role=main]",
    ".post-content",
    ".entry-content",
    ".article-body",
    ".article-content",
    ".story-body",
    ".content",
    ".post",
    ".entry",
)
DATE_META_KEYS = (
    ("name", "date"),
    ("name", "pubdate"),
    ("name", "publishdate"),
    ("name", "publish_date"),
    ("name", "dc.date"),
    ("name", "dc.date.issued"),
    ("name", "dcterms.created"),
    ("name", "sailthru.date"),
    ("name", "parsely-pub-date"),
    ("property", "og:published_time"),
    ("itemprop", "datePublished"),
)
BYLINE_PATTERN = re.compile(
    r"\bby\s+([A-Z][\w'\-]+(?:\s+(?:[A-Z]\.|[A-Z][\w'\-]+)){0,3})",
)
PATH_STOPWORDS = frozenset(
    {
        "article", "articles", "blog", "blogs", "post", "posts", "news", "story", "stories",
        "index", "html", "page", "pages", "amp", "www", "en", "us", "content", "p", "a",
    }
)

#: Fixed topic table used by the keyword-analysis tier.
TOPIC_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "technology": ("tech", "software", "computer", "programming", "code", "developer", "startup", "coding"),
    "ai": ("artificial intelligence", "machine learning", "neural network", "deep learning", "llm", "chatbot"),
    "science": ("science", "research", "discovery", "experiment", "scientific", "physics", "chemistry"),
    "business": ("business", "finance", "market", "economy", "company", "entrepreneur", "investment"),
    "culture": ("culture", "cultural", "artist", "fashion", "entertainment"),
    "education": ("education", "course", "tutorial", "university", "school", "learning"),
    "health": ("health", "fitness", "medical", "wellness", "nutrition", "mental health"),
    "politics": ("politics", "government", "policy", "election", "democracy", "vote"),
    "sports": ("sport", "sports", "athlete", "tournament", "football", "soccer", "nba", "nfl"),
    "food": ("food", "recipe", "cooking", "restaurant", "chef", "cuisine"),
    "travel": ("travel", "trip", "vacation", "destination", "tourism"),
    "history": ("history", "historical", "archive", "ancient", "heritage"),
    "space-astronomy": ("space", "astronomy", "planet", "nasa", "telescope", "galaxy"),
    "music": ("music", "album", "song", "band", "concert", "musician"),
    "photography": ("photography", "photo", "camera", "photographer"),
    "nature-wildlife": ("nature", "wildlife", "animal", "ecosystem", "conservation"),
    "design-typography": ("typography", "font", "graphic design", "user interface", "layout"),
    "philosophy-thought": ("philosophy", "philosophical", "ethics", "existential"),
}


@dataclass
class PageContext:
    """Parsed view of a page shared by every tier."""

    url: str
    soup: BeautifulSoup
    schema: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_html(cls, html: str, url: str) -> "PageContext":
        soup = BeautifulSoup(html, "lxml")
        return cls(url=url, soup=soup, schema=_schema_objects(soup))

    def meta(self, attr: str, key: str) -> Optional[str]:
        tag = self.soup.find("meta", attrs={attr: re.compile(rf"^{re.escape(key)}$", re.I)})
        if tag is None:
            return None
        return clean_text(tag.get("content"))

    def meta_all(self, attr: str, key: str) -> List[str]:
        pattern = re.compile(rf"^{re.escape(key)}$", re.I)
        values = (clean_text(tag.get("content")) for tag in self.soup.find_all("meta", attrs={attr: pattern}))
        return [value for value in values if value]

    def schema_value(self, key: str) -> Any:
        for obj in self.schema:
            value = obj.get(key)
            if value:
                return value
        return None

    def resolve(self, href: Optional[str]) -> Optional[str]:
        if not href or href.startswith("data:"):
            return None
        return urljoin(self.url, href.strip())


def _flatten_schema(data: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            yield from _flatten_schema(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _flatten_schema(data["@graph"])


def _schema_objects(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    objects: List[Dict[str, Any]] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or "")
        except (json.JSONDecodeError, TypeError):
            continue
        objects.extend(_flatten_schema(data))
    return objects


def _schema_text(value: Any, *keys: str) -> Optional[str]:
    """Reduce a schema.org value that may be a string, object or list to text."""

    if isinstance(value, str):
        return clean_text(value)
    if isinstance(value, dict):
        for key in keys:
            text = _schema_text(value.get(key), *keys)
            if text:
                return text
        return None
    if isinstance(value, list):
        for item in value:
            text = _schema_text(item, *keys)
            if text:
                return text
    return None


def _visible_text(node: Tag) -> Optional[str]:
    clone = BeautifulSoup(str(node), "lxml")
    for junk in clone(["script", "style", "noscript", "nav", "footer", "aside", "form", "header"]):
        junk.decompose()
    return clean_text(clone.get_text(" ", strip=True))


def _first_text(selector: str) -> Callable[[PageContext], Optional[str]]:
    def tier(page: PageContext) -> Optional[str]:
        node = page.soup.select_one(selector)
        return clean_text(node.get_text(" ", strip=True)) if node is not None else None

    return tier


def _meta(attr: str, key: str) -> Callable[[PageContext], Optional[str]]:
    return lambda page: page.meta(attr, key)


def _meta_any(key: str) -> Callable[[PageContext], Optional[str]]:
    """Twitter cards appear with either ``name`` or ``property``."""

    return lambda page: page.meta("name", key) or page.meta("property", key)


def _schema(key: str, *keys: str) -> Callable[[PageContext], Optional[str]]:
    return lambda page: _schema_text(page.schema_value(key), *keys)


# --------------------------------------------------------------------------- description


def _first_paragraph(page: PageContext) -> Optional[str]:
    for paragraph in page.soup.find_all("p"):
        text = clean_text(paragraph.get_text(" ", strip=True))
        if text and len(text) >= MIN_PARAGRAPH_LENGTH:
            return text
    return None


# --------------------------------------------------------------------------- image


def _image_tier(fn: Callable[[PageContext], Optional[str]]) -> Callable[[PageContext], Optional[str]]:
    return lambda page: page.resolve(fn(page))


def _first_img(scope: Optional[str]) -> Callable[[PageContext], Optional[str]]:
    def tier(page: PageContext) -> Optional[str]:
        container = page.soup.select_one(scope) if scope else page.soup
        if container is None:
            return None
        for img in container.find_all("img"):
            src = page.resolve(img.get("src") or img.get("data-src"))
            if src:
                return src
        return None

    return tier


# --------------------------------------------------------------------------- author


def _rel_author(page: PageContext) -> Optional[str]:
    node = page.soup.find(["a", "link", "span"], attrs={"rel": re.compile(r"\bauthor\b", re.I)})
    if node is None:
        return None
    return clean_text(node.get_text(" ", strip=True)) or clean_text(node.get("title"))


def _author_class(page: PageContext) -> Optional[str]:
    for node in page.soup.select(".author, .byline-author, .author-name, [itemprop=author]"):
        text = clean_text(node.get_text(" ", strip=True))
        if text:
            return re.sub(r"^by\s+", "", text, flags=re.I)
    return None


def _byline(page: PageContext) -> Optional[str]:
    for node in page.soup.select(".byline, .meta, .post-meta, header"):
        match = BYLINE_PATTERN.search(node.get_text(" ", strip=True))
        if match:
            return match.group(1)
    return None


# --------------------------------------------------------------------------- published date


def _date_meta(page: PageContext) -> Optional[str]:
    for attr, key in DATE_META_KEYS:
        value = page.meta(attr, key)
        if value and parse_date(value):
            return value
    return None


def _time_element(page: PageContext) -> Optional[str]:
    for node in page.soup.find_all("time"):
        value = node.get("datetime") or node.get_text(strip=True)
        if value and parse_date(value):
            return value
    return None


# --------------------------------------------------------------------------- body


def _body_from(selector: str) -> Callable[[PageContext], Optional[str]]:
    def tier(page: PageContext) -> Optional[str]:
        node = page.soup.select_one(selector)
        if node is None:
            return None
        text = _visible_text(node)
        return text if text and len(text) >= MIN_BODY_LENGTH else None

    return tier


def _content_selectors(page: PageContext) -> Optional[str]:
    for selector in CONTENT_SELECTORS:
        text = _body_from(selector)(page)
        if text:
            return text
    return None


def _paragraphs(page: PageContext) -> Optional[str]:
    texts = [clean_text(p.get_text(" ", strip=True)) for p in page.soup.find_all("p")]
    joined = " ".join(text for text in texts if text)
    return joined if len(joined) >= MIN_BODY_LENGTH else None


# --------------------------------------------------------------------------- topics


def _normalise_topics(values: Iterable[str]) -> List[str]:
    topics: List[str] = []
    for value in values:
        topic = re.sub(r"[\s_]+", "-", value.strip().lower()).strip("-#")
        if topic and len(topic) <= 50 and topic not in topics:
            topics.append(topic)
        if len(topics) >= MAX_TOPICS:
            break
    return topics


def _split_keywords(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part for part in re.split(r"[,;|]", value) if part.strip()]


def _topics_meta_keywords(page: PageContext) -> List[str]:
    return _normalise_topics(_split_keywords(page.meta("name", "keywords")))


def _topics_article_tags(page: PageContext) -> List[str]:
    return _normalise_topics(page.meta_all("property", "article:tag"))


def _topics_schema_keywords(page: PageContext) -> List[str]:
    value = page.schema_value("keywords")
    if isinstance(value, str):
        return _normalise_topics(_split_keywords(value))
    if isinstance(value, list):
        return _normalise_topics(str(item) for item in value)
    return []


def _topics_markup(page: PageContext) -> List[str]:
    nodes = page.soup.select(
        "a[rel~=tag], a[rel~=category], .tags a, .tag-list a, .categories a, .post-categories a"
    )
    return _normalise_topics(node.get_text(" ", strip=True) for node in nodes)


def _topics_url_path(page: PageContext) -> List[str]:
    segments = [segment for segment in urlparse(page.url).path.split("/") if segment]
    # The last segment is the article slug, not a section.
    words = [
        segment
        for segment in segments[:-1]
        if re.fullmatch(r"[a-zA-Z][a-zA-Z\-]{2,}", segment) and segment.lower() not in PATH_STOPWORDS
    ]
    return _normalise_topics(words)


def classify_keywords(text: Optional[str], limit: int = 3) -> List[str]:
    """Return up to ``limit`` topics from :data:`TOPIC_KEYWORDS` ranked by keyword hits."""

    if not text:
        return []
    lowered = text.lower()
    scores: Counter[str] = Counter()
    for topic, keywords in TOPIC_KEYWORDS.items():
        for keyword in keywords:
            hits = len(re.findall(rf"\b{re.escape(keyword)}\b", lowered))
            if hits:
                scores[topic] += hits
    return [topic for topic, score in scores.most_common(limit) if score >= 2]


Tier = Tuple[str, Callable[[PageContext], Any]]

TITLE_CHAIN: Sequence[Tier] = (
    ("h1", _first_text("h1")),
    ("og:title", _meta("property", "og:title")),
    ("twitter:title", _meta_any("twitter:title")),
    ("title", _first_text("title")),
    ("h2", _first_text("h2")),
    ("schema:headline", _schema("headline")),
)
DESCRIPTION_CHAIN: Sequence[Tier] = (
    ("og:description", _meta("property", "og:description")),
    ("twitter:description", _meta_any("twitter:description")),
    ("meta:description", _meta("name", "description")),
    ("schema:description", _schema("description")),
    ("paragraph", _first_paragraph),
)
IMAGE_CHAIN: Sequence[Tier] = (
    ("og:image", _image_tier(_meta("property", "og:image"))),
    ("twitter:image", _image_tier(_meta_any("twitter:image"))),
    ("schema:image", _image_tier(_schema("image", "url", "contentUrl"))),
    ("article:img", _first_img("article, main, [role=main]")),
    ("page:img", _first_img(None)),
)
AUTHOR_CHAIN: Sequence[Tier] = (
    ("meta:author", _meta("name", "author")),
    ("article:author", _meta("property", "article:author")),
    ("schema:author", _schema("author", "name")),
    ("rel:author", _rel_author),
    ("class:author", _author_class),
    ("byline", _byline),
)
PUBLISHED_CHAIN: Sequence[Tier] = (
    ("article:published_time", _meta("property", "article:published_time")),
    ("schema:datePublished", _schema("datePublished")),
    ("meta:date", _date_meta),
    ("time", _time_element),
)
BODY_CHAIN: Sequence[Tier] = (
    ("article", _body_from("article")),
    ("main", _body_from("main")),
    ("content-selector", _content_selectors),
    ("paragraphs", _paragraphs),
)
TOPIC_CHAIN: Sequence[Tier] = (
    ("meta:keywords", _topics_meta_keywords),
    ("article:tag", _topics_article_tags),
    ("schema:keywords", _topics_schema_keywords),
    ("markup:tags", _topics_markup),
    ("url:path", _topics_url_path),
)


def _resolve(page: PageContext, chain: Sequence[Tier], field_name: str) -> Tuple[Any, Optional[str]]:
    for tier_name, tier in chain:
        try:
            value = tier(page)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.debug("Tier %s for %s failed on %s: %s", tier_name, field_name, page.url, exc)
            continue
        if value:
            return value, tier_name
    return None, None


class MetadataExtractor:
    """Turns a fetched page into :class:`ExtractedMetadata`; never raises for bad markup."""

    def extract(self, page: FetchedPage, candidate: Candidate | None = None) -> ExtractedMetadata:
        url = page.final_url or page.url
        metadata = ExtractedMetadata(url=page.url, domain=host_of(url))

        content_type = page.content_type.lower()
        if content_type and "html" not in content_type and "xml" not in content_type:
            logger.debug("Not extracting from %s (%s)", url, content_type)
        elif page.text:
            try:
                self._extract_html(PageContext.from_html(page.text, url), metadata)
            except Exception:
                logger.exception("Metadata extraction failed for %s", url)

        if candidate is not None:
            self._apply_inline(candidate, metadata)
        return metadata

    def _extract_html(self, page: PageContext, metadata: ExtractedMetadata) -> None:
        sources = metadata.sources

        title, tier = _resolve(page, TITLE_CHAIN, "title")
        if title:
            metadata.title = truncate(title, MAX_TITLE_LENGTH)
            sources["title"] = tier

        description, tier = _resolve(page, DESCRIPTION_CHAIN, "description")
        if description:
            metadata.description = truncate(description, MAX_DESCRIPTION_LENGTH)
            sources["description"] = tier

        image, tier = _resolve(page, IMAGE_CHAIN, "image_url")
        if image:
            metadata.image_url = image
            sources["image_url"] = tier

        author, tier = _resolve(page, AUTHOR_CHAIN, "author")
        if author:
            metadata.author = truncate(author, MAX_AUTHOR_LENGTH)
            sources["author"] = tier

        published = self._resolve_date(page)
        if published is not None:
            metadata.published_at, sources["published_at"] = published

        body, tier = _resolve(page, BODY_CHAIN, "body_excerpt")
        if body:
            metadata.body_excerpt = truncate(body, MAX_BODY_LENGTH)
            metadata.word_count = len(metadata.body_excerpt.split())
            sources["body_excerpt"] = tier

        topics, tier = _resolve(page, TOPIC_CHAIN, "topics")
        if not topics:
            topics, tier = classify_keywords(metadata.body_excerpt), "keywords"
        if topics:
            metadata.topics = list(topics)
            sources["topics"] = tier

    @staticmethod
    def _resolve_date(page: PageContext) -> Optional[Tuple[datetime, str]]:
        for tier_name, tier in PUBLISHED_CHAIN:
            try:
                parsed = parse_date(tier(page))
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.debug("Tier %s for published_at failed on %s: %s", tier_name, page.url, exc)
                continue
            if parsed is not None:
                return parsed, tier_name
        return None

    @staticmethod
    def _apply_inline(candidate: Candidate, metadata: ExtractedMetadata) -> None:
        """Fill gaps from what the feed or sitemap said about the candidate."""

        if not metadata.title and candidate.title:
            metadata.title = truncate(candidate.title, MAX_TITLE_LENGTH)
            metadata.sources["title"] = "feed"
        if not metadata.description and candidate.summary:
            metadata.description = truncate(candidate.summary, MAX_DESCRIPTION_LENGTH)
            metadata.sources["description"] = "feed"
        if metadata.published_at is None and candidate.published_at is not None:
            metadata.published_at = candidate.published_at
            metadata.sources["published_at"] = "feed"
        if not metadata.author and candidate.author:
            metadata.author = truncate(candidate.author, MAX_AUTHOR_LENGTH)
            metadata.sources["author"] = "feed"


def extract_metadata(html: str, url: str) -> ExtractedMetadata:
    """Convenience wrapper extracting from raw HTML."""

    page = FetchedPage(url=url, final_url=url, status_code=200, headers={"Content-Type": "text/html"}, text=html)
    return MetadataExtractor().extract(page)
