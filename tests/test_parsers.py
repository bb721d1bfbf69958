from __future__ import annotations

import gzip

import pytest

from discoverycrawler.errors import ParseError
from discoverycrawler.models import CrawlerSource, SourceType
from discoverycrawler.services.fetcher import Fetcher
from discoverycrawler.services.parsers import ParseContext, parse_source
from discoverycrawler.services.ratelimit import RateLimiter
from discoverycrawler.services.robots import RobotsPolicyCache

RSS = """<?xml version="1.0"?>
<rss version="2.0" xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel>
    <title>Example blog</title>
    <item>
      <title>First post</title>
      <link>https://blog.example.com/first</link>
      <description>&lt;p&gt;Hello &lt;b&gt;world&lt;/b&gt;&lt;/p&gt;</description>
      <pubDate>Mon, 02 Jun 2025 10:00:00 GMT</pubDate>
      <dc:creator>Ada Lovelace</dc:creator>
    </item>
    <item>
      <title>Second post</title>
      <link>/second</link>
    </item>
  </channel>
</rss>
"""

ATOM = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom example</title>
  <entry>
    <title>Atom entry</title>
    <link rel="alternate" href="https://atom.example.com/entry-1"/>
    <updated>2025-06-01T08:30:00Z</updated>
    <author><name>Grace Hopper</name></author>
    <summary>Short summary</summary>
  </entry>
</feed>
"""

AGGREGATOR_RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel>
  <item>
    <title>Interesting find</title>
    <link>https://www.reddit.com/r/python/comments/abc/interesting_find/</link>
    <description><![CDATA[
      <a href="https://www.reddit.com/user/someone">someone</a> submitted
      <a href="https://articles.example.org/deep-dive">[link]</a>
      <a href="https://twitter.com/someone/status/1">tweet</a>
    ]]></description>
  </item>
</channel></rss>
"""

URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/a</loc><lastmod>2025-05-01</lastmod></url>
  <url><loc>https://example.com/b</loc></url>
</urlset>
"""


def _source(kind: SourceType, url: str, **kwargs) -> CrawlerSource:
    return CrawlerSource(name="Test source", type=kind, url=url, **kwargs)


@pytest.fixture
def ctx(web, settings) -> ParseContext:
    robots = RobotsPolicyCache(web, user_agent=settings.user_agent)
    return ParseContext(fetcher=Fetcher(web, robots, RateLimiter(0.0)), settings=settings)


def test_rss_entries_become_candidates(web, ctx) -> None:
    web.add("https://blog.example.com/feed.xml", RSS, content_type="application/rss+xml")

    candidates = parse_source(_source(SourceType.rss, "https://blog.example.com/feed.xml"), ctx)

    assert [c.url for c in candidates] == ["https://blog.example.com/first", "https://blog.example.com/second"]
    first = candidates[0]
    assert first.title == "First post"
    assert first.summary == "Hello world"
    assert first.author == "Ada Lovelace"
    assert first.published_at.isoformat() == "2025-06-02T10:00:00+00:00"


def test_atom_entries_become_candidates(web, ctx) -> None:
    web.add("https://atom.example.com/feed", ATOM, content_type="application/atom+xml")

    candidates = parse_source(_source(SourceType.rss, "https://atom.example.com/feed"), ctx)

    assert len(candidates) == 1
    assert candidates[0].url == "https://atom.example.com/entry-1"
    assert candidates[0].author == "Grace Hopper"
    assert candidates[0].summary == "Short summary"


def test_aggregator_feed_yields_external_links_only(web, ctx) -> None:
    web.add("https://www.reddit.com/r/python/.rss", AGGREGATOR_RSS, content_type="application/rss+xml")

    candidates = parse_source(_source(SourceType.rss, "https://www.reddit.com/r/python/.rss"), ctx)

    assert [c.url for c in candidates] == ["https://articles.example.org/deep-dive"]
    assert candidates[0].title == "Interesting find (via www.reddit.com)"


def test_html_served_as_feed_is_a_parse_error(web, ctx) -> None:
    web.add("https://example.com/feed", "<html><body>Not a feed</body></html>")

    with pytest.raises(ParseError):
        parse_source(_source(SourceType.rss, "https://example.com/feed"), ctx)


def test_unreachable_feed_is_a_parse_error(web, ctx) -> None:
    with pytest.raises(ParseError, match="Could not fetch"):
        parse_source(_source(SourceType.rss, "https://example.com/missing.xml"), ctx)


def test_sitemap_urlset(web, ctx) -> None:
    web.add("https://example.com/sitemap.xml", URLSET, content_type="application/xml")

    candidates = parse_source(_source(SourceType.sitemap, "https://example.com/sitemap.xml"), ctx)

    assert [c.url for c in candidates] == ["https://example.com/a", "https://example.com/b"]
    assert candidates[0].published_at is not None
    assert candidates[1].published_at is None


def test_sitemap_index_is_followed_one_level(web, ctx) -> None:
    index = """<?xml version="1.0"?>
    <sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
      <sitemap><loc>https://example.com/posts.xml.gz</loc><lastmod>2025-06-01</lastmod></sitemap>
      <sitemap><loc>https://example.com/nested-index.xml</loc></sitemap>
      <sitemap><loc>https://example.com/broken.xml</loc></sitemap>
    </sitemapindex>
    """
    nested = """<?xml version="1.0"?>
    <sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
      <sitemap><loc>https://example.com/deeper.xml</loc></sitemap>
    </sitemapindex>
    """
    web.add("https://example.com/sitemap_index.xml", index, content_type="application/xml")
    web.add(
        "https://example.com/posts.xml.gz",
        "",
        content_type="application/x-gzip",
        content=gzip.compress(URLSET.encode("utf-8")),
    )
    web.add("https://example.com/nested-index.xml", nested, content_type="application/xml")

    candidates = parse_source(_source(SourceType.sitemap, "https://example.com/sitemap_index.xml"), ctx)

    assert [c.url for c in candidates] == ["https://example.com/a", "https://example.com/b"]
    assert "https://example.com/deeper.xml" not in web.requests


def test_malformed_sitemap_is_a_parse_error(web, ctx) -> None:
    web.add("https://example.com/sitemap.xml", "<<<not xml at all", content_type="application/xml")

    with pytest.raises(ParseError):
        parse_source(_source(SourceType.sitemap, "https://example.com/sitemap.xml"), ctx)


def test_web_source_prefers_an_advertised_feed(web, ctx) -> None:
    web.add(
        "https://blog.example.com/",
        '<html><head><link rel="alternate" type="application/rss+xml" href="/feed.xml"></head>'
        '<body><a href="/about">About</a></body></html>',
    )
    web.add("https://blog.example.com/feed.xml", RSS, content_type="application/rss+xml")

    candidates = parse_source(_source(SourceType.web, "https://blog.example.com/"), ctx)

    assert candidates[0].url == "https://blog.example.com/first"
    assert candidates[0].title == "First post"


def test_web_source_keeps_same_domain_links(web, ctx) -> None:
    web.add(
        "https://example.com/",
        """<html><body>
        <a href="/news/one">One</a>
        <a href="https://www.example.com/news/two">Two</a>
        <a href="https://other.org/story">Elsewhere</a>
        <a href="/logo.png">Logo</a>
        <a href="/">Home</a>
        <a href="/news/one#comments">One again</a>
        </body></html>""",
    )

    candidates = parse_source(_source(SourceType.web, "https://example.com/"), ctx)

    assert [c.url for c in candidates] == ["https://example.com/news/one", "https://www.example.com/news/two"]


def test_web_source_can_allow_external_links(web, ctx) -> None:
    web.add("https://example.com/", '<html><body><a href="https://other.org/story">Elsewhere</a></body></html>')

    source = _source(SourceType.web, "https://example.com/", allow_external_links=True)

    assert [c.url for c in parse_source(source, ctx)] == ["https://other.org/story"]


def test_web_source_without_links_uses_the_page_itself(web, ctx) -> None:
    web.add("https://example.com/essay", "<html><body><p>Just text.</p></body></html>")

    candidates = parse_source(_source(SourceType.web, "https://example.com/essay"), ctx)

    assert [c.url for c in candidates] == ["https://example.com/essay"]


def test_web_source_without_links_uses_the_sitemap_named_in_robots(web, ctx) -> None:
    web.add(
        "https://example.com/robots.txt",
        "User-agent: *\nDisallow:\nSitemap: https://example.com/maps/posts.xml\n",
        content_type="text/plain",
    )
    web.add("https://example.com/", "<html><body><p>Welcome.</p></body></html>")
    web.add("https://example.com/maps/posts.xml", URLSET, content_type="application/xml")

    candidates = parse_source(_source(SourceType.web, "https://example.com/"), ctx)

    assert [c.url for c in candidates] == ["https://example.com/a", "https://example.com/b"]
    assert "https://example.com/sitemap.xml" not in web.requests


def test_web_source_without_links_tries_the_conventional_sitemap(web, ctx) -> None:
    web.add("https://example.com/", "<html><body><p>Welcome.</p></body></html>")
    web.add("https://example.com/sitemap.xml", URLSET, content_type="application/xml")

    candidates = parse_source(_source(SourceType.web, "https://example.com/"), ctx)

    assert [c.url for c in candidates] == ["https://example.com/a", "https://example.com/b"]


def test_web_source_rejects_non_html(web, ctx) -> None:
    web.add("https://example.com/", "%PDF-1.4", content_type="application/pdf")

    with pytest.raises(ParseError):
        parse_source(_source(SourceType.web, "https://example.com/"), ctx)
