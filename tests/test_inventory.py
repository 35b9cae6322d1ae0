# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for uiaudit.inventory — sitemap discovery."""

from __future__ import annotations

import gzip

import httpx
import pytest

from uiaudit.errors import SitemapError
from uiaudit.inventory import (
    DiscoveredUrl,
    DiscoveryStats,
    SitemapKind,
    deduplicate_urls,
    discover_urls,
    normalize_url,
    parse_sitemap,
    sitemap_seeds,
)

BASE = "https://www.example.com"
NS = 'xmlns="http://www.sitemaps.org/schemas/sitemap/0.9"'


def _urlset(*entries: tuple[str, str | None]) -> bytes:
    body = "".join(
        f"<url><loc>{loc}</loc>{f'<lastmod>{lastmod}</lastmod>' if lastmod else ''}</url>" for loc, lastmod in entries
    )
    return f'<?xml version="1.0" encoding="UTF-8"?><urlset {NS}>{body}</urlset>'.encode()


def _index(*locs: str) -> bytes:
    body = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locs)
    return f'<?xml version="1.0" encoding="UTF-8"?><sitemapindex {NS}>{body}</sitemapindex>'.encode()


def _client(routes: dict[str, bytes | int], requested: list[str] | None = None) -> httpx.AsyncClient:
    """Mock site: bytes → 200 body, int → bare status, unknown → 404."""

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if requested is not None:
            requested.append(url)
        value = routes.get(url, 404)
        if isinstance(value, int):
            return httpx.Response(value)
        return httpx.Response(200, content=value)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Normalization + dedup
# ---------------------------------------------------------------------------


class TestNormalize:
    def test_lowercase_and_trailing_slash(self):
        assert normalize_url("  https://WWW.Example.com/Vehicles/ ") == "https://www.example.com/vehicles"

    def test_only_one_slash_stripped(self):
        assert normalize_url("https://example.com/a//") == "https://example.com/a/"


class TestDeduplicate:
    def test_earliest_source_and_greatest_lastmod(self):
        urls = [
            DiscoveredUrl("https://example.com/a/", "s1.xml", "2024-01-01"),
            DiscoveredUrl("https://EXAMPLE.com/a", "s2.xml", "2024-06-01"),
            DiscoveredUrl("https://example.com/a", "s3.xml", None),
        ]
        [merged] = deduplicate_urls(urls)
        assert merged.url == "https://example.com/a"
        assert merged.discovered_from == "s1.xml"
        assert merged.lastmod == "2024-06-01"

    def test_null_lastmod_never_overrides(self):
        urls = [
            DiscoveredUrl("https://example.com/a", "s1.xml", "2024-01-01"),
            DiscoveredUrl("https://example.com/a", "s2.xml", None),
        ]
        assert deduplicate_urls(urls)[0].lastmod == "2024-01-01"

    def test_first_seen_order(self):
        urls = [DiscoveredUrl(u, "s.xml") for u in ("https://e.com/b", "https://e.com/a", "https://e.com/b/")]
        assert [u.url for u in deduplicate_urls(urls)] == ["https://e.com/b", "https://e.com/a"]

    def test_idempotent(self):
        urls = [DiscoveredUrl("https://e.com/A/", "s.xml", "2024")]
        once = deduplicate_urls(urls)
        assert deduplicate_urls(once) == once


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseSitemap:
    def test_urlset(self):
        doc = parse_sitemap(_urlset(("https://e.com/a", "2024-01-01"), ("https://e.com/b", None)), "s.xml")
        assert doc.kind is SitemapKind.URLSET
        assert [(u.url, u.lastmod, u.discovered_from) for u in doc.urls] == [
            ("https://e.com/a", "2024-01-01", "s.xml"),
            ("https://e.com/b", None, "s.xml"),
        ]

    def test_index(self):
        doc = parse_sitemap(_index("https://e.com/s1.xml", "https://e.com/s2.xml"), "index.xml")
        assert doc.kind is SitemapKind.INDEX
        assert doc.child_sitemaps == ["https://e.com/s1.xml", "https://e.com/s2.xml"]

    def test_without_namespace(self):
        doc = parse_sitemap(b"<urlset><url><loc>https://e.com/x</loc></url></urlset>", "s.xml")
        assert [u.url for u in doc.urls] == ["https://e.com/x"]

    def test_other_xml_ignored(self):
        doc = parse_sitemap(b"<rss><channel/></rss>", "feed.xml")
        assert doc.kind is SitemapKind.UNKNOWN
        assert doc.urls == [] and doc.child_sitemaps == []

    def test_gzip_by_magic(self):
        doc = parse_sitemap(gzip.compress(_urlset(("https://e.com/z", None))), "https://e.com/sitemap")
        assert [u.url for u in doc.urls] == ["https://e.com/z"]

    def test_oversized_gzip_rejected(self, monkeypatch):
        monkeypatch.setattr("uiaudit.inventory._MAX_SITEMAP_BYTES", 1024)
        body = gzip.compress(b"<urlset>" + b" " * 100_000 + b"</urlset>")
        with pytest.raises(SitemapError, match="exceeds 1024 bytes"):
            parse_sitemap(body, "https://e.com/big.xml.gz")

    def test_truncated_gzip_rejected(self):
        body = gzip.compress(_urlset(("https://e.com/t", None)))[:-12]
        with pytest.raises(SitemapError, match="decompress"):
            parse_sitemap(body, "https://e.com/sitemap.xml.gz")

    def test_gz_url_served_plain(self):
        doc = parse_sitemap(_urlset(("https://e.com/p", None)), "https://e.com/sitemap.xml.gz")
        assert [u.url for u in doc.urls] == ["https://e.com/p"]

    def test_malformed(self):
        with pytest.raises(SitemapError):
            parse_sitemap(b"<urlset><url>", "bad.xml")

    def test_entities_not_expanded(self):
        body = (
            b'<?xml version="1.0"?><!DOCTYPE urlset [<!ENTITY x "https://evil.example/">]>'
            b"<urlset><url><loc>&x;</loc></url></urlset>"
        )
        doc = parse_sitemap(body, "s.xml")
        assert all("evil" not in u.url for u in doc.urls)


# ---------------------------------------------------------------------------
# Seeds + walk
# ---------------------------------------------------------------------------


class TestSeeds:
    async def test_robots_sitemaps(self):
        robots = (
            b"User-agent: *\nDisallow: /private\n"
            b"Sitemap: https://www.example.com/a.xml\n"
            b"Sitemap: https://www.example.com/a.xml\n"
            b"Sitemap: https://www.example.com/b.xml\n"
        )
        async with _client({f"{BASE}/robots.txt": robots}) as client:
            seeds = await sitemap_seeds(client, BASE + "/")
        assert seeds == [f"{BASE}/a.xml", f"{BASE}/b.xml"]

    async def test_fallback_when_robots_missing(self):
        async with _client({}) as client:
            assert await sitemap_seeds(client, BASE) == [f"{BASE}/sitemap.xml"]

    async def test_fallback_when_no_directives(self):
        async with _client({f"{BASE}/robots.txt": b"User-agent: *\nDisallow:\n"}) as client:
            assert await sitemap_seeds(client, BASE) == [f"{BASE}/sitemap.xml"]


class TestDiscover:
    async def test_index_recursion(self):
        routes = {
            f"{BASE}/robots.txt": f"Sitemap: {BASE}/index.xml\n".encode(),
            f"{BASE}/index.xml": _index(f"{BASE}/models.xml", f"{BASE}/offers.xml"),
            f"{BASE}/models.xml": _urlset((f"{BASE}/vehicles/juke", "2024-02-01")),
            f"{BASE}/offers.xml": _urlset((f"{BASE}/offers", None), (f"{BASE}/Vehicles/Juke/", "2024-03-01")),
        }
        stats = DiscoveryStats()
        async with _client(routes) as client:
            urls = await discover_urls(BASE, client=client, delay=0, stats=stats)

        assert [u.url for u in urls] == [f"{BASE}/vehicles/juke".lower(), f"{BASE}/offers"]
        assert urls[0].discovered_from == f"{BASE}/models.xml"
        assert urls[0].lastmod == "2024-03-01"
        assert stats.sitemaps_fetched == 3
        assert stats.urls_seen == 3

    async def test_cycle_visited_once(self):
        requested: list[str] = []
        routes = {
            f"{BASE}/sitemap.xml": _index(f"{BASE}/a.xml"),
            f"{BASE}/a.xml": _index(f"{BASE}/sitemap.xml", f"{BASE}/pages.xml"),
            f"{BASE}/pages.xml": _urlset((f"{BASE}/page", None)),
        }
        async with _client(routes, requested) as client:
            urls = await discover_urls(BASE, client=client, delay=0)
        assert [u.url for u in urls] == [f"{BASE}/page"]
        assert requested.count(f"{BASE}/sitemap.xml") == 1

    async def test_depth_cap(self):
        routes = {f"{BASE}/sitemap.xml": _index(f"{BASE}/d1.xml")}
        for depth in range(1, 5):
            routes[f"{BASE}/d{depth}.xml"] = _index(f"{BASE}/d{depth + 1}.xml")
        routes[f"{BASE}/d5.xml"] = _urlset((f"{BASE}/deep", None))
        stats = DiscoveryStats()
        async with _client(routes) as client:
            urls = await discover_urls(BASE, client=client, delay=0, max_depth=3, stats=stats)
        assert urls == []
        assert stats.depth_capped == 1

    async def test_bad_sitemap_skipped(self):
        routes = {
            f"{BASE}/sitemap.xml": _index(f"{BASE}/broken.xml", f"{BASE}/gone.xml", f"{BASE}/ok.xml"),
            f"{BASE}/broken.xml": b"<urlset><url>",
            f"{BASE}/gone.xml": 500,
            f"{BASE}/ok.xml": _urlset((f"{BASE}/fine", None)),
        }
        stats = DiscoveryStats()
        async with _client(routes) as client:
            urls = await discover_urls(BASE, client=client, delay=0, stats=stats)
        assert [u.url for u in urls] == [f"{BASE}/fine"]
        assert stats.sitemaps_failed == 2
        assert set(stats.failures) == {f"{BASE}/broken.xml", f"{BASE}/gone.xml"}

    async def test_gzipped_child_sitemap(self):
        routes = {
            f"{BASE}/sitemap.xml": _index(f"{BASE}/pages.xml.gz"),
            f"{BASE}/pages.xml.gz": gzip.compress(_urlset((f"{BASE}/zipped", None))),
        }
        async with _client(routes) as client:
            urls = await discover_urls(BASE, client=client, delay=0)
        assert [u.url for u in urls] == [f"{BASE}/zipped"]

    async def test_no_sitemaps_at_all(self):
        async with _client({}) as client:
            assert await discover_urls(BASE, client=client, delay=0) == []
