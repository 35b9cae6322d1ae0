# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Sitemap-driven URL discovery.

Seeds come from the ``Sitemap:`` directives of robots.txt (Protego), with
``{base}/sitemap.xml`` as fallback.  The sitemap graph is walked
iteratively (explicit stack, visited set, depth cap) so a cyclic or very
deep index can neither loop nor blow the call stack.

A sitemap that fails to fetch or parse is logged and skipped; discovery
never fails as a whole because of one bad source.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

import httpx
import lxml.etree
from protego import Protego

from .errors import SitemapError

try:
    from importlib.metadata import version as _pkg_version

    _UIAUDIT_VERSION = _pkg_version("uiaudit")
except Exception:
    _UIAUDIT_VERSION = "unknown"

logger = logging.getLogger(__name__)

INVENTORY_USER_AGENT = f"uiaudit/{_UIAUDIT_VERSION}"
_SITEMAP_ACCEPT = "application/xml,text/xml,*/*"
_SITEMAP_TIMEOUT = 30.0
_POLITENESS_DELAY = 0.05  # seconds before every non-seed sitemap fetch
MAX_SITEMAP_DEPTH = 8
_MAX_SITEMAP_BYTES = 50 * 1024 * 1024  # protocol limit for one uncompressed file
_GZIP_MAGIC = b"\x1f\x8b"
_GZIP_WBITS = 16 + zlib.MAX_WBITS  # gzip header and trailer

# Hardened parser: no entity expansion, no network, no DTD loading.
_XML_PARSER = lxml.etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    load_dtd=False,
    huge_tree=False,
    remove_comments=True,
)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DiscoveredUrl:
    """A page URL found in a URL-set sitemap."""

    url: str
    discovered_from: str  # sitemap the URL was listed in
    lastmod: str | None = None


class SitemapKind(StrEnum):
    INDEX = "index"
    URLSET = "urlset"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class SitemapDocument:
    """Parsed content of one sitemap file."""

    kind: SitemapKind
    child_sitemaps: list[str] = field(default_factory=list)
    urls: list[DiscoveredUrl] = field(default_factory=list)


@dataclass(slots=True)
class DiscoveryStats:
    """Counters from one discovery walk."""

    sitemaps_fetched: int = 0
    sitemaps_failed: int = 0
    depth_capped: int = 0
    urls_seen: int = 0
    failures: dict[str, str] = field(default_factory=dict)  # sitemap url -> reason

    def record_failure(self, sitemap_url: str, reason: str) -> None:
        self.sitemaps_failed += 1
        self.failures[sitemap_url] = reason


# ---------------------------------------------------------------------------
# Normalization + dedup
# ---------------------------------------------------------------------------


def normalize_url(url: str) -> str:
    """Lower-case and strip one trailing slash."""
    normalized = url.strip().lower()
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def deduplicate_urls(urls: Iterable[DiscoveredUrl]) -> list[DiscoveredUrl]:
    """Collapse entries by normalized URL, preserving first-seen order.

    Keeps the earliest ``discovered_from`` and the lexicographically
    greatest ``lastmod``; a missing lastmod never overrides a present one.
    """
    merged: dict[str, DiscoveredUrl] = {}
    for entry in urls:
        key = normalize_url(entry.url)
        if not key:
            continue
        existing = merged.get(key)
        if existing is None:
            merged[key] = DiscoveredUrl(url=key, discovered_from=entry.discovered_from, lastmod=entry.lastmod)
            continue
        if entry.lastmod is not None and (existing.lastmod is None or entry.lastmod > existing.lastmod):
            merged[key] = DiscoveredUrl(url=key, discovered_from=existing.discovered_from, lastmod=entry.lastmod)
    return list(merged.values())


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _maybe_decompress(body: bytes, url: str) -> bytes:
    if not body or not (url.lower().endswith(".gz") or body[:2] == _GZIP_MAGIC):
        return body
    # Inflate at most one byte past the cap so a gzip bomb is never fully expanded.
    inflater = zlib.decompressobj(wbits=_GZIP_WBITS)
    try:
        data = inflater.decompress(body, _MAX_SITEMAP_BYTES + 1)
    except zlib.error as exc:
        # .gz URL already served decompressed
        if body[:2] != _GZIP_MAGIC:
            return body
        raise SitemapError(f"Failed to decompress {url}: {exc}") from exc
    if len(data) > _MAX_SITEMAP_BYTES:
        raise SitemapError(f"Sitemap {url} exceeds {_MAX_SITEMAP_BYTES} bytes uncompressed")
    if not inflater.eof:
        raise SitemapError(f"Failed to decompress {url}: truncated gzip stream")
    return data


def _child_text(el: lxml.etree._Element, name: str) -> str | None:
    for child in el:
        if isinstance(child.tag, str) and lxml.etree.QName(child).localname == name:
            text = (child.text or "").strip()
            return text or None
    return None


def parse_sitemap(body: bytes, source_url: str) -> SitemapDocument:
    """Parse a sitemap index or URL set.  Namespace-agnostic.

    Raises:
        SitemapError: Body is not well-formed XML.
    """
    body = _maybe_decompress(body, source_url)
    try:
        root = lxml.etree.fromstring(body, parser=_XML_PARSER)
    except lxml.etree.XMLSyntaxError as exc:
        raise SitemapError(f"Malformed sitemap {source_url}: {exc}") from exc
    if root is None:
        raise SitemapError(f"Empty sitemap {source_url}")

    kind = lxml.etree.QName(root).localname.lower()
    if kind == "sitemapindex":
        doc = SitemapDocument(kind=SitemapKind.INDEX)
        for entry in root:
            if isinstance(entry.tag, str) and lxml.etree.QName(entry).localname == "sitemap":
                loc = _child_text(entry, "loc")
                if loc:
                    doc.child_sitemaps.append(loc)
        return doc

    if kind == "urlset":
        doc = SitemapDocument(kind=SitemapKind.URLSET)
        for entry in root:
            if isinstance(entry.tag, str) and lxml.etree.QName(entry).localname == "url":
                loc = _child_text(entry, "loc")
                if loc:
                    doc.urls.append(
                        DiscoveredUrl(url=loc, discovered_from=source_url, lastmod=_child_text(entry, "lastmod"))
                    )
        return doc

    logger.debug("Ignoring non-sitemap XML root <%s> at %s", kind, source_url)
    return SitemapDocument(kind=SitemapKind.UNKNOWN)


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


def _new_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": INVENTORY_USER_AGENT, "Accept": _SITEMAP_ACCEPT},
        timeout=_SITEMAP_TIMEOUT,
        follow_redirects=True,
    )


async def _fetch_bytes(client: httpx.AsyncClient, url: str) -> bytes:
    try:
        response = await client.get(url)
    except httpx.HTTPError as exc:
        raise SitemapError(f"Failed to fetch {url}: {exc}") from exc
    if response.status_code >= 400:
        raise SitemapError(f"Failed to fetch {url}: HTTP {response.status_code}")
    return response.content


async def sitemap_seeds(client: httpx.AsyncClient, base_url: str) -> list[str]:
    """Sitemap URLs declared in robots.txt, or the conventional fallback."""
    base = base_url.rstrip("/")
    fallback = [f"{base}/sitemap.xml"]
    robots_url = f"{base}/robots.txt"
    try:
        body = await _fetch_bytes(client, robots_url)
    except SitemapError as exc:
        logger.info("robots.txt unavailable (%s), using %s", exc, fallback[0])
        return fallback

    robots = Protego.parse(body.decode("utf-8", errors="replace"))
    seeds = list(dict.fromkeys(s.strip() for s in robots.sitemaps if s.strip()))
    if not seeds:
        logger.info("No Sitemap: directives in %s, using %s", robots_url, fallback[0])
        return fallback
    logger.info("Found %d sitemap(s) in %s", len(seeds), robots_url)
    return seeds


async def walk_sitemaps(
    client: httpx.AsyncClient,
    seeds: list[str],
    *,
    delay: float = _POLITENESS_DELAY,
    max_depth: int = MAX_SITEMAP_DEPTH,
    stats: DiscoveryStats | None = None,
) -> list[DiscoveredUrl]:
    """Depth-first walk of the sitemap graph from *seeds* (not deduplicated)."""
    stats = stats if stats is not None else DiscoveryStats()
    visited: set[str] = set()
    found: list[DiscoveredUrl] = []
    # Reversed so seeds are visited in declaration order
    stack: list[tuple[str, int]] = [(s, 0) for s in reversed(seeds)]

    while stack:
        url, depth = stack.pop()
        key = url.strip()
        if not key or key in visited:
            continue
        if depth > max_depth:
            stats.depth_capped += 1
            logger.warning("Sitemap depth cap (%d) reached at %s", max_depth, key)
            continue
        visited.add(key)

        if depth > 0 and delay > 0:
            await asyncio.sleep(delay)

        try:
            doc = parse_sitemap(await _fetch_bytes(client, key), key)
        except SitemapError as exc:
            stats.record_failure(key, str(exc))
            logger.warning("Skipping sitemap %s: %s", key, exc)
            continue
        stats.sitemaps_fetched += 1

        if doc.kind is SitemapKind.INDEX:
            for child in reversed(doc.child_sitemaps):
                stack.append((child, depth + 1))
        elif doc.kind is SitemapKind.URLSET:
            found.extend(doc.urls)
            stats.urls_seen += len(doc.urls)

    return found


async def discover_urls(
    base_url: str,
    *,
    client: httpx.AsyncClient | None = None,
    delay: float = _POLITENESS_DELAY,
    max_depth: int = MAX_SITEMAP_DEPTH,
    stats: DiscoveryStats | None = None,
) -> list[DiscoveredUrl]:
    """Discover and deduplicate every page URL reachable from *base_url*'s sitemaps."""
    owns_client = client is None
    http = client if client is not None else _new_client()
    try:
        seeds = await sitemap_seeds(http, base_url)
        raw = await walk_sitemaps(http, seeds, delay=delay, max_depth=max_depth, stats=stats)
    finally:
        if owns_client:
            await http.aclose()

    unique = deduplicate_urls(raw)
    logger.info("Discovered %d URL(s), %d unique, from %s", len(raw), len(unique), base_url)
    return unique
