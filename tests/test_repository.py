# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for uiaudit.repository — inventory + detection store."""

from __future__ import annotations

import asyncio

import aiosqlite
import pytest

from uiaudit import ComponentKey, Confidence, Detection, RenderMode, UrlStatus
from uiaudit.repository import SqliteRepository

MARKET = "UK"


async def _seed(repo: SqliteRepository, *urls: str, market: str = MARKET) -> list[int]:
    await repo.upsert_urls(market, [(u, "https://e.com/sitemap.xml", None) for u in urls])
    ids = []
    for u in urls:
        record = await repo.get_url_by_address(market, u)
        assert record is not None
        ids.append(record.id)
    return ids


async def _fetch(repo: SqliteRepository, url_id: int, content_hash: str = "h", **kwargs) -> None:
    await repo.mark_fetched(
        url_id,
        http_status=kwargs.get("http_status", 200),
        final_url=kwargs.get("final_url"),
        canonical_url=None,
        content_hash=content_hash,
        render_mode=kwargs.get("render_mode", RenderMode.STATIC),
        html_path=kwargs.get("html_path", f"html/UK/{url_id}.html.gz"),
    )


def _accordion(items: int = 3) -> Detection:
    return Detection(
        component_key=ComponentKey.ACCORDION,
        instance_count=1,
        confidence=Confidence.HIGH,
        evidence=f"accordion: 1, items={items}, source=details",
        details={"items": items, "source": "details"},
    )


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreate:
    async def test_parent_dirs_created(self, tmp_path):
        db_path = tmp_path / "deep" / "nested" / "uiaudit.db"
        repo = await SqliteRepository.create(db_path)
        try:
            assert db_path.exists()
        finally:
            await repo.close()

    async def test_wal_mode(self, repo):
        cursor = await repo._db.execute("PRAGMA journal_mode")
        assert (await cursor.fetchone())[0] == "wal"

    async def test_schema_version(self, repo):
        cursor = await repo._db.execute("PRAGMA user_version")
        assert (await cursor.fetchone())[0] == 1

    async def test_newer_schema_rejected(self, tmp_path):
        db_path = tmp_path / "future.db"
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA user_version = 99")
            await db.commit()
        with pytest.raises(ValueError, match="newer"):
            await SqliteRepository.create(db_path)

    async def test_reopen_keeps_data(self, tmp_path):
        db_path = tmp_path / "persist.db"
        repo = await SqliteRepository.create(db_path)
        await _seed(repo, "https://e.com/a")
        await repo.close()
        repo = await SqliteRepository.create(db_path)
        try:
            assert (await repo.inventory_stats(MARKET))[MARKET]["total"] == 1
        finally:
            await repo.close()

    async def test_close_idempotent(self, tmp_path):
        repo = await SqliteRepository.create(tmp_path / "c.db")
        await repo.close()
        await repo.close()


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


class TestUpsert:
    async def test_new_rows_pending(self, repo):
        rows = [("https://e.com/a", "s.xml", "2024-01-01"), ("https://e.com/b", "s.xml", None)]
        inserted = await repo.upsert_urls(MARKET, rows)
        assert inserted == 2
        record = await repo.get_url_by_address(MARKET, "https://e.com/a")
        assert record.status is UrlStatus.PENDING
        assert record.discovered_from == "s.xml"
        assert record.sitemap_lastmod == "2024-01-01"
        assert record.created_at is not None

    async def test_idempotent(self, repo):
        rows = [("https://e.com/a", "s.xml", None)]
        assert await repo.upsert_urls(MARKET, rows) == 1
        assert await repo.upsert_urls(MARKET, rows) == 0
        assert (await repo.inventory_stats(MARKET))[MARKET]["total"] == 1

    async def test_lastmod_refreshed_but_status_kept(self, repo):
        [url_id] = await _seed(repo, "https://e.com/a")
        await _fetch(repo, url_id)
        await repo.upsert_urls(MARKET, [("https://e.com/a", "other.xml", "2025-01-01")])
        record = await repo.get_url(url_id)
        assert record.status is UrlStatus.FETCHED
        assert record.sitemap_lastmod == "2025-01-01"
        assert record.discovered_from == "https://e.com/sitemap.xml"

    async def test_null_lastmod_keeps_existing(self, repo):
        await repo.upsert_urls(MARKET, [("https://e.com/a", "s.xml", "2024-01-01")])
        await repo.upsert_urls(MARKET, [("https://e.com/a", "s.xml", None)])
        assert (await repo.get_url_by_address(MARKET, "https://e.com/a")).sitemap_lastmod == "2024-01-01"

    async def test_same_url_other_market(self, repo):
        await _seed(repo, "https://e.com/a")
        assert await repo.upsert_urls("DE", [("https://e.com/a", "s.xml", None)]) == 1


class TestQueries:
    async def test_list_pending_oldest_first(self, repo):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b", "https://e.com/c")
        await _fetch(repo, ids[0])
        pending = await repo.list_pending(MARKET, 10)
        assert [r.id for r in pending] == ids[1:]
        assert [r.id for r in await repo.list_pending(MARKET, 1)] == [ids[1]]

    async def test_inventory_stats(self, repo):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b", "https://e.com/c")
        await _fetch(repo, ids[0])
        await repo.mark_failed(ids[1], "boom")
        stats = await repo.inventory_stats()
        assert stats[MARKET] == {"pending": 1, "fetched": 1, "failed": 1, "skipped": 0, "total": 3}

    async def test_render_stats(self, repo):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b", "https://e.com/c")
        await _fetch(repo, ids[0], "h1")
        await _fetch(repo, ids[1], "h2", render_mode=RenderMode.RENDERED)
        assert await repo.render_stats(MARKET) == {MARKET: {"static": 1, "rendered": 1}}

    async def test_count_status(self, repo):
        await _seed(repo, "https://e.com/a", "https://e.com/b")
        assert await repo.count_status(MARKET, UrlStatus.PENDING) == 2


# ---------------------------------------------------------------------------
# Fetch transitions
# ---------------------------------------------------------------------------


class TestTransitions:
    async def test_mark_fetched(self, repo):
        [url_id] = await _seed(repo, "https://e.com/a")
        await _fetch(repo, url_id, "abc", final_url="https://e.com/a?x=1")
        record = await repo.get_url(url_id)
        assert record.status is UrlStatus.FETCHED
        assert record.content_hash == "abc"
        assert record.final_url == "https://e.com/a?x=1"
        assert record.render_mode is RenderMode.STATIC
        assert record.html_path == f"html/UK/{url_id}.html.gz"
        assert record.fetched_at is not None and record.html_fetched_at is not None

    async def test_find_duplicate_earliest_fetched(self, repo):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b", "https://e.com/c")
        await _fetch(repo, ids[1], "same")
        await _fetch(repo, ids[0], "same")
        assert await repo.find_duplicate(MARKET, "same", ids[2]) == ids[0]
        assert await repo.find_duplicate(MARKET, "same", ids[0]) == ids[1]
        assert await repo.find_duplicate(MARKET, "other", ids[2]) is None

    async def test_find_duplicate_market_scoped(self, repo):
        [uk] = await _seed(repo, "https://e.com/a")
        [de] = await _seed(repo, "https://e.com/a", market="DE")
        await _fetch(repo, uk, "same")
        assert await repo.find_duplicate("DE", "same", de) is None

    async def test_mark_duplicate(self, repo):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b")
        await _fetch(repo, ids[0], "same")
        await repo.mark_duplicate(
            ids[1],
            duplicate_of_id=ids[0],
            http_status=200,
            final_url="https://e.com/b",
            canonical_url="https://e.com/a",
            content_hash="same",
            render_mode=RenderMode.STATIC,
        )
        record = await repo.get_url(ids[1])
        assert record.status is UrlStatus.SKIPPED
        assert record.duplicate_of_id == ids[0]
        assert record.is_duplicate
        assert record.error_message == f"Duplicate content (original: ID {ids[0]})"
        assert record.html_path is None
        # a skipped row is never offered as an original
        assert await repo.find_duplicate(MARKET, "same", 9999) == ids[0]

    async def test_mark_failed(self, repo):
        [url_id] = await _seed(repo, "https://e.com/a")
        await repo.mark_failed(url_id, "x" * 5000, http_status=503)
        record = await repo.get_url(url_id)
        assert record.status is UrlStatus.FAILED
        assert record.http_status == 503
        assert len(record.error_message) == 1000

    async def test_concurrent_writes_serialized(self, repo):
        ids = await _seed(repo, *(f"https://e.com/{i}" for i in range(20)))
        await asyncio.gather(*(_fetch(repo, i, f"h{i}") for i in ids))
        assert await repo.count_status(MARKET, UrlStatus.FETCHED) == 20


class TestCachePointers:
    async def test_uncached_and_backfilled(self, repo):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b")
        await _fetch(repo, ids[0], "h1")
        await _fetch(repo, ids[1], "h2")
        await repo._db.execute("UPDATE url_inventory SET html_path = NULL WHERE id = ?", (ids[1],))
        await repo._db.commit()

        assert [r.id for r in await repo.list_uncached(MARKET, 10)] == [ids[1]]
        status = await repo.cache_status(MARKET)
        assert (status.total_fetched_unique, status.cached, status.remaining) == (2, 1, 1)

        await repo.set_html_path(ids[1], "html/UK/2.html.gz")
        assert await repo.list_uncached(MARKET, 10) == []
        assert (await repo.cache_status(MARKET)).remaining == 0


# ---------------------------------------------------------------------------
# Detections
# ---------------------------------------------------------------------------


class TestDetections:
    async def test_list_analyzable(self, repo):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b", "https://e.com/c")
        await _fetch(repo, ids[0], "h1")
        await _fetch(repo, ids[2], "h3")
        analyzable = await repo.list_analyzable(MARKET, 10)
        assert [r.id for r in analyzable] == [ids[0], ids[2]]
        assert [r.id for r in await repo.list_analyzable(MARKET, 10, offset=1)] == [ids[2]]

    async def test_replace_round_trip(self, repo):
        [url_id] = await _seed(repo, "https://e.com/a")
        await repo.replace_detections(url_id, [_accordion(3)])
        [stored] = await repo.list_detections(MARKET)
        assert stored.url == "https://e.com/a"
        assert stored.detection.component_key is ComponentKey.ACCORDION
        assert stored.detection.details == {"items": 3, "source": "details"}

    async def test_replace_is_not_additive(self, repo):
        [url_id] = await _seed(repo, "https://e.com/a")
        await repo.replace_detections(url_id, [_accordion(3)])
        await repo.replace_detections(url_id, [_accordion(4)])
        [stored] = await repo.list_detections(MARKET)
        assert stored.detection.evidence == "accordion: 1, items=4, source=details"

    async def test_replace_with_empty_clears(self, repo):
        [url_id] = await _seed(repo, "https://e.com/a")
        await repo.replace_detections(url_id, [_accordion()])
        await repo.replace_detections(url_id, [])
        assert await repo.list_detections(MARKET) == []

    async def test_list_filtered_by_url_ids(self, repo):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b")
        for url_id in ids:
            await repo.replace_detections(url_id, [_accordion()])
        assert [d.url_id for d in await repo.list_detections(MARKET, url_ids=[ids[1]])] == [ids[1]]
        assert await repo.list_detections(MARKET, url_ids=[]) == []

    async def test_reset_and_delete(self, repo):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b")
        await _fetch(repo, ids[0], "h1")
        for url_id in ids:
            await repo.replace_detections(url_id, [_accordion()])
        # only fetched, unique rows are reset
        assert await repo.reset_detections(MARKET) == 1
        assert await repo.delete_detections([ids[1]]) == 1
        assert await repo.delete_detections([]) == 0

    async def test_component_summary(self, repo):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b")
        hero = Detection(ComponentKey.HERO, 1, Confidence.MEDIUM, "hero: 1 (first content block)")
        promo = Detection(
            ComponentKey.PROMO_SECTION, 1, Confidence.MEDIUM, "promo_section: 1 (not first content block)"
        )
        await repo.replace_detections(ids[0], [hero, promo, promo])
        await repo.replace_detections(ids[1], [_accordion()])
        summary = {s.component_key: s for s in await repo.component_summary(MARKET)}
        assert summary["promo_section"].pages_with_component == 1
        assert summary["promo_section"].total_instances == 2
        assert summary["accordion"].pages_with_component == 1
