# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""SQLite-backed store for the URL inventory and component detections.

Uses ``aiosqlite`` with a single long-lived connection.  WAL journal mode
enables concurrent reads with serialized writes.  Schema versioned via
``PRAGMA user_version``.

Every write unit (one URL transition, one page's detection set) runs under
an ``asyncio.Lock`` and commits once, so concurrent workers sharing the
connection never interleave statements of different transactions.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from . import ComponentKey, Confidence, Detection, RenderMode, UrlRecord, UrlStatus

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_CREATE_URL_INVENTORY = """
CREATE TABLE IF NOT EXISTS url_inventory (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    market          TEXT NOT NULL,
    url             TEXT NOT NULL,
    discovered_from TEXT,
    sitemap_lastmod TEXT,
    status          TEXT NOT NULL DEFAULT 'pending',
    http_status     INTEGER,
    final_url       TEXT,
    canonical_url   TEXT,
    render_mode     TEXT,
    content_hash    TEXT,
    duplicate_of_id INTEGER REFERENCES url_inventory(id),
    html_path       TEXT,
    error_message   TEXT,
    fetched_at      TEXT,
    html_fetched_at TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    UNIQUE(market, url)
)
"""

_CREATE_COMPONENT_USAGE = """
CREATE TABLE IF NOT EXISTS component_usage (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    url_id         INTEGER NOT NULL REFERENCES url_inventory(id),
    component_key  TEXT NOT NULL,
    instance_count INTEGER NOT NULL DEFAULT 1,
    confidence     TEXT NOT NULL,
    evidence       TEXT NOT NULL DEFAULT '',
    evidence_json  TEXT,
    created_at     TEXT NOT NULL
)
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_url_inventory_market_status ON url_inventory(market, status)",
    "CREATE INDEX IF NOT EXISTS idx_url_inventory_url ON url_inventory(url)",
    "CREATE INDEX IF NOT EXISTS idx_url_inventory_content_hash ON url_inventory(content_hash)",
    "CREATE INDEX IF NOT EXISTS idx_url_inventory_final_url ON url_inventory(final_url)",
    "CREATE INDEX IF NOT EXISTS idx_component_usage_url_id ON component_usage(url_id)",
    "CREATE INDEX IF NOT EXISTS idx_component_usage_key ON component_usage(component_key)",
]

_URL_COLUMNS = (
    "id, market, url, discovered_from, sitemap_lastmod, status, http_status, final_url, "
    "canonical_url, render_mode, content_hash, duplicate_of_id, html_path, error_message, "
    "fetched_at, html_fetched_at, created_at, updated_at"
)


def _row_to_url_record(row: aiosqlite.Row) -> UrlRecord:
    """Convert a positional ``_URL_COLUMNS`` row to a ``UrlRecord``."""
    return UrlRecord(
        id=row[0],
        market=row[1],
        url=row[2],
        discovered_from=row[3],
        sitemap_lastmod=row[4],
        status=UrlStatus(row[5]),
        http_status=row[6],
        final_url=row[7],
        canonical_url=row[8],
        render_mode=RenderMode(row[9]) if row[9] else None,
        content_hash=row[10],
        duplicate_of_id=row[11],
        html_path=row[12],
        error_message=row[13],
        fetched_at=row[14],
        html_fetched_at=row[15],
        created_at=row[16],
        updated_at=row[17],
    )


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StoredDetection:
    """A detection row joined with its page."""

    id: int
    url_id: int
    url: str
    detection: Detection


@dataclass(frozen=True, slots=True)
class ComponentSummary:
    component_key: str
    pages_with_component: int
    total_instances: int


@dataclass(frozen=True, slots=True)
class CacheStatus:
    market: str
    total_fetched_unique: int
    cached: int
    bytes_on_disk: int = 0  # compressed size of the market's store directory

    @property
    def remaining(self) -> int:
        return max(0, self.total_fetched_unique - self.cached)


# ---------------------------------------------------------------------------
# SqliteRepository
# ---------------------------------------------------------------------------


class SqliteRepository:
    """Inventory + detection store.

    Use the ``create()`` async classmethod factory — never instantiate directly.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db
        self._write_lock = asyncio.Lock()

    @classmethod
    async def create(cls, db_path: str | Path) -> SqliteRepository:
        """Open (or create) a SQLite database and initialise the schema.

        Resolves ``~`` and creates parent directories automatically.

        Raises:
            ValueError: If the existing database has a newer schema version.
        """
        path = Path(db_path).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)

        db = await aiosqlite.connect(str(path))
        try:
            await db.execute("PRAGMA journal_mode = WAL")
            await db.execute("PRAGMA foreign_keys = ON")

            cursor = await db.execute("PRAGMA user_version")
            row = await cursor.fetchone()
            current_version = row[0] if row else 0

            if current_version > _SCHEMA_VERSION:
                raise ValueError(
                    f"Database schema version {current_version} is newer than supported version {_SCHEMA_VERSION}"
                )

            if current_version < _SCHEMA_VERSION:
                await db.execute(_CREATE_URL_INVENTORY)
                await db.execute(_CREATE_COMPONENT_USAGE)
                for idx_sql in _CREATE_INDEXES:
                    await db.execute(idx_sql)
                await db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
                await db.commit()
        except BaseException:
            await db.close()
            raise

        return cls(db)

    async def close(self) -> None:
        """Close the database connection. Idempotent."""
        with suppress(Exception):
            await self._db.close()

    # ── Inventory ─────────────────────────────────────────────────

    async def upsert_urls(self, market: str, urls: Iterable[tuple[str, str | None, str | None]]) -> int:
        """Insert ``(url, discovered_from, lastmod)`` rows; returns the number of new rows.

        Existing rows keep their status; only ``sitemap_lastmod`` is refreshed
        when the new value is non-null.
        """
        now = _now()
        async with self._write_lock:
            before = await self._count_market(market)
            await self._db.executemany(
                "INSERT INTO url_inventory (market, url, discovered_from, sitemap_lastmod, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(market, url) DO UPDATE SET "
                "sitemap_lastmod = COALESCE(excluded.sitemap_lastmod, url_inventory.sitemap_lastmod)",
                [(market, url, discovered_from, lastmod, now, now) for url, discovered_from, lastmod in urls],
            )
            await self._db.commit()
            after = await self._count_market(market)
        return after - before

    async def _count_market(self, market: str) -> int:
        cursor = await self._db.execute("SELECT COUNT(*) FROM url_inventory WHERE market = ?", (market,))
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_url(self, url_id: int) -> UrlRecord | None:
        cursor = await self._db.execute(f"SELECT {_URL_COLUMNS} FROM url_inventory WHERE id = ?", (url_id,))
        row = await cursor.fetchone()
        return _row_to_url_record(row) if row is not None else None

    async def get_url_by_address(self, market: str, url: str) -> UrlRecord | None:
        cursor = await self._db.execute(
            f"SELECT {_URL_COLUMNS} FROM url_inventory WHERE market = ? AND url = ?", (market, url)
        )
        row = await cursor.fetchone()
        return _row_to_url_record(row) if row is not None else None

    async def list_pending(self, market: str, limit: int) -> list[UrlRecord]:
        """Oldest pending rows first."""
        cursor = await self._db.execute(
            f"SELECT {_URL_COLUMNS} FROM url_inventory WHERE market = ? AND status = ? ORDER BY id LIMIT ?",
            (market, UrlStatus.PENDING.value, limit),
        )
        return [_row_to_url_record(r) for r in await cursor.fetchall()]

    async def count_status(self, market: str, status: UrlStatus) -> int:
        cursor = await self._db.execute(
            "SELECT COUNT(*) FROM url_inventory WHERE market = ? AND status = ?", (market, status.value)
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def inventory_stats(self, market: str | None = None) -> dict[str, dict[str, int]]:
        """``{market: {status: count, "total": n}}``."""
        sql = "SELECT market, status, COUNT(*) FROM url_inventory"
        params: tuple = ()
        if market is not None:
            sql += " WHERE market = ?"
            params = (market,)
        sql += " GROUP BY market, status ORDER BY market, status"
        cursor = await self._db.execute(sql, params)
        stats: dict[str, dict[str, int]] = {}
        for mkt, status, count in await cursor.fetchall():
            bucket = stats.setdefault(mkt, {s.value: 0 for s in UrlStatus} | {"total": 0})
            bucket[status] = count
            bucket["total"] += count
        return stats

    async def render_stats(self, market: str | None = None) -> dict[str, dict[str, int]]:
        """``{market: {render_mode: count}}`` over fetched rows."""
        sql = "SELECT market, render_mode, COUNT(*) FROM url_inventory WHERE status = ? AND render_mode IS NOT NULL"
        params: list = [UrlStatus.FETCHED.value]
        if market is not None:
            sql += " AND market = ?"
            params.append(market)
        sql += " GROUP BY market, render_mode ORDER BY market, render_mode"
        cursor = await self._db.execute(sql, params)
        stats: dict[str, dict[str, int]] = {}
        for mkt, mode, count in await cursor.fetchall():
            stats.setdefault(mkt, {m.value: 0 for m in RenderMode})[mode] = count
        return stats

    # ── Fetch transitions ─────────────────────────────────────────

    async def find_duplicate(self, market: str, content_hash: str, exclude_id: int) -> int | None:
        """Earliest fetched row in *market* with the same hash, if any.

        Fetched rows are never duplicates themselves, so the result is
        always an original.
        """
        cursor = await self._db.execute(
            "SELECT id FROM url_inventory WHERE market = ? AND content_hash = ? AND id != ? AND status = ? "
            "ORDER BY id ASC LIMIT 1",
            (market, content_hash, exclude_id, UrlStatus.FETCHED.value),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def mark_fetched(
        self,
        url_id: int,
        *,
        http_status: int | None,
        final_url: str | None,
        canonical_url: str | None,
        content_hash: str,
        render_mode: RenderMode,
        html_path: str,
    ) -> None:
        now = _now()
        async with self._write_lock:
            await self._db.execute(
                "UPDATE url_inventory SET status = ?, http_status = ?, final_url = ?, canonical_url = ?, "
                "content_hash = ?, render_mode = ?, html_path = ?, html_fetched_at = ?, duplicate_of_id = NULL, "
                "error_message = NULL, fetched_at = ?, updated_at = ? WHERE id = ?",
                (
                    UrlStatus.FETCHED.value,
                    http_status,
                    final_url,
                    canonical_url,
                    content_hash,
                    render_mode.value,
                    html_path,
                    now,
                    now,
                    now,
                    url_id,
                ),
            )
            await self._db.commit()

    async def mark_duplicate(
        self,
        url_id: int,
        *,
        duplicate_of_id: int,
        http_status: int | None,
        final_url: str | None,
        canonical_url: str | None,
        content_hash: str,
        render_mode: RenderMode,
    ) -> None:
        now = _now()
        async with self._write_lock:
            await self._db.execute(
                "UPDATE url_inventory SET status = ?, duplicate_of_id = ?, http_status = ?, final_url = ?, "
                "canonical_url = ?, content_hash = ?, render_mode = ?, error_message = ?, fetched_at = ?, "
                "updated_at = ? WHERE id = ?",
                (
                    UrlStatus.SKIPPED.value,
                    duplicate_of_id,
                    http_status,
                    final_url,
                    canonical_url,
                    content_hash,
                    render_mode.value,
                    f"Duplicate content (original: ID {duplicate_of_id})",
                    now,
                    now,
                    url_id,
                ),
            )
            await self._db.commit()

    async def mark_failed(self, url_id: int, error_message: str, *, http_status: int | None = None) -> None:
        now = _now()
        async with self._write_lock:
            await self._db.execute(
                "UPDATE url_inventory SET status = ?, error_message = ?, http_status = ?, fetched_at = ?, "
                "updated_at = ? WHERE id = ?",
                (UrlStatus.FAILED.value, error_message[:1000], http_status, now, now, url_id),
            )
            await self._db.commit()

    # ── Content cache pointers ────────────────────────────────────

    async def list_uncached(self, market: str, limit: int, *, only_unique: bool = True) -> list[UrlRecord]:
        """Fetched rows without a cache pointer, oldest first."""
        sql = f"SELECT {_URL_COLUMNS} FROM url_inventory WHERE market = ? AND status = ? AND html_path IS NULL"
        if only_unique:
            sql += " AND duplicate_of_id IS NULL"
        sql += " ORDER BY id LIMIT ?"
        cursor = await self._db.execute(sql, (market, UrlStatus.FETCHED.value, limit))
        return [_row_to_url_record(r) for r in await cursor.fetchall()]

    async def set_html_path(self, url_id: int, html_path: str) -> None:
        now = _now()
        async with self._write_lock:
            await self._db.execute(
                "UPDATE url_inventory SET html_path = ?, html_fetched_at = ?, updated_at = ? WHERE id = ?",
                (html_path, now, now, url_id),
            )
            await self._db.commit()

    async def cache_status(self, market: str) -> CacheStatus:
        cursor = await self._db.execute(
            "SELECT COUNT(*), COUNT(html_path) FROM url_inventory "
            "WHERE market = ? AND status = ? AND duplicate_of_id IS NULL",
            (market, UrlStatus.FETCHED.value),
        )
        row = await cursor.fetchone()
        total, cached = (row[0], row[1]) if row else (0, 0)
        return CacheStatus(market=market, total_fetched_unique=total, cached=cached)

    # ── Detections ────────────────────────────────────────────────

    async def list_analyzable(self, market: str, limit: int, offset: int = 0) -> list[UrlRecord]:
        """Fetched, unique, cached rows in id order."""
        cursor = await self._db.execute(
            f"SELECT {_URL_COLUMNS} FROM url_inventory "
            "WHERE market = ? AND status = ? AND duplicate_of_id IS NULL AND html_path IS NOT NULL "
            "ORDER BY id LIMIT ? OFFSET ?",
            (market, UrlStatus.FETCHED.value, limit, offset),
        )
        return [_row_to_url_record(r) for r in await cursor.fetchall()]

    async def delete_detections(self, url_ids: Sequence[int]) -> int:
        if not url_ids:
            return 0
        placeholders = ",".join("?" for _ in url_ids)
        async with self._write_lock:
            cursor = await self._db.execute(
                f"DELETE FROM component_usage WHERE url_id IN ({placeholders})", tuple(url_ids)
            )
            await self._db.commit()
        return cursor.rowcount

    async def reset_detections(self, market: str) -> int:
        """Drop detections of every fetched, unique row in *market*.  Returns rows deleted."""
        async with self._write_lock:
            cursor = await self._db.execute(
                "DELETE FROM component_usage WHERE url_id IN ("
                "SELECT id FROM url_inventory WHERE market = ? AND status = ? AND duplicate_of_id IS NULL)",
                (market, UrlStatus.FETCHED.value),
            )
            await self._db.commit()
        return cursor.rowcount

    async def replace_detections(self, url_id: int, detections: Sequence[Detection]) -> None:
        """Atomically swap the detection set of one page."""
        now = _now()
        async with self._write_lock:
            try:
                await self._db.execute("DELETE FROM component_usage WHERE url_id = ?", (url_id,))
                await self._db.executemany(
                    "INSERT INTO component_usage "
                    "(url_id, component_key, instance_count, confidence, evidence, evidence_json, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            url_id,
                            d.component_key.value,
                            d.instance_count,
                            d.confidence.value,
                            d.evidence,
                            json.dumps(d.details, ensure_ascii=False, sort_keys=True) if d.details else None,
                            now,
                        )
                        for d in detections
                    ],
                )
                await self._db.commit()
            except BaseException:
                await self._db.rollback()
                raise

    async def list_detections(self, market: str, *, url_ids: Sequence[int] | None = None) -> list[StoredDetection]:
        sql = (
            "SELECT c.id, c.url_id, u.url, c.component_key, c.instance_count, c.confidence, c.evidence, "
            "c.evidence_json FROM component_usage c JOIN url_inventory u ON u.id = c.url_id WHERE u.market = ?"
        )
        params: list = [market]
        if url_ids is not None:
            if not url_ids:
                return []
            sql += f" AND c.url_id IN ({','.join('?' for _ in url_ids)})"
            params.extend(url_ids)
        sql += " ORDER BY c.url_id, c.id"
        cursor = await self._db.execute(sql, params)
        result: list[StoredDetection] = []
        for row in await cursor.fetchall():
            try:
                key = ComponentKey(row[3])
            except ValueError:
                logger.warning("Skipping detection %d with unknown component key %r", row[0], row[3])
                continue
            details = json.loads(row[7]) if row[7] else {}
            result.append(
                StoredDetection(
                    id=row[0],
                    url_id=row[1],
                    url=row[2],
                    detection=Detection(
                        component_key=key,
                        instance_count=row[4],
                        confidence=Confidence(row[5]),
                        evidence=row[6],
                        details=details,
                    ),
                )
            )
        return result

    async def component_summary(self, market: str) -> list[ComponentSummary]:
        cursor = await self._db.execute(
            "SELECT c.component_key, COUNT(DISTINCT c.url_id), SUM(c.instance_count) "
            "FROM component_usage c JOIN url_inventory u ON u.id = c.url_id WHERE u.market = ? "
            "GROUP BY c.component_key ORDER BY COUNT(DISTINCT c.url_id) DESC, c.component_key",
            (market,),
        )
        return [
            ComponentSummary(component_key=row[0], pages_with_component=row[1], total_instances=row[2] or 0)
            for row in await cursor.fetchall()
        ]
