# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Batch fetch orchestrator — pending inventory rows to terminal states.

Per URL: static fetch (with retry) → DOM signature → optional headless
render → canonical URL + content hash → duplicate check → content store
write → status update.  Each URL ends ``fetched``, ``skipped`` (duplicate)
or ``failed``; one URL's failure never aborts the batch.

A pool of ``concurrency`` workers drains the batch; one
:class:`IntervalRateLimiter` shared by the pool spaces task starts.

Usage::

    job = FetchJob(repo, store, FetchConfig(market="UK"))
    result = await job.run()
    if not result.completed:
        ...  # more pending rows remain, run another batch
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace

import httpx

from . import RenderMode, UrlRecord, UrlStatus
from .browser import BrowserConfig, BrowserRenderer
from .config import FETCH_ACCEPT, BackfillConfig, FetchConfig
from .content_store import ContentStore
from .errors import ContentStoreError, FetchError, RenderError
from .logging_config import job_context
from .rate_limiter import IntervalRateLimiter
from .rendering import analyze_dom_signature, compute_content_hash, extract_canonical_url, needs_rendering
from .repository import SqliteRepository

logger = logging.getLogger(__name__)

_ERROR_MESSAGE_LIMIT = 500


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class FetchStats:
    """Running counters for one batch."""

    processed: int = 0
    fetched: int = 0
    skipped: int = 0
    failed: int = 0
    static: int = 0
    rendered: int = 0

    def record(self, status: UrlStatus) -> None:
        self.processed += 1
        if status is UrlStatus.FETCHED:
            self.fetched += 1
        elif status is UrlStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def snapshot(self) -> FetchStats:
        return replace(self)


@dataclass(frozen=True, slots=True)
class FetchJobResult:
    """Outcome of one batch."""

    completed: bool  # fewer pending rows than batch_size remained: nothing left
    stopped: bool  # stop() was requested before the batch drained
    batch: int
    stats: FetchStats


@dataclass(slots=True)
class BackfillStats:
    processed: int = 0
    cached: int = 0
    failed: int = 0


@dataclass(frozen=True, slots=True)
class StaticResponse:
    html: str
    status: int
    final_url: str


# ---------------------------------------------------------------------------
# Static fetch with retry
# ---------------------------------------------------------------------------


class StaticFetcher:
    """Plain HTTP GET with exponential-backoff retry on transport errors.

    Any HTTP response, whatever its status, is returned as-is; only
    transport failures and timeouts are retried.
    """

    def __init__(self, client: httpx.AsyncClient, *, max_retries: int = 3, retry_base_delay: float = 1.0) -> None:
        self._client = client
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay

    async def fetch(self, url: str) -> StaticResponse:
        attempt = 0
        while True:
            try:
                response = await self._client.get(url)
                return StaticResponse(html=response.text, status=response.status_code, final_url=str(response.url))
            except httpx.HTTPError as exc:
                if attempt >= self._max_retries:
                    raise FetchError(
                        f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
                        attempts=attempt + 1,
                    ) from exc
                backoff = self._retry_base_delay * 2**attempt
                logger.debug("Fetch %s failed (%s), retry %d in %.1fs", url, exc, attempt + 1, backoff)
                attempt += 1
                await asyncio.sleep(backoff)


def new_fetch_client(config: FetchConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": config.user_agent, "Accept": FETCH_ACCEPT},
        timeout=config.fetch_timeout,
        follow_redirects=True,
    )


# ---------------------------------------------------------------------------
# FetchJob
# ---------------------------------------------------------------------------


class FetchJob:
    """One bounded batch of pending URLs for a market."""

    def __init__(
        self,
        repo: SqliteRepository,
        store: ContentStore,
        config: FetchConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        renderer: BrowserRenderer | None = None,
        browser_config: BrowserConfig | None = None,
    ) -> None:
        self._repo = repo
        self._store = store
        self._config = config or FetchConfig()
        self._client = client
        self._renderer = renderer
        self._browser_config = browser_config
        self._renderer_used = False
        self._stats = FetchStats()
        self._stop = asyncio.Event()
        self._running = False

    @property
    def config(self) -> FetchConfig:
        return self._config

    @property
    def stats(self) -> FetchStats:
        """Live snapshot, safe to read while the batch runs."""
        return self._stats.snapshot()

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Start no new URL; in-flight URLs finish and commit."""
        if not self._stop.is_set():
            logger.info("Fetch job stop requested")
        self._stop.set()

    # ── Batch ────────────────────────────────────────────────────────

    async def run(self) -> FetchJobResult:
        cfg = self._config
        self._running = True
        owns_client = self._client is None
        client = self._client if self._client is not None else new_fetch_client(cfg)
        fetcher = StaticFetcher(client, max_retries=cfg.max_retries, retry_base_delay=cfg.retry_base_delay)
        limiter = IntervalRateLimiter(cfg.request_interval)

        try:
            with job_context("fetch", cfg.market):
                records = await self._repo.list_pending(cfg.market, cfg.batch_size)
                logger.info("Fetch batch: %d pending URL(s) (batch_size=%d)", len(records), cfg.batch_size)

                queue: asyncio.Queue[UrlRecord] = asyncio.Queue()
                for record in records:
                    queue.put_nowait(record)

                workers = min(cfg.concurrency, len(records))
                async with asyncio.TaskGroup() as tg:
                    for _ in range(workers):
                        tg.create_task(self._worker(queue, fetcher, limiter))

                stats = self.stats
                pacing = limiter.health()
                logger.info(
                    "Fetch batch done: processed=%d fetched=%d skipped=%d failed=%d static=%d rendered=%d"
                    " (paced %.1fs over %d start(s))",
                    stats.processed,
                    stats.fetched,
                    stats.skipped,
                    stats.failed,
                    stats.static,
                    stats.rendered,
                    pacing.total_waited,
                    pacing.total_acquired,
                )
        finally:
            if self._renderer is not None and self._renderer_used:
                await self._renderer.close()
            if owns_client:
                await client.aclose()
            self._running = False

        return FetchJobResult(
            completed=len(records) < cfg.batch_size,
            stopped=self._stop.is_set(),
            batch=len(records),
            stats=stats,
        )

    async def _worker(
        self,
        queue: asyncio.Queue[UrlRecord],
        fetcher: StaticFetcher,
        limiter: IntervalRateLimiter,
    ) -> None:
        while not self._stop.is_set():
            try:
                record = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await limiter.acquire()
            if self._stop.is_set():
                return
            status = await self.process_url(record, fetcher)
            self._stats.record(status)

    # ── Per URL ──────────────────────────────────────────────────────

    def _count_mode(self, mode: RenderMode) -> None:
        if mode is RenderMode.RENDERED:
            self._stats.rendered += 1
        else:
            self._stats.static += 1

    def _get_renderer(self) -> BrowserRenderer:
        if self._renderer is None:
            self._renderer = BrowserRenderer(self._browser_config)
        self._renderer_used = True
        return self._renderer

    async def process_url(self, record: UrlRecord, fetcher: StaticFetcher) -> UrlStatus:
        """Drive one URL to a terminal status.  Never raises for per-URL failures."""
        market = self._config.market
        try:
            page = await fetcher.fetch(record.url)
            html, http_status, final_url = page.html, page.status, page.final_url
            render_mode = RenderMode.STATIC

            if needs_rendering(analyze_dom_signature(html)):
                logger.info("Rendering %s with headless browser", record.url)
                rendered = await self._get_renderer().render(record.url)
                html, http_status, final_url = rendered.html, rendered.status, rendered.final_url
                render_mode = RenderMode.RENDERED

            canonical_url = extract_canonical_url(html)
            content_hash = compute_content_hash(html)

            original_id = await self._repo.find_duplicate(market, content_hash, record.id)
            if original_id is not None:
                await self._repo.mark_duplicate(
                    record.id,
                    duplicate_of_id=original_id,
                    http_status=http_status,
                    final_url=final_url,
                    canonical_url=canonical_url,
                    content_hash=content_hash,
                    render_mode=render_mode,
                )
                logger.info("Duplicate %s (original: ID %d)", record.url, original_id)
                self._count_mode(render_mode)
                return UrlStatus.SKIPPED

            pointer = await asyncio.to_thread(self._store.put, market, record.id, html)
            await self._repo.mark_fetched(
                record.id,
                http_status=http_status,
                final_url=final_url,
                canonical_url=canonical_url,
                content_hash=content_hash,
                render_mode=render_mode,
                html_path=pointer,
            )
            logger.debug("Fetched %s (%s, HTTP %s)", record.url, render_mode, http_status)
            self._count_mode(render_mode)
            return UrlStatus.FETCHED

        except (FetchError, RenderError, ContentStoreError) as exc:
            message = str(exc)
        except Exception as exc:
            logger.exception("Unexpected error processing %s", record.url)
            message = f"{type(exc).__name__}: {exc}"

        logger.warning("Failed %s: %s", record.url, message)
        await self._repo.mark_failed(record.id, message[:_ERROR_MESSAGE_LIMIT])
        return UrlStatus.FAILED


# ---------------------------------------------------------------------------
# Cache backfill
# ---------------------------------------------------------------------------


async def backfill_cache(
    repo: SqliteRepository,
    store: ContentStore,
    config: BackfillConfig | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    fetch_config: FetchConfig | None = None,
) -> BackfillStats:
    """Re-fetch markup for fetched rows that have no cache pointer.

    Uses the row's final URL when known.  Status and hash are left as-is;
    only the cache pointer is filled in.
    """
    cfg = config or BackfillConfig()
    fcfg = fetch_config or FetchConfig(market=cfg.market)
    records = await repo.list_uncached(cfg.market, cfg.batch_size, only_unique=cfg.only_unique)
    stats = BackfillStats()
    if not records:
        return stats

    owns_client = client is None
    http = client if client is not None else new_fetch_client(fcfg)
    fetcher = StaticFetcher(http, max_retries=fcfg.max_retries, retry_base_delay=fcfg.retry_base_delay)
    limiter = IntervalRateLimiter(cfg.request_interval)
    semaphore = asyncio.Semaphore(cfg.concurrency)

    async def _one(record: UrlRecord) -> None:
        async with semaphore:
            await limiter.acquire()
            try:
                page = await fetcher.fetch(record.final_url or record.url)
                pointer = await asyncio.to_thread(store.put, cfg.market, record.id, page.html)
                await repo.set_html_path(record.id, pointer)
            except (FetchError, ContentStoreError) as exc:
                stats.failed += 1
                logger.warning("Backfill failed for %s: %s", record.url, exc)
            else:
                stats.cached += 1
            finally:
                stats.processed += 1

    try:
        with job_context("backfill", cfg.market):
            async with asyncio.TaskGroup() as tg:
                for record in records:
                    tg.create_task(_one(record))
            pacing = limiter.health()
            logger.info(
                "Backfill done: processed=%d cached=%d failed=%d (paced %.1fs)",
                stats.processed,
                stats.cached,
                stats.failed,
                pacing.total_waited,
            )
    finally:
        if owns_client:
            await http.aclose()
    return stats
