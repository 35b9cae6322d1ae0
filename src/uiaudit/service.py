# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""AuditService — one entry point for every audit operation.

Owns the repository connection and the content store for one data
directory.  Each operation awaits completion and returns a result object.
Long jobs (fetch, backfill, analysis) are exclusive per kind: starting a
second job of a kind that is already running raises
:class:`~uiaudit.errors.JobAlreadyRunningError`.

Dependencies: every job module.  Nothing imports this module back.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import httpx

from . import UrlStatus
from . import config as _config
from .analysis import AnalysisResult, analysis_summary, run_all_analysis, run_analysis
from .browser import BrowserConfig
from .config import DEFAULT_MARKET, AnalysisConfig, BackfillConfig, FetchConfig
from .content_store import ContentStore
from .errors import JobAlreadyRunningError
from .export import export_detections, write_export
from .fetch_job import BackfillStats, FetchJob, FetchJobResult, FetchStats, backfill_cache
from .gate import GateReport, RegressionReport, build_regression_report, load_gate_config, score_gate, write_reports
from .inventory import DiscoveryStats, discover_urls
from .labels import load_labels
from .logging_config import job_context
from .repository import CacheStatus, ComponentSummary, SqliteRepository

logger = logging.getLogger(__name__)

JOB_FETCH = "fetch"
JOB_BACKFILL = "backfill"
JOB_ANALYSIS = "analysis"


# ---------------------------------------------------------------------------
# Result objects
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class InventoryBuildResult:
    market: str
    base_url: str
    discovered: int = 0
    unique: int = 0
    inserted: int = 0
    sitemaps_fetched: int = 0
    sitemaps_failed: int = 0
    stats: dict[str, int] = field(default_factory=dict)  # status -> count after the upsert


@dataclass(frozen=True, slots=True)
class FetchStatus:
    running: bool
    market: str | None
    stats: FetchStats | None
    pending: int | None = None


@dataclass(frozen=True, slots=True)
class GateRun:
    regression: RegressionReport
    gate: GateReport
    outputs: tuple[Path, ...] = ()

    @property
    def exit_code(self) -> int:
        return self.gate.exit_code


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuditService:
    def __init__(
        self,
        repo: SqliteRepository,
        store: ContentStore,
        *,
        fetch_config: FetchConfig | None = None,
        browser_config: BrowserConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._repo = repo
        self._store = store
        self._fetch_config = fetch_config or FetchConfig.from_env()
        self._browser_config = browser_config
        self._client = client  # shared HTTP client for tests / custom transports
        self._active: set[str] = set()
        self._fetch_job: FetchJob | None = None

    @classmethod
    async def create(
        cls,
        *,
        data_dir: str | Path | None = None,
        db_path: str | Path | None = None,
        **kwargs: Any,
    ) -> AuditService:
        """Open the store under *data_dir* (default ``UIAUDIT_DATA_DIR``) and its database."""
        root = Path(data_dir).expanduser() if data_dir is not None else _config.data_dir()
        if db_path is None:
            db_path = root / _config.DEFAULT_DB_NAME if data_dir is not None else _config.db_path()
        root.mkdir(parents=True, exist_ok=True)
        repo = await SqliteRepository.create(db_path)
        logger.info("AuditService ready (data_dir=%s, db=%s)", root, db_path)
        return cls(repo, ContentStore(root), **kwargs)

    async def close(self) -> None:
        if self._fetch_job is not None and self._fetch_job.running:
            self._fetch_job.stop()
        await self._repo.close()

    async def __aenter__(self) -> AuditService:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def repo(self) -> SqliteRepository:
        return self._repo

    @property
    def store(self) -> ContentStore:
        return self._store

    @contextmanager
    def _exclusive(self, job: str) -> Iterator[None]:
        if job in self._active:
            raise JobAlreadyRunningError(job)
        self._active.add(job)
        try:
            yield
        finally:
            self._active.discard(job)

    def is_running(self, job: str) -> bool:
        return job in self._active

    # ── Inventory ────────────────────────────────────────────────────

    async def build_inventory(self, base_url: str, market: str = DEFAULT_MARKET) -> InventoryBuildResult:
        """Discover sitemap URLs for *base_url* and upsert them as pending rows."""
        stats = DiscoveryStats()
        with job_context("inventory", market):
            urls = await discover_urls(base_url, client=self._client, stats=stats)
            inserted = await self._repo.upsert_urls(market, ((u.url, u.discovered_from, u.lastmod) for u in urls))
            logger.info("Inventory: %d unique URL(s), %d new", len(urls), inserted)
        inventory = await self._repo.inventory_stats(market)
        return InventoryBuildResult(
            market=market,
            base_url=base_url,
            discovered=stats.urls_seen,
            unique=len(urls),
            inserted=inserted,
            sitemaps_fetched=stats.sitemaps_fetched,
            sitemaps_failed=stats.sitemaps_failed,
            stats=inventory.get(market, {}),
        )

    async def inventory_stats(self, market: str | None = None) -> dict[str, dict[str, int]]:
        return await self._repo.inventory_stats(market)

    async def render_stats(self, market: str | None = None) -> dict[str, dict[str, int]]:
        return await self._repo.render_stats(market)

    # ── Fetch ────────────────────────────────────────────────────────

    async def start_fetch(self, config: FetchConfig | None = None, **overrides: Any) -> FetchJobResult:
        """Run one fetch batch to completion (or until :meth:`stop_fetch`)."""
        cfg = config or self._fetch_config
        if overrides:
            cfg = replace(cfg, **overrides)
        with self._exclusive(JOB_FETCH):
            job = FetchJob(self._repo, self._store, cfg, client=self._client, browser_config=self._browser_config)
            self._fetch_job = job
            return await job.run()

    def stop_fetch(self) -> bool:
        """Ask the running fetch batch to stop.  Returns False if none is running."""
        job = self._fetch_job
        if job is None or not self.is_running(JOB_FETCH):
            return False
        job.stop()
        return True

    async def fetch_status(self, market: str | None = None) -> FetchStatus:
        job = self._fetch_job
        running = self.is_running(JOB_FETCH)
        job_market = job.config.market if job is not None else None
        target = market or job_market
        pending = None
        if target is not None:
            pending = await self._repo.count_status(target, UrlStatus.PENDING)
        return FetchStatus(
            running=running,
            market=job_market,
            stats=job.stats if job is not None else None,
            pending=pending,
        )

    # ── Cache ────────────────────────────────────────────────────────

    async def backfill_cache(self, config: BackfillConfig | None = None) -> BackfillStats:
        cfg = config or BackfillConfig(market=self._fetch_config.market)
        with self._exclusive(JOB_BACKFILL):
            return await backfill_cache(
                self._repo,
                self._store,
                cfg,
                client=self._client,
                fetch_config=replace(self._fetch_config, market=cfg.market),
            )

    async def cache_status(self, market: str = DEFAULT_MARKET) -> CacheStatus:
        status = await self._repo.cache_status(market)
        disk = await asyncio.to_thread(self._store.stats, market)
        return replace(status, bytes_on_disk=disk.bytes_on_disk)

    # ── Analysis ─────────────────────────────────────────────────────

    async def run_analysis(self, config: AnalysisConfig | None = None) -> AnalysisResult:
        with self._exclusive(JOB_ANALYSIS):
            return await run_analysis(self._repo, self._store, config)

    async def run_all_analysis(
        self,
        market: str = DEFAULT_MARKET,
        *,
        batch_size: int = 200,
        start_offset: int = 0,
        max_batches: int | None = None,
        reset: bool = False,
    ) -> AnalysisResult:
        with self._exclusive(JOB_ANALYSIS):
            return await run_all_analysis(
                self._repo,
                self._store,
                market=market,
                batch_size=batch_size,
                start_offset=start_offset,
                max_batches=max_batches,
                reset=reset,
            )

    async def analysis_summary(self, market: str = DEFAULT_MARKET) -> list[ComponentSummary]:
        return await analysis_summary(self._repo, market)

    async def export_detections(
        self,
        market: str = DEFAULT_MARKET,
        *,
        urls: Sequence[str] | None = None,
        output: str | Path | None = None,
    ) -> dict[str, Any]:
        document = await export_detections(self._repo, market, urls=urls)
        if output is not None:
            write_export(output, document)
        return document

    # ── Gate ─────────────────────────────────────────────────────────

    async def run_gate(
        self,
        labels_path: str | Path,
        config_path: str | Path,
        *,
        out_dir: str | Path | None = None,
    ) -> GateRun:
        """Labels → regression report → gate verdict, optionally written to *out_dir*.

        Raises:
            GateInputError: labels file missing.
            GateConfigError: gate config missing or invalid.
            DataConsistencyError: a sufficient sample has no precision.
        """
        gate_config = load_gate_config(config_path)
        labels = load_labels(labels_path)
        regression = build_regression_report(labels, gate_config.min_sample_scored)
        report = score_gate(
            regression,
            gate_config,
            inputs={"labels": str(labels_path), "gates_config": str(config_path)},
        )
        outputs: tuple[Path, ...] = ()
        if out_dir is not None:
            outputs = write_reports(out_dir, regression, report)
        logger.info("Gate overall status: %s (exit %d)", report.overall_status.value, report.exit_code)
        return GateRun(regression=regression, gate=report, outputs=outputs)
