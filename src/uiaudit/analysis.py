# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Analysis runner: cached markup → detection engine → detection rows.

Eligible rows are fetched, unique (not a duplicate) and cached, taken in
id order.  Each page's detection set is replaced atomically, so re-running
a window is idempotent.  A page whose cache entry is missing or corrupt is
counted as an error and skipped; the batch continues.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from . import Detection
from .config import AnalysisConfig
from .content_store import ContentStore
from .detection import detect_with_report
from .errors import ContentStoreError
from .logging_config import job_context
from .repository import ComponentSummary, SqliteRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AnalysisResult:
    processed: int = 0
    with_detections: int = 0
    detections: int = 0
    errors: int = 0
    rule_failures: int = 0
    batches: int = 0
    reset_rows: int = 0
    failed_urls: list[str] = field(default_factory=list)

    def merge(self, other: AnalysisResult) -> None:
        self.processed += other.processed
        self.with_detections += other.with_detections
        self.detections += other.detections
        self.errors += other.errors
        self.rule_failures += other.rule_failures
        self.batches += other.batches
        self.failed_urls.extend(other.failed_urls)


def _analyze_cached(store: ContentStore, pointer: str) -> tuple[list[Detection], int]:
    """Read + detect in one worker thread.  Returns (detections, failed rule count)."""
    report = detect_with_report(store.get(pointer))
    return report.detections, len(report.failed_rules)


async def _analyze_batch(
    repo: SqliteRepository, store: ContentStore, market: str, limit: int, offset: int
) -> tuple[AnalysisResult, int]:
    records = await repo.list_analyzable(market, limit, offset)
    result = AnalysisResult(batches=1)
    for record in records:
        try:
            detections, failed_rules = await asyncio.to_thread(_analyze_cached, store, record.html_path)
            await repo.replace_detections(record.id, detections)
        except ContentStoreError as exc:
            logger.warning("Analysis skipped %s: %s", record.url, exc)
            result.errors += 1
            result.failed_urls.append(record.url)
            continue
        finally:
            result.processed += 1
        result.rule_failures += failed_rules
        result.detections += len(detections)
        if detections:
            result.with_detections += 1
    return result, len(records)


async def run_analysis(
    repo: SqliteRepository, store: ContentStore, config: AnalysisConfig | None = None
) -> AnalysisResult:
    """Analyze one ``limit``/``offset`` window of eligible pages."""
    cfg = config or AnalysisConfig()
    with job_context("analysis", cfg.market):
        reset_rows = await repo.reset_detections(cfg.market) if cfg.reset else 0
        if cfg.reset:
            logger.info("Reset %d existing detection row(s)", reset_rows)
        result, count = await _analyze_batch(repo, store, cfg.market, cfg.limit, cfg.offset)
        result.reset_rows = reset_rows
        logger.info(
            "Analysis done: %d/%d page(s), %d with detections, %d detection(s), %d error(s)",
            result.processed,
            count,
            result.with_detections,
            result.detections,
            result.errors,
        )
    return result


async def run_all_analysis(
    repo: SqliteRepository,
    store: ContentStore,
    *,
    market: str,
    batch_size: int = 200,
    start_offset: int = 0,
    max_batches: int | None = None,
    reset: bool = False,
) -> AnalysisResult:
    """Walk every eligible page in ``batch_size`` windows.

    Stops on an empty batch, a batch shorter than ``batch_size``, or after
    ``max_batches``.
    """
    if batch_size <= 0:
        raise ValueError(f"batch_size must be > 0, got {batch_size}")
    if start_offset < 0:
        raise ValueError(f"start_offset must be >= 0, got {start_offset}")

    total = AnalysisResult()
    with job_context("analysis", market):
        if reset:
            total.reset_rows = await repo.reset_detections(market)
            logger.info("Reset %d existing detection row(s)", total.reset_rows)

        offset = start_offset
        while max_batches is None or total.batches < max_batches:
            logger.info("Analysis batch %d: limit=%d offset=%d", total.batches + 1, batch_size, offset)
            batch, count = await _analyze_batch(repo, store, market, batch_size, offset)
            if count == 0:
                break
            total.merge(batch)
            offset += count
            if count < batch_size:
                break

        logger.info(
            "Run-all done: %d batch(es), %d page(s), %d detection(s), %d error(s)",
            total.batches,
            total.processed,
            total.detections,
            total.errors,
        )
    return total


async def analysis_summary(repo: SqliteRepository, market: str) -> list[ComponentSummary]:
    """Pages and instances per component key, most widespread first."""
    return await repo.component_summary(market)
