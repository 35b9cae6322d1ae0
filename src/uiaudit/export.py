# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Detections export for the review tool.

Output shape::

    {generated_at, market, summary{...}, urls: [
        {url, url_id, detections: [
            {component_key, instance_count, confidence, evidence_raw, evidence_parsed}]}]}

``evidence_parsed`` is the stored ``details`` projection when the row has
one, else a best-effort parse of the evidence string (may be null).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ._jsonio import write_json
from .detection import parse_evidence
from .repository import SqliteRepository, StoredDetection

logger = logging.getLogger(__name__)


def _detection_entry(row: StoredDetection) -> dict[str, Any]:
    d = row.detection
    return {
        "component_key": d.component_key.value,
        "instance_count": d.instance_count,
        "confidence": d.confidence.value,
        "evidence_raw": d.evidence,
        "evidence_parsed": d.details or parse_evidence(d.component_key, d.evidence),
    }


async def export_detections(
    repo: SqliteRepository, market: str, *, urls: Sequence[str] | None = None
) -> dict[str, Any]:
    """Build the export document.

    With *urls*, every requested URL gets an entry (``url_id`` null when
    it is not in the inventory); otherwise every page with detections is
    listed.
    """
    entries: list[dict[str, Any]] = []

    if urls is None:
        rows = await repo.list_detections(market)
        by_url: dict[int, dict[str, Any]] = {}
        for row in rows:
            entry = by_url.get(row.url_id)
            if entry is None:
                entry = {"url": row.url, "url_id": row.url_id, "detections": []}
                by_url[row.url_id] = entry
                entries.append(entry)
            entry["detections"].append(_detection_entry(row))
        requested = len(entries)
        found = len(entries)
    else:
        unique = list(dict.fromkeys(u.strip() for u in urls if u.strip()))
        requested = len(unique)
        found = 0
        for url in unique:
            record = await repo.get_url_by_address(market, url)
            if record is None:
                logger.warning("URL not in inventory (%s): %s", market, url)
                entries.append({"url": url, "url_id": None, "detections": []})
                continue
            found += 1
            rows = await repo.list_detections(market, url_ids=[record.id])
            if not rows:
                logger.warning("URL has no detections (not analyzed yet?): %s", url)
            entries.append(
                {"url": url, "url_id": record.id, "detections": [_detection_entry(r) for r in rows]}
            )

    with_detections = sum(1 for e in entries if e["detections"])
    total_rows = sum(len(e["detections"]) for e in entries)
    return {
        "generated_at": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "market": market,
        "summary": {
            "total_urls_requested": requested,
            "total_urls_found_in_inventory": found,
            "total_urls_with_detections": with_detections,
            "total_detection_rows": total_rows,
        },
        "urls": entries,
    }


def write_export(path: str | Path, document: dict[str, Any]) -> Path:
    return write_json(path, document)
