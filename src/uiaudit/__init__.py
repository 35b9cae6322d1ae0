# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""UI audit: page inventory, fetch pipeline and component detection.

Discovers a market's pages from its sitemap graph, captures their markup
(static fetch or headless render), deduplicates by content hash and runs a
heuristic rule engine that reports reusable UI components per page:
- inventory: one UrlRecord per (market, normalized url)
- detections: component key, instance count, confidence, evidence
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class UrlStatus(StrEnum):
    PENDING = "pending"
    FETCHED = "fetched"
    FAILED = "failed"
    SKIPPED = "skipped"


class RenderMode(StrEnum):
    STATIC = "static"
    RENDERED = "rendered"


class Confidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ComponentKey(StrEnum):
    """Closed set of UI components the detection engine can report."""

    TABS = "tabs"
    ACCORDION = "accordion"
    ANCHOR_NAV = "anchor_nav"
    IMAGE_CAROUSEL = "image_carousel"
    CARD_CAROUSEL = "card_carousel"
    CARDS_SECTION = "cards_section"
    ICON_GRID = "icon_grid"
    MEDIA_TEXT_SPLIT = "media_text_split"
    INFO_SPECS = "info_specs"
    NEXT_ACTION_PANEL = "next_action_panel"
    HERO = "hero"
    PROMO_SECTION = "promo_section"


@dataclass
class UrlRecord:
    """One inventory row per (market, normalized url)."""

    id: int
    market: str
    url: str
    discovered_from: str | None = None
    sitemap_lastmod: str | None = None
    status: UrlStatus = UrlStatus.PENDING
    http_status: int | None = None
    final_url: str | None = None
    canonical_url: str | None = None
    render_mode: RenderMode | None = None
    content_hash: str | None = None
    duplicate_of_id: int | None = None
    html_path: str | None = None  # content store pointer
    error_message: str | None = None
    fetched_at: str | None = None
    html_fetched_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of_id is not None


@dataclass
class Detection:
    """A single component finding on one page."""

    component_key: ComponentKey
    instance_count: int
    confidence: Confidence
    evidence: str  # human-readable summary, stable textual shape
    details: dict[str, Any] = field(default_factory=dict)  # structured projection of evidence

    def __post_init__(self) -> None:
        if self.instance_count < 1:
            raise ValueError(f"instance_count must be >= 1, got {self.instance_count}")

    def __str__(self) -> str:
        return f"{self.component_key}[{self.instance_count}, {self.confidence}] {self.evidence}"


__all__ = [
    "ComponentKey",
    "Confidence",
    "Detection",
    "RenderMode",
    "UrlRecord",
    "UrlStatus",
]
