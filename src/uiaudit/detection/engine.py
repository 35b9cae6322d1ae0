# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Rule engine: one parse, a fixed ordered rule list, per-rule isolation.

Flow:
  markup
    → PageContext (lxml parse, content root, document-order index)
    → tabs → accordion → anchor_nav
    → image_carousel → card_carousel
    → cards_section → icon_grid → media_text_split → info_specs
    → next_action_panel → hero_promo
    → list[Detection]

A rule that raises is logged and contributes nothing; the remaining rules
still run.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .. import Detection
from .carousels import detect_card_carousel, detect_image_carousel
from .disclosure import detect_accordion, detect_anchor_nav, detect_tabs
from .dom import PageContext
from .hero import detect_hero_promo
from .sections import (
    detect_cards_section,
    detect_icon_grid,
    detect_info_specs,
    detect_media_text_split,
    detect_next_action_panel,
)

logger = logging.getLogger(__name__)

Rule = Callable[[PageContext], list[Detection]]

RULES: tuple[tuple[str, Rule], ...] = (
    ("tabs", detect_tabs),
    ("accordion", detect_accordion),
    ("anchor_nav", detect_anchor_nav),
    ("image_carousel", detect_image_carousel),
    ("card_carousel", detect_card_carousel),
    ("cards_section", detect_cards_section),
    ("icon_grid", detect_icon_grid),
    ("media_text_split", detect_media_text_split),
    ("info_specs", detect_info_specs),
    ("next_action_panel", detect_next_action_panel),
    ("hero_promo", detect_hero_promo),
)


@dataclass(frozen=True, slots=True)
class RuleResult:
    """Outcome of one rule: its detections, or the error that stopped it."""

    rule: str
    detections: list[Detection] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class DetectionReport:
    results: list[RuleResult] = field(default_factory=list)
    parsed: bool = False
    elapsed_ms: float = 0.0

    @property
    def detections(self) -> list[Detection]:
        return [d for r in self.results for d in r.detections]

    @property
    def failed_rules(self) -> list[str]:
        return [r.rule for r in self.results if not r.ok]


def run_rule(name: str, rule: Rule, ctx: PageContext) -> RuleResult:
    try:
        return RuleResult(rule=name, detections=list(rule(ctx)))
    except Exception as exc:
        logger.warning("Detection rule %s failed: %s", name, exc, exc_info=True)
        return RuleResult(rule=name, error=f"{type(exc).__name__}: {exc}")


def detect_with_report(markup: str, rules: tuple[tuple[str, Rule], ...] = RULES) -> DetectionReport:
    """Run every rule on *markup*, keeping per-rule outcomes."""
    report = DetectionReport()
    start = time.monotonic()
    ctx = PageContext.from_html(markup)
    if ctx is not None:
        report.parsed = True
        report.results = [run_rule(name, rule, ctx) for name, rule in rules]
    report.elapsed_ms = (time.monotonic() - start) * 1000
    return report


def detect(markup: str) -> list[Detection]:
    """Detections for one page.  Empty or unparseable markup yields ``[]``."""
    return detect_with_report(markup).detections
