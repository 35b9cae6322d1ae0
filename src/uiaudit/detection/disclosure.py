# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""ARIA-driven rules: tabs, accordion, in-page anchor navigation.

These read semantic attributes directly, so their confidence is high
(except the aria-expanded accordion fallback, which is medium).
"""

from __future__ import annotations

from .. import ComponentKey, Confidence, Detection
from .dom import PageContext, descendants

_ACCORDION_MIN_DETAILS = 3
_ACCORDION_MIN_EXPANDERS = 5
_ACCORDION_PANEL_MIN_TEXT = 50
_ANCHOR_NAV_MIN_LINKS = 3


def detect_tabs(ctx: PageContext) -> list[Detection]:
    """``[role=tablist]`` whose tabs control real ``[role=tabpanel]`` elements."""
    valid: list[tuple[int, int]] = []  # (tabs, panels) per tablist
    for tablist in descendants(ctx.body):
        if tablist.get("role") != "tablist":
            continue
        if ctx.in_chrome(tablist) or not ctx.in_root(tablist):
            continue
        tabs = [t for t in descendants(tablist) if t.get("role") == "tab"]
        if not tabs:
            continue
        panels = 0
        for tab in tabs:
            target = tab.get("aria-controls")
            panel = ctx.by_id(target) if target else None
            if panel is not None and panel.get("role") == "tabpanel":
                panels += 1
        if panels > 0:
            valid.append((len(tabs), panels))

    if not valid:
        return []
    tabs, panels = valid[0]
    return [
        Detection(
            component_key=ComponentKey.TABS,
            instance_count=len(valid),
            confidence=Confidence.HIGH,
            evidence=f"tabs: {tabs} tabs, {panels} panels (ARIA-only)",
            details={"tablists": len(valid), "tabs": tabs, "panels": panels},
        )
    ]


def detect_accordion(ctx: PageContext) -> list[Detection]:
    """Native ``<details>`` first; aria-expanded disclosure pattern as fallback."""
    details = [
        el
        for el in descendants(ctx.body, "details")
        if not ctx.in_footer(el) and not ctx.in_chrome(el) and ctx.in_root(el)
    ]
    if len(details) >= _ACCORDION_MIN_DETAILS:
        return [
            Detection(
                component_key=ComponentKey.ACCORDION,
                instance_count=1,
                confidence=Confidence.HIGH,
                evidence=f"accordion: 1, items={len(details)}, source=details",
                details={"items": len(details), "source": "details"},
            )
        ]

    expanders = 0
    for el in descendants(ctx.body):
        if el.get("aria-expanded") is None:
            continue
        if ctx.in_footer(el) or ctx.in_chrome(el) or not ctx.in_root(el):
            continue
        target = el.get("aria-controls")
        panel = ctx.by_id(target) if target else None
        if panel is not None and ctx.text_len(panel) >= _ACCORDION_PANEL_MIN_TEXT:
            expanders += 1

    if expanders >= _ACCORDION_MIN_EXPANDERS:
        return [
            Detection(
                component_key=ComponentKey.ACCORDION,
                instance_count=1,
                confidence=Confidence.MEDIUM,
                evidence=f"accordion: 1, items={expanders}, source=aria-controls",
                details={"items": expanders, "source": "aria-controls"},
            )
        ]
    return []


def _same_page_links(container) -> list:
    return [a for a in descendants(container, "a") if (a.get("href") or "").startswith("#")]


def detect_anchor_nav(ctx: PageContext) -> list[Detection]:
    """Lists of ``#fragment`` links whose targets exist on the page."""
    navs = []
    total_anchors = 0
    for container in ctx.root_candidates("nav", "ul", "ol"):
        if ctx.in_chrome(container):
            continue
        links = _same_page_links(container)
        if len(links) < _ANCHOR_NAV_MIN_LINKS:
            continue
        resolvable = 0
        for a in links:
            href = a.get("href") or ""
            if href != "#" and ctx.by_id(href[1:]) is not None:
                resolvable += 1
        if resolvable >= _ANCHOR_NAV_MIN_LINKS:
            navs.append(container)
            total_anchors += len(links)

    if not navs:
        return []
    return [
        Detection(
            component_key=ComponentKey.ANCHOR_NAV,
            instance_count=len(navs),
            confidence=Confidence.HIGH,
            evidence=f"{len(navs)} in-page nav(s) with {total_anchors} anchors (in content)",
            details={"navs": len(navs), "anchors": total_anchors},
        )
    ]
