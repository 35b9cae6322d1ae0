# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Hero vs promo sections.

Hero-like blocks (heading + media or action + some text) are collected in
document order.  The first one is the page hero unless substantial content
comes before it; every other hero-like block is a promo section.
"""

from __future__ import annotations

import re

from .. import ComponentKey, Confidence, Detection
from .dom import HtmlElement, PageContext, any_descendant, class_of, descendants, has_descendant, is_layout_wrapper, tag_of

_HERO_MIN_TEXT = 30
_BLOCK_MIN_TEXT = 30
_DIV_BLOCK_MIN_TEXT = 50
_ANCHOR_NAV_MIN_LINKS = 3
_PINNED_STYLE_RE = re.compile(r"position\s*:\s*(sticky|fixed)", re.IGNORECASE)
_BLOCKING_TAGS = frozenset({"section", "article", "aside"})
_BLOCKING_ROLES = frozenset({"alert", "banner"})


def is_hero_like(ctx: PageContext, el: HtmlElement) -> bool:
    has_title = has_descendant(el, "h1", "h2") or any_descendant(el, lambda d: d.get("role") == "heading")
    if not has_title:
        return False
    if not has_descendant(el, "img", "picture", "video", "a", "button"):
        return False
    return ctx.text_len(el) >= _HERO_MIN_TEXT


def _is_pinned(el: HtmlElement) -> bool:
    if _PINNED_STYLE_RE.search(el.get("style") or ""):
        return True
    cls = class_of(el)
    return "sticky" in cls or "fixed" in cls


def _is_in_page_nav(ctx: PageContext, el: HtmlElement) -> bool:
    if tag_of(el) not in ("nav", "ul", "ol"):
        return False
    anchors = sum(1 for a in descendants(el, "a") if (a.get("href") or "").startswith("#"))
    return anchors >= _ANCHOR_NAV_MIN_LINKS and ctx.text_len(el) >= _BLOCK_MIN_TEXT


def content_before(ctx: PageContext, first: HtmlElement) -> HtmlElement | None:
    """First element ahead of *first* that counts as real page content.

    Ancestors of *first* never block it.  Pinned bars, wrappers, chrome and
    short text are ignored; an in-page nav blocks even inside chrome.
    """
    own_ancestors = set(first.iterancestors())
    limit = ctx.doc_index(first)
    for el in ctx.elements[:limit]:
        if el in own_ancestors or _is_pinned(el) or is_layout_wrapper(el):
            continue
        if _is_in_page_nav(ctx, el):
            return el
        if ctx.in_chrome(el):
            continue
        text_len = ctx.text_len(el)
        if text_len < _BLOCK_MIN_TEXT:
            continue
        if tag_of(el) in _BLOCKING_TAGS or el.get("role") in _BLOCKING_ROLES:
            return el
        if tag_of(el) == "div" and text_len >= _DIV_BLOCK_MIN_TEXT:
            return el
    return None


def detect_hero_promo(ctx: PageContext) -> list[Detection]:
    candidates = [
        el
        for el in ctx.root_candidates("section", "div", "article")
        if not ctx.in_chrome(el) and not is_layout_wrapper(el) and is_hero_like(ctx, el)
    ]
    if not candidates:
        return []
    candidates.sort(key=ctx.doc_index)

    first, *rest = candidates
    results: list[Detection] = []
    blocker = content_before(ctx, first)
    if blocker is None:
        results.append(
            Detection(
                component_key=ComponentKey.HERO,
                instance_count=1,
                confidence=Confidence.MEDIUM,
                evidence="hero: 1 (first content block)",
                details={"position": ctx.doc_index(first)},
            )
        )
    else:
        rest = candidates
    for el in rest:
        results.append(
            Detection(
                component_key=ComponentKey.PROMO_SECTION,
                instance_count=1,
                confidence=Confidence.MEDIUM,
                evidence="promo_section: 1 (not first content block)",
                details={"position": ctx.doc_index(el)},
            )
        )
    return results
