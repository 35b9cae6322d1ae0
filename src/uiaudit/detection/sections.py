# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Structural section rules: cards section, icon grid, media/text split,
info specs and next-action panel.

All are class-name / shape heuristics, so every detection here is
``medium`` confidence.
"""

from __future__ import annotations

import re

from .. import ComponentKey, Confidence, Detection
from .dom import (
    HtmlElement,
    PageContext,
    ancestors,
    any_descendant,
    children,
    class_of,
    descendants,
    has_background_image,
    has_descendant,
    has_heading,
    has_icon,
    has_link,
    is_layout_wrapper,
    is_within,
    keep_outermost,
    logical_children,
    tag_of,
)

# ---- Cards section ----
_CARD_MIN_TEXT = 5
_CARDS_MIN_ITEMS = 3
INTENT_DENY = ("/owners", "/customer-service", "/roadside", "/breakdown", "/manual", "/support", "/contact", "/help")
INTENT_ALLOW = (
    "/vehicles",
    "/offers",
    "/electric-vehicles",
    "/finance",
    "/business",
    "/fleet",
    "/qashqai",
    "/juke",
    "/ariya",
    "/leaf",
    "/x-trail",
    "/townstar",
    "/navara",
    "/gt-r",
    "/z",
    "/micra",
)

# ---- Icon grid ----
_ICON_CLASS_SUBSTRINGS = ("icon", "feature", "benefit")
_ICON_GRID_MIN = 3
_ICON_ITEM_MIN_TEXT = 10

# ---- Media / text split ----
_SPLIT_TEXT_MIN = 100
_CAROUSEL_CLASS_SUBSTRINGS = ("carousel", "slider", "swiper", "slick", "pagination", "dots")
_MEDIA_WRAPPER_SUBSTRINGS = ("media", "image", "picture", "visual")
_VIDEO_HOSTS = ("youtube.com", "youtu.be", "vimeo.com")

# ---- Info specs ----
_SPECS_MIN_CHILDREN = 3
_SPECS_MAX_CHILDREN = 12
_SPECS_MIN_TILES = 3
_SPECS_MAX_TILE_TEXT = 200
_SPECS_LINK_RATIO = 0.5
_SPECS_SAMPLE_TILES = 3
_SPECS_SAMPLE_CHARS = 30
_DIGIT_RE = re.compile(r"\d")
_DRIVE_RE = re.compile(r"\b(2WD|4WD|AWD|FWD|RWD)\b", re.IGNORECASE)
_SEATS_RE = re.compile(r"\b\d+\s*(seats?)\b", re.IGNORECASE)
_UNIT_RE = re.compile(r"(miles?|mins?|minutes?|km|kW|kg|liters?|litres?|m3|Nm|g/km|mpg|%|seats?|WD)\b", re.IGNORECASE)
_SEGMENT_SPLIT_RE = re.compile(r"\n|<br>")

# ---- Next action panel ----
_PANEL_MAX_DEPTH = 4
_TILES_MIN, _TILES_MAX = 3, 8
_TILE_LABEL_MIN, _TILE_LABEL_MAX, _TILE_LABEL_NO_ICON = 3, 100, 50
_BUTTON_MAX_NESTING = 4
_BUTTON_LABEL_MIN, _BUTTON_LABEL_MAX = 3, 40
_BUTTONS_MIN, _BUTTONS_MAX = 1, 4
_BUTTON_STYLED_RE = re.compile(r"\b(btn|button|cta|primary|secondary)\b", re.IGNORECASE)
_BUTTON_EXPLICIT_RE = re.compile(r"\b(btn|button|cta)\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Cards section
# ---------------------------------------------------------------------------


def _has_visual_media(el: HtmlElement) -> bool:
    return has_descendant(el, "img", "picture", "svg") or any_descendant(el, lambda d: d.get("role") == "img")


def is_card_like(ctx: PageContext, el: HtmlElement) -> bool:
    """Non-trivial item with a link, visual media and a heading."""
    if ctx.text_len(el) < _CARD_MIN_TEXT:
        return False
    return has_link(el) and _has_visual_media(el) and has_heading(el)


def looks_like_product_or_offer(section: HtmlElement) -> bool:
    """Card links point at product/offer paths and never at support paths."""
    hrefs = [
        href
        for href in ((a.get("href") or "").strip().lower() for a in descendants(section, "a") if a.get("href") is not None)
        if len(href) > 1 and href != "#"
    ]
    if not hrefs:
        return False
    if any(any(p in href for p in INTENT_DENY) for href in hrefs):
        return False
    return any(any(p in href for p in INTENT_ALLOW) for href in hrefs)


def detect_cards_section(ctx: PageContext) -> list[Detection]:
    candidates = []
    for container in ctx.root_candidates("div", "section", "ul", "ol", "article"):
        if ctx.in_chrome(container) or is_layout_wrapper(container) or ctx.in_footer(container):
            continue
        if sum(1 for child in children(container) if is_card_like(ctx, child)) >= _CARDS_MIN_ITEMS:
            candidates.append(container)

    sections = [s for s in keep_outermost(candidates) if looks_like_product_or_offer(s)]
    if not sections:
        return []
    sections.sort(key=ctx.doc_index)
    per_section = [sum(1 for child in children(s) if is_card_like(ctx, child)) for s in sections]
    items = ",".join(str(n) for n in per_section)
    return [
        Detection(
            component_key=ComponentKey.CARDS_SECTION,
            instance_count=len(sections),
            confidence=Confidence.MEDIUM,
            evidence=f"cards_section: {len(sections)} sections, items_per_section=[{items}]",
            details={"sections": len(sections), "items_per_section": per_section},
        )
    ]


# ---------------------------------------------------------------------------
# Icon grid
# ---------------------------------------------------------------------------


def detect_icon_grid(ctx: PageContext) -> list[Detection]:
    grids = 0
    for el in ctx.elements:
        cls = class_of(el)
        if not any(s in cls for s in _ICON_CLASS_SUBSTRINGS):
            continue
        if ctx.in_chrome(el) or not ctx.in_root(el) or is_layout_wrapper(el):
            continue
        items = children(el)
        if len(items) < _ICON_GRID_MIN:
            continue
        with_icon = sum(1 for item in items if has_icon(item) and ctx.text_len(item) >= _ICON_ITEM_MIN_TEXT)
        if with_icon >= _ICON_GRID_MIN:
            grids += 1

    if not grids:
        return []
    return [
        Detection(
            component_key=ComponentKey.ICON_GRID,
            instance_count=grids,
            confidence=Confidence.MEDIUM,
            evidence=f"{grids} icon grid(s) with icon+text items",
            details={"grids": grids},
        )
    ]


# ---------------------------------------------------------------------------
# Media / text split
# ---------------------------------------------------------------------------


def media_type(el: HtmlElement) -> str | None:
    """``carousel`` > ``video`` > ``image``, or None if *el* carries no media."""
    if any_descendant(el, lambda d: any(s in class_of(d) for s in _CAROUSEL_CLASS_SUBSTRINGS)):
        return "carousel"
    if has_descendant(el, "video"):
        return "video"
    for iframe in descendants(el, "iframe"):
        src = iframe.get("src") or ""
        if any(host in src for host in _VIDEO_HOSTS):
            return "video"
    if has_descendant(el, "img", "picture"):
        return "image"
    if has_background_image(el):
        return "image"
    for wrapper in descendants(el):
        cls = class_of(wrapper)
        if any(s in cls for s in _MEDIA_WRAPPER_SUBSTRINGS) and has_background_image(wrapper):
            return "image"
    return None


def detect_media_text_split(ctx: PageContext) -> list[Detection]:
    kinds: list[str] = []
    for container in ctx.root_candidates("section", "div", "article"):
        if ctx.in_chrome(container) or is_layout_wrapper(container):
            continue
        pair = logical_children(container)
        if len(pair) != 2:
            continue
        first, second = pair
        first_media = media_type(first)
        if first_media and ctx.text_len(second) >= _SPLIT_TEXT_MIN:
            kinds.append(first_media)
            continue
        second_media = media_type(second)
        if second_media and ctx.text_len(first) >= _SPLIT_TEXT_MIN:
            kinds.append(second_media)

    if not kinds:
        return []
    return [
        Detection(
            component_key=ComponentKey.MEDIA_TEXT_SPLIT,
            instance_count=len(kinds),
            confidence=Confidence.MEDIUM,
            evidence=f"media_text_split: {len(kinds)} blocks, media_types=[{','.join(kinds)}]",
            details={"blocks": len(kinds), "media_types": kinds},
        )
    ]


# ---------------------------------------------------------------------------
# Info specs
# ---------------------------------------------------------------------------


def _is_metric_tile(ctx: PageContext, tile: HtmlElement) -> bool:
    text = ctx.text(tile)
    if not text:
        return False

    links = [el for el in descendants(tile, "a", "button") if tag_of(el) == "button" or el.get("href") is not None]
    if links and sum(ctx.text_len(link) for link in links) > len(text) * _SPECS_LINK_RATIO:
        return False

    if not (_DIGIT_RE.search(text) or _DRIVE_RE.search(text) or _SEATS_RE.search(text)):
        return False

    segments = [s for s in (part.strip() for part in _SEGMENT_SPLIT_RE.split(text)) if s]
    has_label = len(segments) >= 2 or bool(_UNIT_RE.search(text))
    return has_label and len(text) < _SPECS_MAX_TILE_TEXT


def detect_info_specs(ctx: PageContext) -> list[Detection]:
    blocks: list[list[HtmlElement]] = []
    for container in ctx.root_candidates("section", "div", "article", "ul", "ol"):
        if ctx.in_chrome(container) or ctx.in_footer(container) or is_layout_wrapper(container):
            continue
        tiles = logical_children(container)
        if not _SPECS_MIN_CHILDREN <= len(tiles) <= _SPECS_MAX_CHILDREN:
            continue
        metric = [t for t in tiles if _is_metric_tile(ctx, t)]
        if len(metric) >= _SPECS_MIN_TILES:
            blocks.append(metric)

    if not blocks:
        return []
    first = blocks[0]
    sample = [ctx.text(t).split("\n")[0].strip()[:_SPECS_SAMPLE_CHARS] for t in first[:_SPECS_SAMPLE_TILES]]
    return [
        Detection(
            component_key=ComponentKey.INFO_SPECS,
            instance_count=len(blocks),
            confidence=Confidence.MEDIUM,
            evidence=f"info_specs: {len(first)} tiles, sample=[{'; '.join(sample)}]",
            details={"blocks": len(blocks), "tiles": len(first), "sample": sample},
        )
    ]


# ---------------------------------------------------------------------------
# Next action panel
# ---------------------------------------------------------------------------


def is_full_width_section(ctx: PageContext, el: HtmlElement) -> bool:
    """Section-level block: not inside a card or list item, shallow under the root."""
    if not ctx.in_root(el):
        return False
    for node in (el, *ancestors(el)):
        if "card" in class_of(node) or tag_of(node) == "li":
            return False
    nesting = 0
    for node in ancestors(el):
        if node is ctx.root:
            break
        if not is_layout_wrapper(node):
            nesting += 1
    return nesting <= _PANEL_MAX_DEPTH


def _is_action_tile(ctx: PageContext, tile: HtmlElement) -> bool:
    if not has_link(tile):
        return False
    label = ctx.text_len(tile)
    if label < _TILE_LABEL_MIN or label > _TILE_LABEL_MAX:
        return False
    return has_icon(tile) or label <= _TILE_LABEL_NO_ICON


def _action_buttons(ctx: PageContext, container: HtmlElement) -> list[HtmlElement]:
    buttons = []
    for el in descendants(container, "button", "a"):
        tag = tag_of(el)
        if tag == "a" and el.get("href") is None:
            continue
        if not is_within(el, container, _BUTTON_MAX_NESTING):
            continue
        if tag == "button":
            buttons.append(el)
            continue
        label = ctx.text_len(el)
        if _BUTTON_STYLED_RE.search(class_of(el)) and _BUTTON_LABEL_MIN <= label <= _BUTTON_LABEL_MAX:
            buttons.append(el)
    return buttons


def detect_next_action_panel(ctx: PageContext) -> list[Detection]:
    panels: list[tuple[int, str]] = []  # (actions, variant)
    for container in ctx.root_candidates("section", "div", "article"):
        if ctx.in_chrome(container) or ctx.in_footer(container) or is_layout_wrapper(container):
            continue
        if not is_full_width_section(ctx, container):
            continue

        items = logical_children(container)
        if _TILES_MIN <= len(items) <= _TILES_MAX:
            tiles = sum(1 for item in items if _is_action_tile(ctx, item))
            if tiles >= _TILES_MIN:
                panels.append((tiles, "tiles"))
                continue

        buttons = _action_buttons(ctx, container)
        if not _BUTTONS_MIN <= len(buttons) <= _BUTTONS_MAX:
            continue
        if not any(tag_of(b) == "button" or _BUTTON_EXPLICIT_RE.search(class_of(b)) for b in buttons):
            continue
        if any(is_card_like(ctx, item) for item in items):
            continue
        panels.append((len(buttons), "buttons"))

    if not panels:
        return []
    actions, variant = panels[0]
    return [
        Detection(
            component_key=ComponentKey.NEXT_ACTION_PANEL,
            instance_count=len(panels),
            confidence=Confidence.MEDIUM,
            evidence=f"next_action_panel: {actions} actions, variant={variant}",
            details={"panels": len(panels), "actions": actions, "variant": variant},
        )
    ]
