# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Image and card carousels.

Both rules share one candidate pipeline and one classifier, so a container
is reported as exactly one of ``image_carousel`` / ``card_carousel``:

1. candidates: keyword matches on class/id/``data-component`` plus the
   parent of every pagination/dots control
2. outermost-only dedup (shallowest first, drop contained candidates)
3. skip containers nested in a media/text split
4. :func:`classify_carousel` → ``image`` | ``card`` | None
5. per-kind acceptance checks
"""

from __future__ import annotations

from enum import StrEnum

from .. import ComponentKey, Confidence, Detection
from .dom import (
    HtmlElement,
    PageContext,
    any_descendant,
    children,
    class_of,
    class_tokens,
    descendants,
    has_descendant,
    has_heading,
    has_link,
    is_layout_wrapper,
    is_within,
    keep_outermost,
    logical_children,
    tag_of,
)

IMAGE_KEYWORDS = ("carousel", "slider", "slideshow", "swiper", "slick")
CARD_KEYWORDS = ("carousel", "slider", "swiper", "slick")
_ITEM_CLASS_SUBSTRINGS = ("card", "item", "slide", "tile")
_PAGER_TOKENS = frozenset({"swiper-pagination", "slick-dots"})
_PAGER_SUBSTRINGS = ("pagination", "dots")
_CONTROL_SUBSTRINGS = ("pagination", "dots", "prev", "next", "arrow")
_SPLIT_MEDIA_CLASS_SUBSTRINGS = ("carousel", "slider")

_ITEM_MAX_NESTING = 6  # ancestor levels between a selector item and its container
_MIN_ITEMS = 2
_CARD_SIGNAL_RATIO = 0.6
_CARD_SIGNAL_TEXT = 40
_CARD_LINK_TEXT = 5
_ITEM_MIN_TEXT = 10
_SPLIT_TEXT_MIN = 100


class CarouselKind(StrEnum):
    IMAGE = "image"
    CARD = "card"


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def is_pager(el: HtmlElement) -> bool:
    """Pagination / dots indicator."""
    if _PAGER_TOKENS.intersection(class_tokens(el)):
        return True
    cls = class_of(el)
    return any(s in cls for s in _PAGER_SUBSTRINGS)


def _is_control(el: HtmlElement) -> bool:
    if _PAGER_TOKENS.intersection(class_tokens(el)):
        return True
    cls = class_of(el)
    if any(s in cls for s in _CONTROL_SUBSTRINGS):
        return True
    if tag_of(el) == "button":
        label = (el.get("aria-label") or "").lower()
        return "next" in label or "prev" in label
    return False


def has_carousel_controls(el: HtmlElement) -> bool:
    return any_descendant(el, _is_control)


def is_scrollable(el: HtmlElement) -> bool:
    """Horizontal scroll / snap affordance or an ARIA carousel region."""
    style = el.get("style") or ""
    cls = class_of(el)
    if "overflow-x" in style or "scroll-snap" in style or "scroll" in cls or "snap" in cls:
        return True
    if el.get("role") == "region":
        return "carousel" in (el.get("aria-roledescription") or "").lower()
    return False


def _has_split_media(el: HtmlElement) -> bool:
    if has_descendant(el, "img", "video", "iframe"):
        return True
    return any_descendant(el, lambda d: any(s in class_of(d) for s in _SPLIT_MEDIA_CLASS_SUBSTRINGS))


def within_media_text_split(ctx: PageContext, el: HtmlElement) -> bool:
    """Some non-wrapper ancestor is a two-column media + text block."""
    current = el.getparent()
    while current is not None:
        if not is_layout_wrapper(current):
            pair = logical_children(current)
            if len(pair) == 2:
                first, second = pair
                if (_has_split_media(first) and ctx.text_len(second) >= _SPLIT_TEXT_MIN) or (
                    _has_split_media(second) and ctx.text_len(first) >= _SPLIT_TEXT_MIN
                ):
                    return True
        current = current.getparent()
    return False


# ---------------------------------------------------------------------------
# Items + classifier
# ---------------------------------------------------------------------------


def _selector_items(container: HtmlElement) -> list[HtmlElement]:
    """Descendants whose class names an item (card/item/slide/tile), close to *container*."""
    found: list[HtmlElement] = []
    seen: set[HtmlElement] = set()
    for substring in _ITEM_CLASS_SUBSTRINGS:
        for item in descendants(container):
            if item in seen or substring not in class_of(item):
                continue
            if not is_within(item, container, _ITEM_MAX_NESTING):
                continue
            seen.add(item)
            found.append(item)
    return found


def carousel_items(ctx: PageContext, container: HtmlElement) -> list[HtmlElement]:
    """Slides: contentful direct children, else class-named descendants."""
    items = [
        child
        for child in children(container)
        if len(children(child)) != 1
        and (ctx.text_len(child) > _ITEM_MIN_TEXT or has_descendant(child, "img", "picture") or has_link(child))
    ]
    if len(items) < _MIN_ITEMS:
        fallback = _selector_items(container)
        if len(fallback) > len(items):
            items = fallback
    return items


def _has_card_signal(ctx: PageContext, item: HtmlElement) -> bool:
    if has_heading(item):
        return True
    for el in descendants(item, "a", "button"):
        if tag_of(el) == "a" and el.get("href") is None:
            continue
        if ctx.text_len(el) > _CARD_LINK_TEXT:
            return True
    return ctx.text_len(item) > _CARD_SIGNAL_TEXT


def classify_carousel(ctx: PageContext, container: HtmlElement) -> CarouselKind | None:
    """Type a carousel container, or None if it is not one."""
    if not has_carousel_controls(container) and not is_scrollable(container):
        return None
    items = carousel_items(ctx, container)
    if len(items) < _MIN_ITEMS:
        return None
    signals = sum(1 for item in items if _has_card_signal(ctx, item))
    if signals >= len(items) * _CARD_SIGNAL_RATIO:
        return CarouselKind.CARD
    return CarouselKind.IMAGE


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


def carousel_candidates(ctx: PageContext, keywords: tuple[str, ...]) -> list[HtmlElement]:
    """Outermost keyword/control containers in the content root."""
    raw: list[HtmlElement] = []
    seen: set[HtmlElement] = set()

    def _add(el: HtmlElement) -> None:
        if el in seen or ctx.in_chrome(el) or is_layout_wrapper(el):
            return
        seen.add(el)
        raw.append(el)

    for keyword in keywords:
        for el in descendants(ctx.root):
            if (
                keyword in class_of(el)
                or keyword in (el.get("id") or "")
                or keyword in (el.get("data-component") or "")
            ):
                _add(el)

    for control in descendants(ctx.root):
        if is_pager(control):
            parent = control.getparent()
            if parent is not None:
                _add(parent)

    return keep_outermost(raw)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def detect_image_carousel(ctx: PageContext) -> list[Detection]:
    accepted: list[int] = []  # image count per carousel
    for container in carousel_candidates(ctx, IMAGE_KEYWORDS):
        if within_media_text_split(ctx, container):
            continue
        if classify_carousel(ctx, container) is not CarouselKind.IMAGE:
            continue
        images = list(descendants(container, "img"))
        if len(images) < 2 or not has_carousel_controls(container):
            continue
        sources = {img.get("src") or img.get("data-src") or "" for img in images}
        sources.discard("")
        if len(sources) < 2:
            continue
        accepted.append(len(images))

    if not accepted:
        return []
    items = ",".join(str(n) for n in accepted)
    return [
        Detection(
            component_key=ComponentKey.IMAGE_CAROUSEL,
            instance_count=len(accepted),
            confidence=Confidence.MEDIUM,
            evidence=f"image_carousel: {len(accepted)} (deduped), items=[{items}], controls=yes, type=image",
            details={"carousels": len(accepted), "items": accepted, "controls": True, "type": "image"},
        )
    ]


def _has_card_media(el: HtmlElement, *, lazy: bool) -> bool:
    if has_descendant(el, "img", "picture", "svg"):
        return True
    return any_descendant(
        el,
        lambda d: d.get("role") == "img" or d.get("data-src") is not None or (lazy and d.get("data-lazy") is not None),
    )


def _card_like_children(container: HtmlElement) -> list[HtmlElement]:
    items = [
        child
        for child in children(container)
        if has_link(child) and (has_heading(child) or _has_card_media(child, lazy=True))
    ]
    if len(items) < _MIN_ITEMS:
        best = items
        for substring in _ITEM_CLASS_SUBSTRINGS:
            selected = [
                item
                for item in descendants(container)
                if substring in class_of(item)
                and is_within(item, container, _ITEM_MAX_NESTING)
                and has_link(item)
                and (has_heading(item) or _has_card_media(item, lazy=False))
            ]
            if len(selected) > len(best):
                best = selected
        items = best
    return items


def detect_card_carousel(ctx: PageContext) -> list[Detection]:
    accepted: list[tuple[int, bool]] = []  # (card count, has controls)
    for container in carousel_candidates(ctx, CARD_KEYWORDS):
        if within_media_text_split(ctx, container):
            continue
        if classify_carousel(ctx, container) is not CarouselKind.CARD:
            continue
        cards = _card_like_children(container)
        if len(cards) < _MIN_ITEMS:
            continue
        controls = has_carousel_controls(container)
        if not controls and not is_scrollable(container):
            continue
        accepted.append((len(cards), controls))

    if not accepted:
        return []
    items = ",".join(str(n) for n, _ in accepted)
    modes = ",".join("controls" if c else "scrollable" for _, c in accepted)
    return [
        Detection(
            component_key=ComponentKey.CARD_CAROUSEL,
            instance_count=len(accepted),
            confidence=Confidence.MEDIUM,
            evidence=f"card_carousel: {len(accepted)} (deduped), items=[{items}], {modes}, type=card",
            details={
                "carousels": len(accepted),
                "items": [n for n, _ in accepted],
                "navigation": ["controls" if c else "scrollable" for _, c in accepted],
                "type": "card",
            },
        )
    ]
