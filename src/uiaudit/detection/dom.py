# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared DOM helpers for the component rules.

Every rule works on one :class:`PageContext`: the parsed document, the
content root and memoized per-element text and chrome lookups.  Selector
semantics (``closest``, ``matches``, ``querySelector``) are expressed as
plain lxml traversal; ``[class*=x]`` checks are case-sensitive substring
matches on the raw attribute, as in the browser.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field

import lxml.html

from ..rendering import parse_document

HtmlElement = lxml.html.HtmlElement

# Content root fallback chain: (tag, attribute, value)
_CONTENT_ROOT_CHAIN: tuple[tuple[str | None, str | None, str | None], ...] = (
    ("main", None, None),
    (None, "role", "main"),
    ("article", None, None),
    (None, "id", "main"),
    (None, "id", "content"),
    (None, "id", "page"),
    (None, "id", "container"),
)

_CHROME_TAGS = frozenset({"footer", "header", "nav"})
_CHROME_CLASS_SUBSTRINGS = ("c_010D", "onetrust", "cookie", "consent", "footer")
_CHROME_ID_SUBSTRINGS = ("onetrust", "footer")

_WRAPPER_CLASS_TOKENS = frozenset({"responsivegrid", "aem-GridColumn", "parsys", "dummy-parent-class"})

HEADING_TAGS = ("h2", "h3", "h4", "h5", "h6")
MEDIA_TAGS = ("img", "picture", "svg")
ICON_TAGS = ("svg", "img")

_BACKGROUND_IMAGE_RE = re.compile(r"background(?:-image)?\s*:[^;]*url\(", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Element primitives
# ---------------------------------------------------------------------------


def tag_of(el: HtmlElement) -> str:
    return el.tag.lower() if isinstance(el.tag, str) else ""


def class_of(el: HtmlElement) -> str:
    return el.get("class") or ""


def class_tokens(el: HtmlElement) -> list[str]:
    return class_of(el).split()


def children(el: HtmlElement) -> list[HtmlElement]:
    """Element children only (comments and PIs skipped)."""
    return [c for c in el if isinstance(c.tag, str)]


def descendants(el: HtmlElement, *tags: str) -> Iterator[HtmlElement]:
    """Element descendants, excluding *el* itself, optionally filtered by tag."""
    for d in el.iterdescendants(*tags):
        if isinstance(d.tag, str):
            yield d


def has_descendant(el: HtmlElement, *tags: str) -> bool:
    return next(descendants(el, *tags), None) is not None


def any_descendant(el: HtmlElement, pred: Callable[[HtmlElement], bool]) -> bool:
    return any(pred(d) for d in descendants(el))


def ancestors(el: HtmlElement) -> Iterator[HtmlElement]:
    parent = el.getparent()
    while parent is not None:
        yield parent
        parent = parent.getparent()


def depth(el: HtmlElement) -> int:
    return sum(1 for _ in ancestors(el))


def contains(outer: HtmlElement, inner: HtmlElement) -> bool:
    """``outer.contains(inner)``: inner is outer or one of its descendants."""
    if outer is inner:
        return True
    return any(a is outer for a in ancestors(inner))


def is_within(el: HtmlElement, container: HtmlElement, max_levels: int) -> bool:
    """True if *container* is one of the first *max_levels* ancestors of *el*."""
    for i, a in enumerate(ancestors(el)):
        if i >= max_levels:
            return False
        if a is container:
            return True
    return False


def keep_outermost(elements: Iterable[HtmlElement]) -> list[HtmlElement]:
    """Sort shallowest-first and drop anything contained by an accepted element."""
    accepted: list[HtmlElement] = []
    for el in sorted(elements, key=depth):
        if not any(contains(a, el) for a in accepted):
            accepted.append(el)
    return accepted


def has_link(el: HtmlElement) -> bool:
    return any(a.get("href") is not None for a in descendants(el, "a"))


def has_heading(el: HtmlElement, tags: tuple[str, ...] = HEADING_TAGS) -> bool:
    return has_descendant(el, *tags) or any_descendant(el, lambda d: d.get("role") == "heading")


def has_icon(el: HtmlElement) -> bool:
    return has_descendant(el, *ICON_TAGS) or any_descendant(el, lambda d: "icon" in class_of(d))


def has_background_image(el: HtmlElement) -> bool:
    return bool(_BACKGROUND_IMAGE_RE.search(el.get("style") or ""))


# ---------------------------------------------------------------------------
# Chrome / wrappers
# ---------------------------------------------------------------------------


def _is_chrome_node(el: HtmlElement) -> bool:
    if tag_of(el) in _CHROME_TAGS:
        return True
    role = el.get("role")
    if role == "contentinfo":
        return True
    if role == "dialog" and el.get("aria-modal") == "true":
        return True
    cls = class_of(el)
    if "meganav-container" in cls.split():
        return True
    if any(s in cls for s in _CHROME_CLASS_SUBSTRINGS):
        return True
    eid = el.get("id") or ""
    if eid == "onetrust-consent-sdk":
        return True
    return any(s in eid for s in _CHROME_ID_SUBSTRINGS)


def is_footer_node(el: HtmlElement) -> bool:
    return tag_of(el) == "footer" or el.get("role") == "contentinfo"


def is_layout_wrapper(el: HtmlElement) -> bool:
    """Grid/column scaffolding.  Checked on the element itself only."""
    tokens = class_tokens(el)
    if not tokens:
        return False
    if any(t in _WRAPPER_CLASS_TOKENS for t in tokens):
        return True
    if "aem-Grid" in class_of(el):
        return True
    return "grid-row" in tokens and "bleed" in tokens


def logical_children(el: HtmlElement) -> list[HtmlElement]:
    """Direct children minus layout wrappers."""
    return [c for c in children(el) if not is_layout_wrapper(c)]


# ---------------------------------------------------------------------------
# PageContext
# ---------------------------------------------------------------------------


def _find_content_root(doc: HtmlElement, body: HtmlElement) -> HtmlElement:
    for tag, attr, value in _CONTENT_ROOT_CHAIN:
        for el in doc.iter(tag) if tag else doc.iter():
            if not isinstance(el.tag, str):
                continue
            if attr is None or el.get(attr) == value:
                return el
    return body


@dataclass(slots=True)
class PageContext:
    """Parsed page plus memoized lookups shared by all rules."""

    doc: HtmlElement
    body: HtmlElement
    root: HtmlElement
    elements: list[HtmlElement] = field(default_factory=list)  # body descendants, document order
    _index: dict[HtmlElement, int] = field(default_factory=dict)
    _ids: dict[str, HtmlElement] = field(default_factory=dict)
    _text: dict[HtmlElement, str] = field(default_factory=dict)
    _chrome: dict[HtmlElement, bool] = field(default_factory=dict)
    _footer: dict[HtmlElement, bool] = field(default_factory=dict)

    @classmethod
    def from_html(cls, markup: str) -> PageContext | None:
        """Parse *markup*.  Returns None for empty or unparseable input."""
        doc = parse_document(markup)
        if doc is None:
            return None
        body = doc.find("body")
        if body is None:
            body = doc
        ctx = cls(doc=doc, body=body, root=_find_content_root(doc, body))
        ctx.elements = list(descendants(body))
        ctx._index = {el: i for i, el in enumerate(ctx.elements)}
        for el in doc.iter():
            if isinstance(el.tag, str):
                eid = el.get("id")
                if eid and eid not in ctx._ids:
                    ctx._ids[eid] = el
        return ctx

    # ── Lookups ──────────────────────────────────────────────────────

    def by_id(self, element_id: str) -> HtmlElement | None:
        """``document.getElementById``: first element with the id."""
        return self._ids.get(element_id)

    def doc_index(self, el: HtmlElement) -> int:
        return self._index.get(el, -1)

    def text(self, el: HtmlElement) -> str:
        """Trimmed text content, memoized."""
        cached = self._text.get(el)
        if cached is None:
            cached = el.text_content().strip()
            self._text[el] = cached
        return cached

    def text_len(self, el: HtmlElement) -> int:
        return len(self.text(el))

    def in_root(self, el: HtmlElement) -> bool:
        return contains(self.root, el)

    def in_chrome(self, el: HtmlElement) -> bool:
        """Element or any ancestor is global chrome."""
        cached = self._chrome.get(el)
        if cached is None:
            if _is_chrome_node(el):
                cached = True
            else:
                parent = el.getparent()
                cached = self.in_chrome(parent) if parent is not None else False
            self._chrome[el] = cached
        return cached

    def in_footer(self, el: HtmlElement) -> bool:
        """Element or any ancestor is ``footer`` / ``[role=contentinfo]``."""
        cached = self._footer.get(el)
        if cached is None:
            if is_footer_node(el):
                cached = True
            else:
                parent = el.getparent()
                cached = self.in_footer(parent) if parent is not None else False
            self._footer[el] = cached
        return cached

    def root_candidates(self, *tags: str) -> list[HtmlElement]:
        """Descendants of the content root with one of *tags*, in document order."""
        return list(descendants(self.root, *tags))
