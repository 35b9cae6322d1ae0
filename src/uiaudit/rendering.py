# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Static-vs-rendered decision and page fingerprinting.

A static fetch is cheap; a headless render is not.  ``analyze_dom_signature``
measures how much real content the static markup carries and
``needs_rendering`` decides whether the page is a client-side shell that
must be rendered before detection can see anything.

Also hosts the two per-page fingerprints stored on the inventory row:
canonical URL and content hash.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass

import lxml.etree
import lxml.html

logger = logging.getLogger(__name__)

# ---- Signature thresholds ----
_CONTENT_TEXT_MIN = 500  # text length above this …
_CONTENT_BLOCKS_MIN = 10  # … and block count above this = real content
_SHELL_TEXT_MAX = 200  # single-root app with less text = shell
_SPARSE_TEXT_MAX = 300  # sparse page: little text …
_SPARSE_BLOCKS_MAX = 5  # … and few blocks

_SEMANTIC_TAGS = frozenset({"section", "article", "main", "aside", "header", "nav"})
_BLOCK_TAGS = frozenset({"div", "section", "article", "p", "ul", "ol", "table"})
_SPA_ROOT_IDS = ("root", "__next", "app", "__nuxt")

_HASH_TEXT_LIMIT = 10_000
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class DomSignature:
    """Content measurements of a static document."""

    has_semantic_blocks: bool = False
    has_content: bool = False
    has_single_root: bool = False
    text_length: int = 0
    block_elements: int = 0


_EMPTY_SIGNATURE = DomSignature()


_HTML_PARSER = lxml.html.HTMLParser(recover=True, encoding="utf-8")


def parse_document(markup: str) -> lxml.html.HtmlElement | None:
    """Parse *markup* as a full document.  None for blank or unparseable input.

    The text is fed as UTF-8 bytes so an XML prolog with an encoding
    declaration (common on XHTML pages) is accepted.
    """
    if not markup or not markup.strip():
        return None
    try:
        return lxml.html.document_fromstring(markup.encode("utf-8", "replace"), parser=_HTML_PARSER)
    except (lxml.etree.ParserError, ValueError) as exc:
        logger.debug("Markup parse failed: %s", exc)
        return None


def _body(doc: lxml.html.HtmlElement) -> lxml.html.HtmlElement:
    body = doc.find("body")
    return body if body is not None else doc


def _element_children(el: lxml.html.HtmlElement) -> list:
    return [c for c in el if isinstance(c.tag, str)]


def analyze_dom_signature(markup: str) -> DomSignature:
    """Measure the static markup.  Malformed markup yields an empty signature."""
    doc = parse_document(markup)
    if doc is None:
        return _EMPTY_SIGNATURE

    has_semantic = False
    has_single_root = False
    blocks = 0
    for el in doc.iter():
        if not isinstance(el.tag, str):
            continue
        tag = el.tag.lower()
        if tag in _SEMANTIC_TAGS:
            has_semantic = True
        if tag in _BLOCK_TAGS:
            blocks += 1
        if not has_single_root and el.get("id") in _SPA_ROOT_IDS and not _element_children(el):
            has_single_root = True

    text_length = len(_body(doc).text_content().strip())
    return DomSignature(
        has_semantic_blocks=has_semantic,
        has_content=text_length > _CONTENT_TEXT_MIN and blocks > _CONTENT_BLOCKS_MIN,
        has_single_root=has_single_root,
        text_length=text_length,
        block_elements=blocks,
    )


def needs_rendering(sig: DomSignature) -> bool:
    """Decide whether the static markup is a shell that must be rendered."""
    if sig.has_semantic_blocks and sig.has_content:
        return False
    if sig.has_single_root and sig.text_length < _SHELL_TEXT_MAX:
        return True
    return sig.text_length < _SPARSE_TEXT_MAX and sig.block_elements < _SPARSE_BLOCKS_MAX


def extract_canonical_url(markup: str) -> str | None:
    """Return the ``<link rel="canonical">`` href, if declared."""
    doc = parse_document(markup)
    if doc is None:
        return None
    for link in doc.iter("link"):
        rels = (link.get("rel") or "").lower().split()
        if "canonical" in rels:
            href = (link.get("href") or "").strip()
            return href or None
    return None


def compute_content_hash(markup: str) -> str:
    """SHA-256 of the normalized visible body text.

    Text is whitespace-collapsed, lower-cased and cut to the first 10 000
    characters.  Unparseable markup falls back to hashing the raw bytes.
    """
    doc = parse_document(markup)
    if doc is None:
        return hashlib.sha256(markup.encode("utf-8")).hexdigest()
    text = _WS_RE.sub(" ", _body(doc).text_content().strip()).lower()
    return hashlib.sha256(text[:_HASH_TEXT_LIMIT].encode("utf-8")).hexdigest()
