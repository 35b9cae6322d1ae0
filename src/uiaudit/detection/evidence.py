# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Best-effort parsing of stored evidence strings.

Rows written before structured ``details`` existed only carry the text
summary.  :func:`parse_evidence` recovers what it can and returns None for
anything it does not recognize.  It never raises.
"""

from __future__ import annotations

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_ITEMS_LIST_RE = re.compile(r"items=\[([^\]]+)\]")
_ITEMS_PER_SECTION_RE = re.compile(r"items_per_section=\[([^\]]+)\]")
_SECTIONS_RE = re.compile(r"(\d+)\s+sections")
_ITEMS_COUNT_RE = re.compile(r"items=(\d+)")
_SOURCE_RE = re.compile(r"source=([\w-]+)")
_TABS_RE = re.compile(r"(\d+)\s+tabs,\s*(\d+)\s+panels")
_ANCHORS_RE = re.compile(r"(\d+)\s+in-page nav\(s\) with (\d+) anchors")
_MEDIA_TYPES_RE = re.compile(r"media_types=\[([^\]]*)\]")
_ACTIONS_RE = re.compile(r"(\d+)\s+actions,\s*variant=(\w+)")


def _int_list(raw: str) -> list[int]:
    return [int(part.strip()) for part in raw.split(",") if part.strip()]


def _carousel(evidence: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if m := _ITEMS_LIST_RE.search(evidence):
        result["items"] = _int_list(m.group(1))
    if "controls=yes" in evidence:
        result["controls"] = "yes"
    elif "controls=no" in evidence:
        result["controls"] = "no"
    elif "controls" in evidence:
        result["controls"] = "yes"
    if "scrollable" in evidence:
        result["scrollable"] = True
    if "deduped" in evidence:
        result["deduped"] = True
    return result


def _cards_section(evidence: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if m := _SECTIONS_RE.search(evidence):
        result["sections"] = int(m.group(1))
    if m := _ITEMS_PER_SECTION_RE.search(evidence):
        result["items_per_section"] = _int_list(m.group(1))
    return result


def _accordion(evidence: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if m := _ITEMS_COUNT_RE.search(evidence):
        result["items"] = int(m.group(1))
    if m := _SOURCE_RE.search(evidence):
        result["source"] = m.group(1)
    return result


def _tabs(evidence: str) -> dict[str, Any]:
    if m := _TABS_RE.search(evidence):
        return {"tabs": int(m.group(1)), "panels": int(m.group(2))}
    return {}


def _anchor_nav(evidence: str) -> dict[str, Any]:
    if m := _ANCHORS_RE.search(evidence):
        return {"navs": int(m.group(1)), "anchors": int(m.group(2))}
    return {}


def _media_text_split(evidence: str) -> dict[str, Any]:
    if m := _MEDIA_TYPES_RE.search(evidence):
        return {"media_types": [t.strip() for t in m.group(1).split(",") if t.strip()]}
    return {}


def _next_action_panel(evidence: str) -> dict[str, Any]:
    if m := _ACTIONS_RE.search(evidence):
        return {"actions": int(m.group(1)), "variant": m.group(2)}
    return {}


_PARSERS = {
    "image_carousel": _carousel,
    "card_carousel": _carousel,
    "cards_section": _cards_section,
    "accordion": _accordion,
    "tabs": _tabs,
    "anchor_nav": _anchor_nav,
    "media_text_split": _media_text_split,
    "next_action_panel": _next_action_panel,
}


def parse_evidence(component_key: str, evidence: str | None) -> dict[str, Any] | None:
    """Structured view of *evidence*, or None when nothing is recognized."""
    if not evidence:
        return None
    parser = _PARSERS.get(str(component_key))
    if parser is None:
        return None
    try:
        parsed = parser(evidence)
    except ValueError:
        logger.debug("Unparseable %s evidence: %r", component_key, evidence)
        return None
    return parsed or None
