# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Human review labels: append-only JSONL event log.

One JSON object per line.  The review tool appends; the gate scorer reads.
Only ``component_key`` and ``decision`` are required to score a label; the
rest is context kept for audit.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .errors import GateInputError

logger = logging.getLogger(__name__)


class Decision(StrEnum):
    CORRECT = "correct"
    WRONG_TYPE = "wrong_type"
    FALSE_POSITIVE = "false_positive"
    MISSING = "missing"
    UNCLEAR = "unclear"


# Decisions that count toward precision
SCORED_DECISIONS = frozenset({Decision.CORRECT, Decision.WRONG_TYPE, Decision.FALSE_POSITIVE})


def _utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Label(BaseModel):
    """One review decision on a detection (or a missed component)."""

    timestamp: str = Field(default_factory=_utc_now, description="ISO 8601 time of the decision")
    detection_id: str | int | None = Field(None, description="Reviewed detection row id")
    page_url: str | None = Field(None, description="Page the detection belongs to")
    component_key: str = Field(min_length=1, description="Component the detection claimed (or the missed one)")
    decision: Decision
    corrected_component_key: str | None = Field(None, description="Right key for wrong_type decisions")
    note: str | None = None
    media_type: str | None = Field(None, description="Reviewer's media type tag, passed through")
    card_type: str | None = Field(None, description="Reviewer's card type tag, passed through")


@dataclass(slots=True)
class LabelLoadResult:
    source: str
    rows: int = 0
    parsed: int = 0
    parse_errors: int = 0
    invalid_rows: int = 0
    labels: list[Label] = field(default_factory=list)

    def totals(self) -> dict[str, int]:
        return {
            "rows": self.rows,
            "parsed": self.parsed,
            "parse_errors": self.parse_errors,
            "invalid_rows": self.invalid_rows,
        }


def load_labels(path: str | Path) -> LabelLoadResult:
    """Parse a label log.  Bad lines are counted, never fatal.

    Raises:
        GateInputError: the file does not exist or cannot be read.
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise GateInputError(f"Labels file not found: {p}") from exc
    except OSError as exc:
        raise GateInputError(f"Cannot read labels file {p}: {exc}") from exc

    result = LabelLoadResult(source=str(p))
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        result.rows += 1
        try:
            raw = json.loads(line)
        except json.JSONDecodeError:
            result.parse_errors += 1
            logger.debug("Label line %d: not JSON", lineno)
            continue
        try:
            label = Label.model_validate(raw)
        except ValidationError as exc:
            result.invalid_rows += 1
            logger.debug("Label line %d: invalid (%d error(s))", lineno, exc.error_count())
            continue
        result.parsed += 1
        result.labels.append(label)

    if result.parse_errors or result.invalid_rows:
        logger.warning(
            "Labels %s: %d parse error(s), %d invalid row(s) of %d",
            p,
            result.parse_errors,
            result.invalid_rows,
            result.rows,
        )
    return result


def append_label(path: str | Path, label: Label) -> None:
    """Append one label event, creating the log if needed."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", encoding="utf-8") as f:
        f.write(label.model_dump_json(exclude_none=True) + "\n")
