# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for uiaudit.labels — review label log."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from uiaudit.errors import GateInputError
from uiaudit.labels import SCORED_DECISIONS, Decision, Label, append_label, load_labels


class TestLabel:
    def test_defaults(self):
        label = Label(component_key="tabs", decision="correct")
        assert label.decision is Decision.CORRECT
        assert label.timestamp.endswith("Z")
        assert label.detection_id is None

    def test_rejects_unknown_decision(self):
        with pytest.raises(ValidationError):
            Label(component_key="tabs", decision="maybe")

    def test_rejects_empty_component(self):
        with pytest.raises(ValidationError):
            Label(component_key="", decision="correct")

    def test_detection_id_string_or_int(self):
        assert Label(component_key="tabs", decision="correct", detection_id="12").detection_id == "12"
        assert Label(component_key="tabs", decision="correct", detection_id=12).detection_id == 12

    def test_scored_decisions(self):
        assert Decision.MISSING not in SCORED_DECISIONS
        assert Decision.UNCLEAR not in SCORED_DECISIONS
        assert Decision.WRONG_TYPE in SCORED_DECISIONS


class TestLoadLabels:
    def test_counts_bad_lines(self, tmp_path):
        path = tmp_path / "labels.jsonl"
        path.write_text(
            "\n".join(
                [
                    json.dumps({"component_key": "tabs", "decision": "correct"}),
                    "{not json",
                    "",
                    json.dumps({"component_key": "tabs", "decision": "nope"}),
                    json.dumps({"decision": "correct"}),
                    json.dumps({"component_key": "hero", "decision": "false_positive", "extra": 1}),
                ]
            ),
            encoding="utf-8",
        )
        result = load_labels(path)
        assert result.totals() == {"rows": 5, "parsed": 2, "parse_errors": 1, "invalid_rows": 2}
        assert [lbl.component_key for lbl in result.labels] == ["tabs", "hero"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(GateInputError, match="not found"):
            load_labels(tmp_path / "absent.jsonl")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "labels.jsonl"
        path.write_text("", encoding="utf-8")
        assert load_labels(path).totals()["rows"] == 0


class TestAppendLabel:
    def test_append_then_load(self, tmp_path):
        path = tmp_path / "qa" / "labels.jsonl"
        append_label(path, Label(component_key="tabs", decision="correct", detection_id=1))
        append_label(path, Label(component_key="tabs", decision="wrong_type", corrected_component_key="accordion"))

        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert "note" not in json.loads(lines[0])

        result = load_labels(path)
        assert result.parsed == 2
        assert result.labels[1].corrected_component_key == "accordion"
