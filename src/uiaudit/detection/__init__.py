# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Heuristic UI component detection over page markup."""

from .engine import RULES, DetectionReport, RuleResult, detect, detect_with_report
from .evidence import parse_evidence

__all__ = ["RULES", "DetectionReport", "RuleResult", "detect", "detect_with_report", "parse_evidence"]
