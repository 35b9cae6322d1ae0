# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Logging for audit jobs: stdlib ``logging`` rendered through structlog.

Modules log with ``logging.getLogger(__name__)`` and %-style messages.
:func:`configure` installs one stderr handler whose formatter renders
either console lines (interactive runs) or JSON lines (scheduled batches).
:func:`job_context` tags every record emitted inside a job with its
``market`` and ``job`` name.

Leaf module: no uiaudit imports.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import AbstractContextManager
from typing import TextIO

import structlog

_CHATTY_LOGGERS = ("httpx", "httpcore", "aiosqlite")
_JSON_FORMATS = frozenset({"json", "jsonl"})


def _resolve(json_output: bool | None, level: str | None) -> tuple[bool, int]:
    if json_output is None:
        json_output = os.environ.get("UIAUDIT_LOG_FORMAT", "").strip().lower() in _JSON_FORMATS
    if level is None:
        level = os.environ.get("UIAUDIT_LOG_LEVEL", "").strip() or "INFO"
    return json_output, getattr(logging, level.upper(), logging.INFO)


def configure(
    *,
    json_output: bool | None = None,
    level: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """Route stdlib logging through structlog.  Safe to call repeatedly.

    Args:
        json_output: JSON lines instead of console output.  None reads
            ``UIAUDIT_LOG_FORMAT`` (``json`` enables it).
        level: Root level name.  None reads ``UIAUDIT_LOG_LEVEL``; unknown
            names fall back to INFO.
        stream: Destination, stderr by default.
    """
    use_json, root_level = _resolve(json_output, level)

    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if use_json:
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    # Per-request driver chatter stays at WARNING or stricter.
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))


def job_context(job: str, market: str, **extra: object) -> AbstractContextManager:
    """Bind ``job``/``market`` (plus *extra*) to every record logged inside the block."""
    return structlog.contextvars.bound_contextvars(job=job, market=market, **extra)
