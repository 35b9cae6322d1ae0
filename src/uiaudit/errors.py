# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""uiaudit exception hierarchy.

All uiaudit-specific errors inherit from UiAuditError, allowing callers
to catch the base class for any audit failure or specific subclasses
for targeted handling.  Per-URL and per-rule failures are recorded
inline by the jobs; only configuration and storage failures propagate.
"""

from __future__ import annotations


class UiAuditError(Exception):
    """Base exception for all uiaudit errors."""


class FetchError(UiAuditError):
    """Static HTTP fetch failed after exhausting retries."""

    def __init__(self, message: str, *, attempts: int = 0, status: int | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.status = status


class RenderError(UiAuditError):
    """Headless browser launch or navigation failure."""


class SitemapError(UiAuditError):
    """A sitemap document could not be fetched or parsed."""


class ContentStoreError(UiAuditError):
    """Content store read/write failure."""


class CacheMissError(ContentStoreError):
    """No cached markup exists at the given pointer."""

    def __init__(self, pointer: str) -> None:
        super().__init__(f"No cached content at {pointer}")
        self.pointer = pointer


class CacheCorruptError(ContentStoreError):
    """Cached markup exists but cannot be decompressed or decoded."""

    def __init__(self, pointer: str, reason: str = "") -> None:
        msg = f"Corrupt cache entry at {pointer}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.pointer = pointer


class GateError(UiAuditError):
    """Base for precision gate failures that abort a scoring run."""


class GateConfigError(GateError):
    """Gate configuration is missing or invalid."""


class GateInputError(GateError):
    """Label log or regression report is missing or unreadable."""


class DataConsistencyError(GateError):
    """Report data contradicts itself (e.g. sufficient sample without precision)."""


class JobAlreadyRunningError(UiAuditError):
    """A fetch or analysis job is already running for this service."""

    def __init__(self, job: str) -> None:
        super().__init__(f"{job} job already running")
        self.job = job
