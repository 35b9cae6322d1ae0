# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Job configuration — immutable dataclasses with ``UIAUDIT_*`` env overrides.

Leaf module: stdlib only.  Values are validated in ``__post_init__`` so an
invalid override fails at startup, not mid-batch.
"""

from __future__ import annotations

import logging
import os
from contextlib import suppress
from dataclasses import dataclass, replace
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MARKET = "UK"
DEFAULT_DATA_DIR = "~/.uiaudit"
DEFAULT_DB_NAME = "uiaudit.db"

# Browser-like headers for the static fetch path.
FETCH_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
FETCH_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


# ---------------------------------------------------------------------------
# Fetch job
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FetchConfig:
    """Immutable configuration for one fetch batch."""

    market: str = DEFAULT_MARKET
    concurrency: int = 2
    request_interval: float = 1.0  # seconds between task starts, pool-wide
    batch_size: int = 100
    max_retries: int = 3
    retry_base_delay: float = 1.0  # backoff = base * 2**attempt
    fetch_timeout: float = 15.0
    user_agent: str = FETCH_USER_AGENT

    def __post_init__(self) -> None:
        if not self.market:
            raise ValueError("market must be non-empty")
        if self.concurrency <= 0:
            raise ValueError(f"concurrency must be > 0, got {self.concurrency}")
        if self.request_interval < 0:
            raise ValueError(f"request_interval must be >= 0, got {self.request_interval}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got {self.batch_size}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_base_delay < 0:
            raise ValueError(f"retry_base_delay must be >= 0, got {self.retry_base_delay}")
        if self.fetch_timeout <= 0:
            raise ValueError(f"fetch_timeout must be > 0, got {self.fetch_timeout}")

    @classmethod
    def from_env(cls, **overrides) -> FetchConfig:
        """Build a config from ``UIAUDIT_*`` env vars; explicit kwargs win."""
        base = cls(**overrides)
        changes: dict = {}

        env_concurrency = os.environ.get("UIAUDIT_CONCURRENCY", "").strip()
        if env_concurrency and "concurrency" not in overrides:
            with suppress(ValueError):
                changes["concurrency"] = int(env_concurrency)

        env_interval = os.environ.get("UIAUDIT_REQUEST_INTERVAL", "").strip()
        if env_interval and "request_interval" not in overrides:
            with suppress(ValueError):
                changes["request_interval"] = float(env_interval)

        env_batch = os.environ.get("UIAUDIT_BATCH_SIZE", "").strip()
        if env_batch and "batch_size" not in overrides:
            with suppress(ValueError):
                changes["batch_size"] = int(env_batch)

        env_retries = os.environ.get("UIAUDIT_MAX_RETRIES", "").strip()
        if env_retries and "max_retries" not in overrides:
            with suppress(ValueError):
                changes["max_retries"] = int(env_retries)

        env_timeout = os.environ.get("UIAUDIT_FETCH_TIMEOUT", "").strip()
        if env_timeout and "fetch_timeout" not in overrides:
            with suppress(ValueError):
                changes["fetch_timeout"] = float(env_timeout)

        if changes:
            logger.debug("FetchConfig env overrides: %s", changes)
            return replace(base, **changes)
        return base


# ---------------------------------------------------------------------------
# Cache backfill
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BackfillConfig:
    """Re-fetch fetched rows that have no cache pointer."""

    market: str = DEFAULT_MARKET
    batch_size: int = 100
    concurrency: int = 3
    request_interval: float = 1.0
    only_unique: bool = True  # skip rows marked as duplicates

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got {self.batch_size}")
        if self.concurrency <= 0:
            raise ValueError(f"concurrency must be > 0, got {self.concurrency}")
        if self.request_interval < 0:
            raise ValueError(f"request_interval must be >= 0, got {self.request_interval}")


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AnalysisConfig:
    """One page window of the detection run."""

    market: str = DEFAULT_MARKET
    limit: int = 200
    offset: int = 0
    reset: bool = False  # drop existing detections for the window first

    def __post_init__(self) -> None:
        if self.limit <= 0:
            raise ValueError(f"limit must be > 0, got {self.limit}")
        if self.offset < 0:
            raise ValueError(f"offset must be >= 0, got {self.offset}")


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def data_dir() -> Path:
    """Root for the SQLite database and the content store."""
    env_dir = os.environ.get("UIAUDIT_DATA_DIR", "").strip()
    return Path(env_dir or DEFAULT_DATA_DIR).expanduser()


def db_path() -> Path:
    env_db = os.environ.get("UIAUDIT_DB_PATH", "").strip()
    if env_db:
        return Path(env_db).expanduser()
    return data_dir() / DEFAULT_DB_NAME
