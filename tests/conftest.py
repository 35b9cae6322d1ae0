# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import uiaudit  # noqa: F401
except ImportError:
    raise ImportError("uiaudit is not installed. Run: pip install -e '.[dev]'") from None

import pytest

from uiaudit.content_store import ContentStore
from uiaudit.repository import SqliteRepository


@pytest.fixture(autouse=True)
def _block_real_browser(request, monkeypatch):
    """Safety net: prevent real Playwright launches in unit tests.

    Tests that exercise the renderer patch ``uiaudit.browser.async_playwright``
    themselves; that patch takes priority over this fixture.
    """
    if "allow_real_browser" in request.keywords:
        return

    def _no_real_playwright():
        raise RuntimeError("Test tried to start a real browser. Patch 'uiaudit.browser.async_playwright'.")

    monkeypatch.setattr("uiaudit.browser.async_playwright", _no_real_playwright)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    """Keep UIAUDIT_* settings from the developer's shell out of tests."""
    for name in (
        "UIAUDIT_CONCURRENCY",
        "UIAUDIT_REQUEST_INTERVAL",
        "UIAUDIT_BATCH_SIZE",
        "UIAUDIT_MAX_RETRIES",
        "UIAUDIT_FETCH_TIMEOUT",
        "UIAUDIT_DB_PATH",
        "UIAUDIT_LOG_LEVEL",
        "UIAUDIT_LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("UIAUDIT_DATA_DIR", str(tmp_path / "uiaudit-home"))


@pytest.fixture
async def repo(tmp_path):
    """SqliteRepository in a temp directory."""
    r = await SqliteRepository.create(tmp_path / "test.db")
    yield r
    await r.close()


@pytest.fixture
def store(tmp_path):
    return ContentStore(tmp_path / "data")
