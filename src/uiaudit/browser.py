# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Headless Chromium renderer for pages whose static markup is an app shell.

The browser is expensive, so it is started lazily on the first render and
shared by every worker of a batch.  The fetch job releases it explicitly at
batch end; it is also an async context manager::

    async with BrowserRenderer() as renderer:
        page = await renderer.render("https://example.com/")

Each render gets its own BrowserContext, closed before returning.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import suppress
from dataclasses import dataclass
from types import TracebackType

from playwright.async_api import Browser, Playwright, async_playwright

from .config import FETCH_USER_AGENT
from .errors import RenderError

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en-GB"


@dataclass(frozen=True, slots=True)
class BrowserConfig:
    """Browser launch and navigation configuration."""

    headless: bool = True
    locale: str = DEFAULT_LOCALE
    viewport_width: int = 1280
    viewport_height: int = 800
    user_agent: str = FETCH_USER_AGENT
    timeout_ms: int = 30000
    wait_until: str = "networkidle"

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be > 0, got {self.timeout_ms}")
        if self.wait_until not in ("load", "domcontentloaded", "networkidle", "commit"):
            raise ValueError(f"unsupported wait_until: {self.wait_until!r}")


@dataclass(frozen=True, slots=True)
class RenderedPage:
    """Markup captured after client-side rendering."""

    html: str
    status: int | None
    final_url: str


# ── Chromium auto-install ─────────────────────────────────────────

_chromium_install_attempted = False
_AUTO_INSTALL_TIMEOUT = 300  # seconds


async def _auto_install_chromium() -> bool:
    """Run ``playwright install chromium`` once per process."""
    global _chromium_install_attempted  # noqa: PLW0603
    if _chromium_install_attempted:
        return False
    _chromium_install_attempted = True

    logger.info("Chromium not found, running 'playwright install chromium'")
    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=_AUTO_INSTALL_TIMEOUT)
    except (OSError, TimeoutError) as exc:
        logger.warning("playwright install chromium failed: %s", exc)
        return False
    if proc.returncode == 0:
        logger.info("Chromium installed successfully")
        return True
    logger.warning(
        "playwright install chromium failed (rc=%d): %s",
        proc.returncode,
        stderr.decode(errors="replace")[:500],
    )
    return False


def chromium_launch_args(config: BrowserConfig) -> list[str]:
    return [
        "--disable-blink-features=AutomationControlled",
        f"--lang={config.locale}",
        "--disable-extensions",
        "--disable-dev-shm-usage",
        "--disable-background-networking",
        "--disable-sync",
        "--disable-gpu",
        "--no-first-run",
        "--deny-permission-prompts",
        "--disable-breakpad",
        "--no-pings",
        "--disable-component-update",
        "--noerrdialogs",
    ]


# ---------------------------------------------------------------------------
# BrowserRenderer
# ---------------------------------------------------------------------------


class BrowserRenderer:
    """Lazily started, batch-scoped Chromium used for rendered fetches."""

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self._config = config or BrowserConfig()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._start_lock = asyncio.Lock()
        self._renders = 0

    @property
    def started(self) -> bool:
        return self._browser is not None

    @property
    def renders(self) -> int:
        return self._renders

    # ── AsyncContextManager ──────────────────────────────────────────

    async def __aenter__(self) -> BrowserRenderer:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def _ensure_started(self) -> Browser:
        async with self._start_lock:
            if self._browser is not None:
                return self._browser

            self._playwright = await async_playwright().start()
            args = chromium_launch_args(self._config)
            try:
                self._browser = await self._playwright.chromium.launch(
                    headless=self._config.headless,
                    args=args,
                )
            except Exception as exc:
                if "executable doesn't exist" in str(exc).lower() and await _auto_install_chromium():
                    try:
                        self._browser = await self._playwright.chromium.launch(
                            headless=self._config.headless,
                            args=args,
                        )
                    except Exception as retry_exc:
                        await self._stop_playwright()
                        raise RenderError(f"Chromium launch failed after install: {retry_exc}") from retry_exc
                else:
                    await self._stop_playwright()
                    raise RenderError(f"Chromium launch failed: {exc}") from exc

            logger.info("Browser started (headless=%s)", self._config.headless)
            return self._browser

    async def _stop_playwright(self) -> None:
        if self._playwright is not None:
            with suppress(Exception):
                await self._playwright.stop()
            self._playwright = None

    async def close(self) -> None:
        """Release the browser. Idempotent."""
        if self._browser is not None:
            with suppress(Exception):
                await self._browser.close()
            self._browser = None
            logger.info("Browser closed after %d render(s)", self._renders)
        await self._stop_playwright()

    # ── Rendering ────────────────────────────────────────────────────

    async def render(self, url: str) -> RenderedPage:
        """Navigate to *url* and return the post-render markup.

        Raises:
            RenderError: launch, navigation or timeout failure.
        """
        browser = await self._ensure_started()
        cfg = self._config
        try:
            context = await browser.new_context(
                user_agent=cfg.user_agent,
                locale=cfg.locale,
                viewport={"width": cfg.viewport_width, "height": cfg.viewport_height},
            )
        except Exception as exc:
            raise RenderError(f"Failed to open browser context: {exc}") from exc

        try:
            page = await context.new_page()
            response = await page.goto(url, wait_until=cfg.wait_until, timeout=cfg.timeout_ms)
            html = await page.content()
            status = response.status if response is not None else None
            final_url = page.url or url
        except Exception as exc:
            raise RenderError(f"Render failed for {url}: {exc}") from exc
        finally:
            with suppress(Exception):
                await context.close()

        self._renders += 1
        return RenderedPage(html=html, status=status, final_url=final_url)
