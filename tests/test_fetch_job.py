# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for uiaudit.fetch_job — batch fetch, dedup, render path, backfill."""

from __future__ import annotations

import logging

import httpx
import pytest

from uiaudit import RenderMode, UrlStatus
from uiaudit.browser import RenderedPage
from uiaudit.config import BackfillConfig, FetchConfig
from uiaudit.errors import ContentStoreError, FetchError, RenderError
from uiaudit.fetch_job import FetchJob, StaticFetcher, backfill_cache

MARKET = "UK"
SHELL = '<html><body><div id="root"></div></body></html>'


def _content_page(title: str) -> str:
    paragraphs = "".join(f"<p>{title} paragraph {i} with enough words to count as real copy.</p>" for i in range(12))
    return f"<html><body><main><section><h1>{title}</h1>{paragraphs}</section></main></body></html>"


def _config(**kwargs) -> FetchConfig:
    base = {"market": MARKET, "concurrency": 1, "request_interval": 0, "retry_base_delay": 0, "max_retries": 1}
    base.update(kwargs)
    return FetchConfig(**base)


def _client(pages: dict[str, str], requested: list[str] | None = None) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if requested is not None:
            requested.append(url)
        if url not in pages:
            return httpx.Response(404, text="<html><body>missing</body></html>")
        return httpx.Response(200, text=pages[url])

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _seed(repo, *urls: str) -> list[int]:
    await repo.upsert_urls(MARKET, [(u, None, None) for u in urls])
    return [(await repo.get_url_by_address(MARKET, u)).id for u in urls]


class _FakeRenderer:
    def __init__(self, html: str = "", *, fail: bool = False) -> None:
        self.html = html or _content_page("Rendered")
        self.fail = fail
        self.calls: list[str] = []
        self.closed = 0

    async def render(self, url: str) -> RenderedPage:
        self.calls.append(url)
        if self.fail:
            raise RenderError(f"Render failed for {url}: boom")
        return RenderedPage(html=self.html, status=200, final_url=url)

    async def close(self) -> None:
        self.closed += 1


# ---------------------------------------------------------------------------
# StaticFetcher
# ---------------------------------------------------------------------------


class TestStaticFetcher:
    async def test_any_status_is_a_response(self):
        async with _client({}) as client:
            page = await StaticFetcher(client, max_retries=0).fetch("https://e.com/missing")
        assert page.status == 404

    async def test_retries_transport_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, text="ok")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            page = await StaticFetcher(client, max_retries=3, retry_base_delay=0).fetch("https://e.com/")
        assert page.html == "ok"
        assert len(calls) == 3

    async def test_gives_up_after_max_retries(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(FetchError, match="ConnectError") as exc_info:
                await StaticFetcher(client, max_retries=2, retry_base_delay=0).fetch("https://e.com/")
        assert exc_info.value.attempts == 3


# ---------------------------------------------------------------------------
# FetchJob
# ---------------------------------------------------------------------------


class TestFetchJob:
    async def test_fetches_and_caches(self, repo, store):
        [url_id] = await _seed(repo, "https://e.com/a")
        page = _content_page("Alpha")
        page = page.replace("<html>", '<html><head><link rel="canonical" href="https://e.com/a-canon"></head>')
        async with _client({"https://e.com/a": page}) as client:
            result = await FetchJob(repo, store, _config(), client=client).run()

        assert result.completed
        assert result.batch == 1
        assert result.stats.fetched == 1
        assert result.stats.static == 1
        record = await repo.get_url(url_id)
        assert record.status is UrlStatus.FETCHED
        assert record.render_mode is RenderMode.STATIC
        assert record.canonical_url == "https://e.com/a-canon"
        assert record.http_status == 200
        assert store.get(record.html_path) == page

    async def test_duplicate_content_skipped(self, repo, store):
        ids = await _seed(repo, "https://e.com/a", "https://e.com/b")
        same = _content_page("Same")
        async with _client({"https://e.com/a": same, "https://e.com/b": same}) as client:
            result = await FetchJob(repo, store, _config(), client=client).run()

        assert (result.stats.fetched, result.stats.skipped) == (1, 1)
        first, second = await repo.get_url(ids[0]), await repo.get_url(ids[1])
        assert first.status is UrlStatus.FETCHED
        assert second.status is UrlStatus.SKIPPED
        assert second.duplicate_of_id == ids[0]
        assert second.html_path is None
        assert second.content_hash == first.content_hash

    async def test_transport_failure_marks_failed(self, repo, store):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        [url_id] = await _seed(repo, "https://e.com/a")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await FetchJob(repo, store, _config(), client=client).run()

        assert result.stats.failed == 1
        record = await repo.get_url(url_id)
        assert record.status is UrlStatus.FAILED
        assert "ConnectError" in record.error_message

    async def test_store_failure_not_counted_as_static(self, repo, store, monkeypatch):
        def broken_put(market, url_id, markup):
            raise ContentStoreError("disk full")

        monkeypatch.setattr(store, "put", broken_put)
        [url_id] = await _seed(repo, "https://e.com/a")
        async with _client({"https://e.com/a": _content_page("A")}) as client:
            result = await FetchJob(repo, store, _config(), client=client).run()

        assert result.stats.failed == 1
        assert (result.stats.static, result.stats.rendered) == (0, 0)
        assert (await repo.get_url(url_id)).error_message == "disk full"

    async def test_batch_summary_reports_pacing(self, repo, store, caplog):
        await _seed(repo, "https://e.com/a", "https://e.com/b")
        pages = {"https://e.com/a": _content_page("A"), "https://e.com/b": _content_page("B")}
        with caplog.at_level(logging.INFO, logger="uiaudit.fetch_job"):
            async with _client(pages) as client:
                await FetchJob(repo, store, _config(), client=client).run()
        assert "over 2 start(s)" in caplog.text

    async def test_one_failure_does_not_abort_batch(self, repo, store):
        def handler(request):
            if request.url.path == "/bad":
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, text=_content_page(request.url.path))

        ids = await _seed(repo, "https://e.com/bad", "https://e.com/good")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await FetchJob(repo, store, _config(concurrency=2), client=client).run()

        assert (await repo.get_url(ids[0])).status is UrlStatus.FAILED
        assert (await repo.get_url(ids[1])).status is UrlStatus.FETCHED

    async def test_shell_page_is_rendered(self, repo, store):
        [url_id] = await _seed(repo, "https://e.com/app")
        renderer = _FakeRenderer()
        async with _client({"https://e.com/app": SHELL}) as client:
            result = await FetchJob(repo, store, _config(), client=client, renderer=renderer).run()

        assert renderer.calls == ["https://e.com/app"]
        assert renderer.closed == 1
        assert result.stats.rendered == 1
        record = await repo.get_url(url_id)
        assert record.render_mode is RenderMode.RENDERED
        assert "Rendered" in store.get(record.html_path)

    async def test_renderer_not_closed_when_unused(self, repo, store):
        await _seed(repo, "https://e.com/a")
        renderer = _FakeRenderer()
        async with _client({"https://e.com/a": _content_page("A")}) as client:
            await FetchJob(repo, store, _config(), client=client, renderer=renderer).run()
        assert renderer.calls == []
        assert renderer.closed == 0

    async def test_render_failure_marks_failed(self, repo, store):
        [url_id] = await _seed(repo, "https://e.com/app")
        async with _client({"https://e.com/app": SHELL}) as client:
            await FetchJob(repo, store, _config(), client=client, renderer=_FakeRenderer(fail=True)).run()
        record = await repo.get_url(url_id)
        assert record.status is UrlStatus.FAILED
        assert "Render failed" in record.error_message

    async def test_batch_size_bounds_work(self, repo, store):
        urls = [f"https://e.com/{i}" for i in range(3)]
        await _seed(repo, *urls)
        pages = {u: _content_page(u) for u in urls}
        async with _client(pages) as client:
            result = await FetchJob(repo, store, _config(batch_size=2), client=client).run()
        assert not result.completed
        assert result.batch == 2
        assert await repo.count_status(MARKET, UrlStatus.PENDING) == 1

    async def test_stop_before_run_leaves_rows_pending(self, repo, store):
        await _seed(repo, "https://e.com/a", "https://e.com/b")
        requested: list[str] = []
        async with _client({}, requested) as client:
            job = FetchJob(repo, store, _config(), client=client)
            job.stop()
            result = await job.run()
        assert result.stopped
        assert requested == []
        assert await repo.count_status(MARKET, UrlStatus.PENDING) == 2

    async def test_stop_mid_batch_finishes_in_flight(self, repo, store):
        await _seed(repo, "https://e.com/a", "https://e.com/b", "https://e.com/c")
        job: FetchJob | None = None

        def handler(request):
            job.stop()
            return httpx.Response(200, text=_content_page(request.url.path))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            job = FetchJob(repo, store, _config(), client=client)
            result = await job.run()

        assert result.stopped
        assert result.stats.fetched == 1
        assert await repo.count_status(MARKET, UrlStatus.PENDING) == 2
        assert not job.running


# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------


class TestBackfill:
    async def test_fills_missing_pointers(self, repo, store):
        ids = await _seed(repo, "https://e.com/a")
        await repo.mark_fetched(
            ids[0],
            http_status=200,
            final_url="https://e.com/a/final",
            canonical_url=None,
            content_hash="h",
            render_mode=RenderMode.STATIC,
            html_path="html/UK/1.html.gz",
        )
        await repo._db.execute("UPDATE url_inventory SET html_path = NULL")
        await repo._db.commit()

        requested: list[str] = []
        async with _client({"https://e.com/a/final": "<p>again</p>"}, requested) as client:
            stats = await backfill_cache(
                repo, store, BackfillConfig(market=MARKET, request_interval=0), client=client
            )

        assert (stats.processed, stats.cached, stats.failed) == (1, 1, 0)
        assert requested == ["https://e.com/a/final"]
        record = await repo.get_url(ids[0])
        assert store.get(record.html_path) == "<p>again</p>"
        assert (await repo.cache_status(MARKET)).remaining == 0

    async def test_nothing_to_do(self, repo, store):
        stats = await backfill_cache(repo, store, BackfillConfig(market=MARKET))
        assert stats.processed == 0
