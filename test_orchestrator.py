"""Tests for the fetch orchestrator: claim, retry budget, persistence failures."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from aiohttp import test_utils, web

from filecache.errors import EligibilityQueryError, RecordStoreError
from filecache.fetcher import HttpFetcher
from filecache.infra.http import HttpClient
from filecache.models import CacheLabel
from filecache.orchestrator import FetchOrchestrator, PipelineResult

TIMEOUT = timedelta(minutes=10)


def _orchestrator(store, fetcher, storage, **kwargs) -> FetchOrchestrator:
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("pending_timeout", TIMEOUT)
    return FetchOrchestrator(store, fetcher, storage, **kwargs)


class TestScenarios:

    @pytest.mark.asyncio
    async def test_failures_exhaust_budget_then_excluded(self, store, fetcher, storage):
        await store.add_resource("urn:r", "http://remote/r")
        fetcher.queue("http://remote/r", 500, "timeout", 503)
        orchestrator = _orchestrator(store, fetcher, storage)

        await orchestrator.run()
        status = await store.get_status("urn:r")
        assert (status.label, status.times_tried, status.http_status_code) == (CacheLabel.FAILED, 1, 500)

        await orchestrator.run()
        status = await store.get_status("urn:r")
        assert (status.label, status.times_tried, status.http_status_code) == (CacheLabel.FAILED, 2, None)

        summary = await orchestrator.run()
        status = await store.get_status("urn:r")
        assert (status.label, status.times_tried, status.http_status_code) == (CacheLabel.DEAD, 3, 503)
        assert summary.count(PipelineResult.DEAD) == 1

        summary = await orchestrator.run()
        assert summary.eligible == 0
        assert fetcher.calls == ["http://remote/r"] * 3

    @pytest.mark.asyncio
    async def test_png_is_cached_with_artifact(self, store, storage, tmp_path):
        async def png(request):
            return web.Response(body=b"\x89PNG....", content_type="image/png")

        app = web.Application()
        app.router.add_get("/s.png", png)
        server = test_utils.TestServer(app)
        await server.start_server()
        http_fetcher = HttpFetcher(storage, http=HttpClient(timeout=5))
        try:
            await store.add_resource("urn:s", str(server.make_url("/s.png")))
            summary = await _orchestrator(store, http_fetcher, storage).run()
        finally:
            await http_fetcher.close()
            await server.close()

        assert summary.count(PipelineResult.CACHED) == 1
        status = await store.get_status("urn:s")
        assert status.label == CacheLabel.CACHED
        assert status.times_tried == 1
        assert status.http_status_code == 200

        files = await store.list_artifacts("urn:s")
        assert len(files) == 1
        assert files[0]["extension"] == "png"
        assert files[0]["format"] == "image/png"
        name = files[0]["physical_uri"].removeprefix("share://")
        assert storage.path_for(name).exists()

        assert (await _eligible_uris(store)) == set()


async def _eligible_uris(store):
    return {r.uri for r in await store.list_eligible(3, TIMEOUT)}


class TestFailureHandling:

    @pytest.mark.asyncio
    async def test_persist_failure_keeps_budget_and_removes_file(
        self, store, fetcher, storage, monkeypatch
    ):
        await store.add_resource("urn:p", "http://remote/p")
        await store.set_status("urn:p", CacheLabel.FAILED, 500, 1)
        fetcher.queue("http://remote/p", "ok:image/png")

        async def broken_record(resource_uri, artifact):
            raise RecordStoreError("database is locked")

        monkeypatch.setattr(store, "record_artifact", broken_record)
        summary = await _orchestrator(store, fetcher, storage).run()

        assert summary.count(PipelineResult.PERSIST_FAILED) == 1
        status = await store.get_status("urn:p")
        assert status.label == CacheLabel.FAILED
        assert status.times_tried == 1
        assert list(storage.root.iterdir()) == []
        assert await _eligible_uris(store) == {"urn:p"}

    @pytest.mark.asyncio
    async def test_claim_failure_skips_resource(self, store, fetcher, storage, monkeypatch):
        await store.add_resource("urn:c", "http://remote/c")
        real_set_status = store.set_status

        async def refuse_pending(resource_uri, label, *args, **kwargs):
            if label == CacheLabel.PENDING:
                raise RecordStoreError("read-only")
            return await real_set_status(resource_uri, label, *args, **kwargs)

        monkeypatch.setattr(store, "set_status", refuse_pending)
        summary = await _orchestrator(store, fetcher, storage).run()

        assert summary.count(PipelineResult.SKIPPED) == 1
        assert fetcher.calls == []
        assert await store.get_status("urn:c") is None
        assert await _eligible_uris(store) == {"urn:c"}

    @pytest.mark.asyncio
    async def test_one_broken_pipeline_does_not_stop_others(self, store, fetcher, storage):
        await store.add_resource("urn:bad", "http://remote/bad")
        await store.add_resource("urn:good", "http://remote/good")
        fetcher.queue("http://remote/bad", RuntimeError("fetcher bug"))
        fetcher.queue("http://remote/good", "ok:image/png")

        summary = await _orchestrator(store, fetcher, storage).run()

        assert summary.eligible == 2
        assert (await store.get_status("urn:good")).label == CacheLabel.CACHED
        bad = await store.get_status("urn:bad")
        assert bad.label == CacheLabel.FAILED
        assert bad.times_tried == 1

    @pytest.mark.asyncio
    async def test_final_write_failure_leaves_pending(self, store, fetcher, storage, monkeypatch):
        await store.add_resource("urn:w", "http://remote/w")
        fetcher.queue("http://remote/w", 404)
        real_set_status = store.set_status

        async def only_pending(resource_uri, label, *args, **kwargs):
            if label != CacheLabel.PENDING:
                raise RecordStoreError("connection lost")
            return await real_set_status(resource_uri, label, *args, **kwargs)

        monkeypatch.setattr(store, "set_status", only_pending)
        summary = await _orchestrator(store, fetcher, storage).run()

        assert summary.count(PipelineResult.ERROR) == 1
        status = await store.get_status("urn:w")
        assert status.label == CacheLabel.PENDING
        assert status.times_tried == 0

    @pytest.mark.asyncio
    async def test_eligibility_failure_is_reported(self, store, fetcher, storage, monkeypatch):
        async def broken_query(*args, **kwargs):
            raise RecordStoreError("no such table")

        monkeypatch.setattr(store, "list_eligible", broken_query)
        with pytest.raises(EligibilityQueryError):
            await _orchestrator(store, fetcher, storage).run()
        assert fetcher.calls == []


class TestClaimAndConcurrency:

    @pytest.mark.asyncio
    async def test_claimed_resource_not_picked_by_overlapping_run(self, store, fetcher, storage):
        await store.add_resource("urn:slow", "http://remote/slow")
        release = asyncio.Event()
        started = asyncio.Event()
        original_fetch = fetcher.fetch

        async def slow_fetch(url):
            started.set()
            await release.wait()
            return await original_fetch(url)

        fetcher.fetch = slow_fetch
        fetcher.queue("http://remote/slow", "ok:image/png")
        orchestrator = _orchestrator(store, fetcher, storage)

        first = asyncio.create_task(orchestrator.run())
        await started.wait()
        status = await store.get_status("urn:slow")
        assert status.label == CacheLabel.PENDING

        second = await orchestrator.run()
        assert second.eligible == 0

        release.set()
        first_summary = await first
        assert first_summary.count(PipelineResult.CACHED) == 1

    @pytest.mark.asyncio
    async def test_stale_pending_is_fetched_again(self, store, fetcher, storage):
        await store.add_resource("urn:stuck", "http://remote/stuck")
        await store.set_status("urn:stuck", CacheLabel.PENDING, times_tried=1)
        fetcher.queue("http://remote/stuck", "ok:image/png")

        orchestrator = _orchestrator(store, fetcher, storage, pending_timeout=timedelta(seconds=60))
        assert (await orchestrator.run()).eligible == 0

        orchestrator = _orchestrator(store, fetcher, storage, pending_timeout=timedelta(0))
        await asyncio.sleep(0.01)
        summary = await orchestrator.run()
        assert summary.count(PipelineResult.CACHED) == 1
        assert (await store.get_status("urn:stuck")).times_tried == 2

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, store, fetcher, storage):
        in_flight = 0
        peak = 0
        original_fetch = fetcher.fetch

        async def counting_fetch(url):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            try:
                return await original_fetch(url)
            finally:
                in_flight -= 1

        fetcher.fetch = counting_fetch
        for i in range(6):
            await store.add_resource(f"urn:{i}", f"http://remote/{i}")
            fetcher.queue(f"http://remote/{i}", 500)

        summary = await _orchestrator(store, fetcher, storage, max_concurrency=2).run()
        assert summary.count(PipelineResult.FAILED) == 6
        assert 1 <= peak <= 2

    @pytest.mark.asyncio
    async def test_unbounded_by_default(self, store, fetcher, storage):
        arrived = 0
        everyone_in = asyncio.Event()
        original_fetch = fetcher.fetch

        async def gathering_fetch(url):
            nonlocal arrived
            arrived += 1
            if arrived == 5:
                everyone_in.set()
            # Only returns once all five fetches are in flight together.
            await asyncio.wait_for(everyone_in.wait(), timeout=5)
            return await original_fetch(url)

        fetcher.fetch = gathering_fetch
        for i in range(5):
            await store.add_resource(f"urn:{i}", f"http://remote/{i}")
            fetcher.queue(f"http://remote/{i}", 500)

        summary = await _orchestrator(store, fetcher, storage).run()
        assert summary.count(PipelineResult.FAILED) == 5
