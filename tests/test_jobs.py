# File: tests/test_jobs.py
# Job store lifecycle and the background runner
from __future__ import annotations

import asyncio
from typing import List, Tuple

import pytest

from site_lens.config import ScannerConfig
from site_lens.errors import ConfigurationError
from site_lens.jobs.runner import JobRunner
from site_lens.jobs.store import JobStore, MemoryKeyValueStore, RedisKeyValueStore, open_key_value_store
from site_lens.models import ScanReport

from fakes import FakeClock

EPOCH = 1_700_000_000.0
TTL_MS = 60_000


@pytest.fixture()
def wall() -> FakeClock:
    return FakeClock(EPOCH)


@pytest.fixture()
def store(wall) -> JobStore:
    return JobStore(MemoryKeyValueStore(clock=wall), ttl_ms=TTL_MS, key_prefix="test:job:", clock=wall)


# --------------------------------------------------------------------------- #
#                               Key-value stores                              #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_memory_store_expires_keys(wall):
    kv = MemoryKeyValueStore(clock=wall)
    await kv.set("k", "v", 1_000)
    wall.advance(999)
    assert await kv.get("k") == "v"
    wall.advance(1)
    assert await kv.get("k") is None
    assert len(kv) == 0


@pytest.mark.asyncio()
async def test_open_store_falls_back_to_memory_outside_production(config):
    kv = await open_key_value_store(config)
    assert isinstance(kv, MemoryKeyValueStore)


@pytest.mark.asyncio()
async def test_open_store_requires_redis_in_production():
    cfg = ScannerConfig(environment="production", jobs={"redis_url": None})
    with pytest.raises(ConfigurationError, match="Persistent job store is required in production"):
        await open_key_value_store(cfg)


@pytest.mark.asyncio()
async def test_unreachable_redis(unused_tcp_port):
    url = f"redis://localhost:{unused_tcp_port}/0"
    local = ScannerConfig(environment="local", jobs={"redis_url": url})
    assert isinstance(await open_key_value_store(local), MemoryKeyValueStore)

    production = ScannerConfig(environment="production", jobs={"redis_url": url})
    with pytest.raises(ConfigurationError, match="Redis unavailable"):
        await open_key_value_store(production)


def test_redis_store_from_url_is_lazy():
    kv = RedisKeyValueStore.from_url("redis://localhost:6379/0")
    assert isinstance(kv, RedisKeyValueStore)


# --------------------------------------------------------------------------- #
#                               Job store                                     #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_create_and_get(store):
    job = await store.create({"startUrl": "https://example.com"})
    assert job.job_id.startswith("scan_")
    assert job.status == "queued"
    assert job.progress == {"percent": 0, "message": "Queued for processing."}

    loaded = await store.get(job.job_id)
    assert loaded == job
    assert loaded.payload == {"startUrl": "https://example.com"}
    assert "payload" not in loaded.to_dict()
    assert await store.get("") is None
    assert await store.get("scan_missing") is None


@pytest.mark.asyncio()
async def test_update_refreshes_expiry(store, wall):
    job = await store.create({})
    wall.advance(TTL_MS - 1_000)
    running = await store.mark_running(job.job_id, 150, "  Launching   browser  ")
    assert running.status == "running"
    assert running.progress == {"percent": 100, "message": "Launching browser"}
    assert running.expires_at > job.expires_at

    wall.advance(TTL_MS - 1_000)
    assert await store.get(job.job_id) is not None
    wall.advance(2_000)
    assert await store.get(job.job_id) is None


@pytest.mark.asyncio()
async def test_complete_and_fail(store):
    done = await store.create({})
    completed = await store.complete(done.job_id, {"status": "complete"})
    assert completed.status == "complete"
    assert completed.terminal
    assert completed.result == {"status": "complete"}
    assert completed.error is None
    assert completed.completed_at is not None
    assert completed.progress == {"percent": 100, "message": "Scan completed."}

    broken = await store.create({})
    failed = await store.fail(broken.job_id, RuntimeError("x" * 400))
    assert failed.status == "failed"
    assert failed.error["code"] == "scan_failed"
    assert len(failed.error["message"]) == 280
    assert (await store.get(broken.job_id)).to_dict()["error"] == failed.error

    assert await store.update("scan_unknown", status="running") is None


@pytest.mark.asyncio()
async def test_unreadable_record_is_dropped(store):
    await store.kv.set("test:job:scan_bad", "{not json", TTL_MS)
    assert await store.get("scan_bad") is None
    assert await store.kv.get("test:job:scan_bad") is None


# --------------------------------------------------------------------------- #
#                               Runner                                        #
# --------------------------------------------------------------------------- #


def _report(status: str = "complete") -> ScanReport:
    return ScanReport(
        status=status,
        message="Scan completed.",
        mode="single",
        start_url="https://example.com/",
        started_at="2024-05-01T00:00:00+00:00",
        finished_at="2024-05-01T00:00:01+00:00",
        duration_ms=1_000,
        engines={},
        summary={"overallScore": 97},
    )


class FakeCoordinator:
    def __init__(self, *, error: BaseException = None, delay_s: float = 0.05):
        self.error = error
        self.delay_s = delay_s
        self.requests = []

    async def run(self, request, progress=None):
        self.requests.append(request)
        if progress is not None:
            await progress(50, "accessibility engine available")
        await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return _report()


class RecordingStore(JobStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.marks: List[Tuple[int, str]] = []

    async def mark_running(self, job_id, percent, message):
        self.marks.append((percent, message))
        return await super().mark_running(job_id, percent, message)


async def wait_terminal(store: JobStore, job_id: str, timeout_s: float = 2.0):
    async def poll():
        while True:
            job = await store.get(job_id)
            if job is not None and job.terminal:
                return job
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(poll(), timeout_s)


@pytest.mark.asyncio()
async def test_runner_completes_job_with_heartbeat(config):
    store = RecordingStore(MemoryKeyValueStore(), ttl_ms=TTL_MS)
    coordinator = FakeCoordinator()
    runner = JobRunner(config, coordinator, store, heartbeat_interval_s=0.01)

    job = await runner.submit({"startUrl": "https://example.com", "mode": "crawl", "maxPages": 2})
    assert job.status == "queued"
    finished = await wait_terminal(store, job.job_id)

    assert finished.status == "complete"
    assert finished.result["summary"] == {"overallScore": 97}
    assert coordinator.requests[0].max_pages == 2
    assert store.marks[0] == (10, "Launching browser context...")
    messages = [message for _, message in store.marks]
    assert "Page fetch stage complete. Running accessibility checks..." in messages
    percents = [percent for percent, _ in store.marks]
    assert percents == sorted(percents)
    await runner.close()


@pytest.mark.asyncio()
async def test_runner_records_failure(config, store):
    runner = JobRunner(config, FakeCoordinator(error=RuntimeError("browser crashed")), store)
    job = await store.create({"startUrl": "https://example.com"})

    failed = await runner.run(job.job_id)

    assert failed.status == "failed"
    assert failed.error == {"code": "scan_failed", "message": "browser crashed"}
    assert failed.progress == {"percent": 100, "message": "Scan failed."}


@pytest.mark.asyncio()
async def test_runner_rejects_invalid_url(config, store):
    coordinator = FakeCoordinator()
    runner = JobRunner(config, coordinator, store)
    job = await store.create({"startUrl": "mailto:team@example.com"})

    failed = await runner.run(job.job_id)

    assert failed.error["code"] == "invalid_request"
    assert coordinator.requests == []


@pytest.mark.asyncio()
async def test_runner_ignores_missing_and_started_jobs(config, store):
    runner = JobRunner(config, FakeCoordinator(), store)
    assert await runner.run("scan_missing") is None

    job = await store.create({"startUrl": "https://example.com"})
    await store.mark_running(job.job_id, 40, "busy")
    unchanged = await runner.run(job.job_id)
    assert unchanged.status == "running"
    assert unchanged.progress["percent"] == 40


@pytest.mark.asyncio()
async def test_close_cancels_running_jobs(config, store):
    runner = JobRunner(config, FakeCoordinator(delay_s=10), store, heartbeat_interval_s=0.01)
    job = await runner.submit({"startUrl": "https://example.com"})
    await asyncio.sleep(0.05)

    await runner.close()

    cancelled = await store.get(job.job_id)
    assert cancelled.status == "failed"
    assert cancelled.error["code"] == "cancelled"


@pytest.mark.asyncio()
async def test_non_finite_percent_keeps_previous_progress(store):
    job = await store.create({})
    await store.mark_running(job.job_id, 40, "Running")
    updated = await store.mark_running(job.job_id, float("inf"), "Still running")
    assert updated.progress == {"percent": 40, "message": "Still running"}
