from unittest.mock import AsyncMock

import pytest

from app.jobs import worker
from app.jobs.follow_up_cache_cleanup_job import FollowUpCacheCleanupJob


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert called["ok"] is True


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError):
        await worker.run_worker("missing")


def test_cache_cleanup_job_is_registered():
    assert "follow_up_cache_cleanup" in worker.JOB_REGISTRY


@pytest.mark.asyncio
async def test_cache_cleanup_job_run_once():
    store = AsyncMock()
    store.delete_expired.return_value = 4
    store.metadata_version = 2
    job = FollowUpCacheCleanupJob(store=store)

    result = await job.run_once()

    assert result["skipped"] is False
    assert result["deleted_rows"] == 4
    assert result["metadata_version"] == 2
    assert job.is_running is False


@pytest.mark.asyncio
async def test_cache_cleanup_job_skips_when_running():
    store = AsyncMock()
    job = FollowUpCacheCleanupJob(store=store)
    job.is_running = True

    result = await job.run_once()

    assert result == {"skipped": True, "reason": "already_running"}
    store.delete_expired.assert_not_awaited()
