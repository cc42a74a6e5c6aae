"""Tests for the in-memory job store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.models.schemas import Job, JobStatus
from app.storage.repository import InMemoryJobStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(logger, clock):
    return InMemoryJobStore(logger, max_jobs=3, ttl_seconds=60, clock=clock)


def _job(job_id, clock, **kwargs):
    return Job(job_id=job_id, created_at=clock.now, updated_at=clock.now, **kwargs)


def test_put_and_get_return_copies(store, clock):
    store.put(_job("a", clock))
    job = store.get("a")
    job.meta["mutated"] = True
    assert "mutated" not in store.get("a").meta
    assert store.get("missing") is None


def test_max_count_evicts_oldest(store, clock):
    for job_id in ("a", "b", "c", "d"):
        store.put(_job(job_id, clock))
        clock.advance(1)

    assert store.get("a") is None
    assert [j.job_id for j in store.list_jobs()] == ["d", "c", "b"]


def test_sweep_removes_expired_jobs(store, clock):
    store.put(_job("old", clock))
    clock.advance(30)
    store.put(_job("new", clock))
    clock.advance(45)

    assert store.list_expired() == ["old"]
    assert store.sweep() == 1
    assert store.get("old") is None
    assert store.get("new") is not None


def test_update_touches_updated_at(store, clock):
    store.put(_job("a", clock))
    clock.advance(50)
    store.update("a", {"progress_pct": 10})
    clock.advance(50)
    assert store.sweep() == 0


def test_update_merges_meta_and_keeps_progress_monotonic(store, clock):
    store.put(_job("a", clock, meta={"title": "T"}))

    store.update("a", {"progress_pct": 40, "meta": {"rewrites": 1}})
    job = store.update("a", {"progress_pct": 20, "meta": {"drift": 0.4}})

    assert job.progress_pct == 40
    assert job.meta == {"title": "T", "rewrites": 1, "drift": 0.4}


def test_terminal_jobs_only_accept_meta(store, clock):
    store.put(_job("a", clock))
    store.update("a", {"status": JobStatus.FAILED, "error": "boom"})

    job = store.update("a", {"status": JobStatus.COMPLETED, "progress_pct": 100, "meta": {"note": "late"}})

    assert job.status == JobStatus.FAILED
    assert job.error == "boom"
    assert job.progress_pct == 0
    assert job.meta == {"note": "late"}


def test_update_missing_job_returns_none(store):
    assert store.update("nope", {"progress_pct": 5}) is None


def test_concurrent_meta_patches_are_all_kept(logger, clock):
    store = InMemoryJobStore(logger, clock=clock)
    store.put(_job("a", clock))

    threads = [
        threading.Thread(target=store.update, args=("a", {"meta": {f"k{i}": i}, "progress_pct": i}))
        for i in range(20)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    job = store.get("a")
    assert len(job.meta) == 20
    assert job.progress_pct == 19
