"""
Tests for the job store state machine
"""

import asyncio

import pytest

from core.job_store import JobStore
from shared.constants import JobStatus, TargetContext


class TestJobLifecycle:
    """pending -> terminal, read once"""

    @pytest.mark.asyncio
    async def test_complete_then_take_once(self):
        store = JobStore()
        job = store.create("return 1", TargetContext.PRIMARY)
        assert job.status == JobStatus.PENDING
        assert len(job.id) == 16

        assert store.complete(job.id, 1) is True
        taken = store.take(job.id)
        assert taken.status == JobStatus.COMPLETED
        assert taken.result == 1
        assert taken.completed is not None
        assert store.take(job.id) is None
        await store.stop()

    @pytest.mark.asyncio
    async def test_pending_read_consumes(self):
        store = JobStore()
        job = store.create("return 1", TargetContext.PRIMARY)
        assert store.take(job.id).status == JobStatus.PENDING
        assert job.id not in store
        assert store.complete(job.id, 1) is False
        await store.stop()

    @pytest.mark.asyncio
    async def test_fail_records_stack(self):
        store = JobStore()
        job = store.create("raise", TargetContext.SURFACE)
        assert store.fail(job.id, "boom", "Traceback ...") is True
        data = store.take(job.id).to_dict()
        assert data["status"] == "error"
        assert data["error"] == "boom"
        assert data["stack"] == "Traceback ..."
        assert data["process"] == "renderer"
        await store.stop()

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self):
        store = JobStore()
        job = store.create("x", TargetContext.PRIMARY)
        store.complete(job.id, "first")
        assert store.fail(job.id, "late") is False
        assert store.get(job.id).result == "first"
        await store.stop()


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_timeout_beats_late_result(self):
        store = JobStore(timeout_ms=50)
        job = store.create("while True: pass", TargetContext.PRIMARY)
        await asyncio.sleep(0.15)
        assert store.get(job.id).status == JobStatus.TIMED_OUT
        assert store.get(job.id).error == "Job execution timed out"
        assert store.complete(job.id, "too late") is False
        assert store.take(job.id).status == JobStatus.TIMED_OUT
        await store.stop()

    @pytest.mark.asyncio
    async def test_completed_job_not_timed_out(self):
        store = JobStore(timeout_ms=50)
        job = store.create("x", TargetContext.PRIMARY)
        store.complete(job.id, 1)
        await asyncio.sleep(0.1)
        assert store.get(job.id).status == JobStatus.COMPLETED
        await store.stop()

    @pytest.mark.asyncio
    async def test_expire_early_disarms_timer(self):
        store = JobStore(timeout_ms=50)
        job = store.create("x", TargetContext.PRIMARY)
        store.expire(job.id)
        assert store.get(job.id).status == JobStatus.TIMED_OUT
        assert store._timers == {}
        await store.stop()


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_sweep_removes_old_jobs(self):
        store = JobStore(max_age_ms=1000)
        job = store.create("x", TargetContext.PRIMARY)
        assert store.sweep(now=job.created + 500) == 0
        assert store.sweep(now=job.created + 1001) == 1
        assert len(store) == 0
        await store.stop()

    @pytest.mark.asyncio
    async def test_capacity_drops_oldest(self):
        store = JobStore(max_jobs=2)
        first = store.create("1", TargetContext.PRIMARY)
        store.create("2", TargetContext.PRIMARY)
        store.create("3", TargetContext.PRIMARY)
        assert len(store) == 2
        assert first.id not in store
        await store.stop()
