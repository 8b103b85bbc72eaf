"""
Job Store

In-memory state machine for submitted code:

    pending --completed--> completed
    pending --raised-----> error
    pending --timer------> timeout

Every terminal state is final. take() is the only read path and removes
the job whatever its state, so a result is delivered at most once.
"""

import asyncio
import logging
import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional

from shared.constants import JOB_MAX_AGE_MS, JOB_SWEEP_INTERVAL_S, JOB_TIMEOUT_MS, JobStatus, TargetContext

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Job:
    id: str
    code: str
    process: TargetContext
    status: JobStatus = JobStatus.PENDING
    created: int = 0
    completed: Optional[int] = None
    result: Any = None
    error: Optional[str] = None
    stack: Optional[str] = None
    window_id: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != JobStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.id,
            "status": self.status.value,
            "process": self.process.value,
            "created": self.created,
            "completed": self.completed,
            "result": self.result,
            "error": self.error,
            "stack": self.stack,
            "windowId": self.window_id,
        }


class JobStore:
    """Jobs owned by one ControlAgent instance"""

    def __init__(
        self,
        timeout_ms: int = JOB_TIMEOUT_MS,
        max_age_ms: int = JOB_MAX_AGE_MS,
        max_jobs: int = 1000,
    ):
        self.timeout_ms = timeout_ms
        self.max_age_ms = max_age_ms
        self.max_jobs = max_jobs
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def create(self, code: str, process: TargetContext) -> Job:
        """Insert a pending job and arm its timeout.

        Must be called from inside the running event loop.
        """
        while len(self._jobs) >= self.max_jobs:
            oldest = next(iter(self._jobs))
            logger.warning(f"Job store full, dropping oldest job {oldest}")
            self._drop(oldest)

        job_id = secrets.token_hex(8)
        while job_id in self._jobs:
            job_id = secrets.token_hex(8)

        job = Job(id=job_id, code=code, process=TargetContext(process), created=now_ms())
        self._jobs[job_id] = job
        loop = asyncio.get_running_loop()
        self._timers[job_id] = loop.call_later(self.timeout_ms / 1000, self.expire, job_id)
        logger.debug(f"Job {job_id} created for {job.process.value}")
        return job

    def expire(self, job_id: str) -> None:
        """Mark a still-pending job as timed out"""
        if self._finish(job_id, JobStatus.TIMED_OUT, error="Job execution timed out"):
            logger.warning(f"Job {job_id} timed out after {self.timeout_ms}ms")

    def _finish(self, job_id: str, status: JobStatus, **fields: Any) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return False
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        for key, value in fields.items():
            setattr(job, key, value)
        job.completed = now_ms()
        job.status = status
        return True

    def complete(self, job_id: str, result: Any, window_id: Optional[int] = None) -> bool:
        """Record a successful result. Returns False if the job is gone or already terminal."""
        return self._finish(job_id, JobStatus.COMPLETED, result=result, window_id=window_id)

    def fail(self, job_id: str, error: str, stack: Optional[str] = None) -> bool:
        return self._finish(job_id, JobStatus.ERRORED, error=error, stack=stack)

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def take(self, job_id: str) -> Optional[Job]:
        """Remove and return a job in whatever state it is in"""
        if job_id not in self._jobs:
            return None
        job = self._jobs[job_id]
        self._drop(job_id)
        return job

    def _drop(self, job_id: str) -> None:
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        self._jobs.pop(job_id, None)

    def sweep(self, now: Optional[int] = None) -> int:
        """Delete jobs older than max_age_ms regardless of status"""
        cutoff = (now if now is not None else now_ms()) - self.max_age_ms
        stale = [job_id for job_id, job in self._jobs.items() if job.created < cutoff]
        for job_id in stale:
            self._drop(job_id)
        if stale:
            logger.info(f"Swept {len(stale)} stale jobs")
        return len(stale)

    def clear(self) -> None:
        for job_id in list(self._jobs):
            self._drop(job_id)

    # ==================== Background sweep ====================

    def start(self, interval_s: float = JOB_SWEEP_INTERVAL_S) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval_s))

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self.clear()

    async def _sweep_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            self.sweep()
