"""
FIFO job scheduling with one running job per queue.

Upload jobs and Gmail jobs live in independent queues: at most one job from a
queue runs at a time, but the two queues drain concurrently. A job never
starts before every job ahead of it in its queue has reached a terminal state.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Deque, Dict, Optional

from kabalot.schemas import Job, JobKind, JobStatus, ProgressSnapshot
from kabalot.services.progress_bus import ProgressBus
from kabalot.services.workspace import RetentionScheduler

logger = logging.getLogger(__name__)

JobRunner = Callable[[Job], Awaitable[JobStatus]]


class JobQueue:
    """Pending jobs of one kind plus the job currently running."""

    def __init__(self, kind: JobKind) -> None:
        self.kind = kind
        self.pending: Deque[Job] = deque()
        self.running: Optional[Job] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def is_idle(self) -> bool:
        return self.running is None

    def __len__(self) -> int:
        return len(self.pending)


class JobScheduler:
    """Accept jobs, run them in submission order and report queue positions."""

    def __init__(
        self,
        runner: JobRunner,
        bus: ProgressBus,
        retention: RetentionScheduler,
    ) -> None:
        self._runner = runner
        self._bus = bus
        self._retention = retention
        self._queues: Dict[JobKind, JobQueue] = {kind: JobQueue(kind) for kind in JobKind}
        self._jobs: Dict[str, Job] = {}

    def queue(self, kind: JobKind) -> JobQueue:
        return self._queues[kind]

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def active_job(self, kind: JobKind) -> Optional[Job]:
        return self._queues[kind].running

    def submit(self, job: Job) -> int:
        """Enqueue a job; returns 0 when it starts now, else its queue position."""
        if job.job_id in self._jobs:
            raise ValueError(f"Job {job.job_id} was already submitted.")
        self._jobs[job.job_id] = job
        self._bus.open(job.job_id)
        queue = self._queues[job.kind]

        if queue.is_idle:
            self._start(queue, job)
            return 0

        queue.pending.append(job)
        position = len(queue.pending)
        logger.info(
            "Queued %s job at position %d", job.kind.value, position,
            extra={"job_id": job.job_id},
        )
        self._bus.publish(
            ProgressSnapshot(
                job_id=job.job_id,
                state=JobStatus.QUEUED,
                status=f"Your task is in a queue at position {position}. Processing will start soon.",
                queue_position=position,
            )
        )
        return position

    def queue_position(self, job_id: str) -> Optional[int]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        queue = self._queues[job.kind]
        if queue.running is job:
            return 0
        for index, pending in enumerate(queue.pending, start=1):
            if pending is job:
                return index
        return None

    def _start(self, queue: JobQueue, job: Job) -> None:
        queue.running = job
        queue.task = asyncio.get_running_loop().create_task(
            self._drain(queue, job), name=f"{queue.kind.value}-queue"
        )

    async def _drain(self, queue: JobQueue, first: Job) -> None:
        job: Optional[Job] = first
        try:
            while job is not None:
                queue.running = job
                await self._run_one(job)
                job = queue.pending.popleft() if queue.pending else None
        finally:
            queue.running = None
            queue.task = None

    async def _run_one(self, job: Job) -> None:
        job.status = JobStatus.RUNNING
        logger.info("Starting %s job", job.kind.value, extra={"job_id": job.job_id})
        status = JobStatus.FAILED
        try:
            status = await self._runner(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Job failed", extra={"job_id": job.job_id})
            self._bus.publish(
                ProgressSnapshot(
                    job_id=job.job_id,
                    state=JobStatus.FAILED,
                    status=f"Processing Error: {exc}",
                    progress=100,
                )
            )
        finally:
            self._finish(job, status)

    def _finish(self, job: Job, status: JobStatus) -> None:
        job.status = status if status.is_terminal else JobStatus.FAILED
        job.finished_at = datetime.now(timezone.utc)
        self._bus.close(job.job_id)
        task = self._retention.schedule(job.workspace)
        task.add_done_callback(lambda _: self._jobs.pop(job.job_id, None))
        logger.info(
            "Job finished with status %s", job.status.value, extra={"job_id": job.job_id}
        )

    async def shutdown(self) -> None:
        tasks = [queue.task for queue in self._queues.values() if queue.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._retention.shutdown()


__all__ = ["JobQueue", "JobRunner", "JobScheduler"]
