"""
In-process job queue.

Offers exactly what the conversation pipeline needs from a broker:
retries with a backoff schedule, sequential chains that stop at the first
failure, background dispatch, and a dead-letter table for jobs that gave up.
"""

import asyncio
import logging
import time
import traceback
import uuid
from collections.abc import Awaitable, Callable

from convoy.exceptions import ChainAbortedError
from convoy.jobs.base import Job, JobContext
from convoy.logging import JobLogEntry, job_logger, now_iso

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def describe_exception(exc: BaseException) -> str:
    """Summary line followed by the traceback, as stored for failed jobs."""
    summary = f"{type(exc).__name__}: {exc}"
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return f"{summary}\n{trace}"


class JobQueue:
    """
    Runs jobs against a shared context.

    Args:
        ctx: Collaborators handed to every job
        sleep: Awaitable used for backoff waits (replaceable in tests)
    """

    def __init__(self, ctx: JobContext, sleep: SleepFn = asyncio.sleep):
        self.ctx = ctx
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    def _log(self, job: Job, job_id: str, event: str, attempt: int, start: float, **fields) -> None:
        deps = job.dependencies()
        entry = JobLogEntry(
            timestamp=now_iso(),
            job_id=job_id,
            kind=job.kind.value,
            event=event,
            attempt=attempt,
            conversation_id=deps.conversation_id,
            repository=deps.repository,
            duration_ms=int((time.monotonic() - start) * 1000),
            **fields,
        )
        if event in ("failed", "retrying"):
            job_logger.warning(entry.to_json())
        else:
            job_logger.info(entry.to_json())

    async def run(self, job: Job) -> bool:
        """
        Run a job to completion, retrying per its schedule.

        Returns:
            True if the job succeeded, False if it was aborted or gave up
        """
        job_id = str(uuid.uuid4())

        for attempt in range(1, job.tries + 1):
            start = time.monotonic()
            self._log(job, job_id, "started", attempt, start)

            try:
                await job.handle(self.ctx)
            except ChainAbortedError as e:
                logger.info(f"{job.display_name} stopped its chain: {e.message}")
                self._log(job, job_id, "aborted", attempt, start, error=e.message)
                return False
            except Exception as e:
                retriable = getattr(e, "retriable", True)
                if retriable and attempt < job.tries:
                    delay = job.backoff_for(attempt)
                    logger.warning(
                        f"{job.display_name} failed on attempt {attempt}/{job.tries}, "
                        f"retrying in {delay}s: {e}"
                    )
                    self._log(
                        job, job_id, "retrying", attempt, start, backoff_seconds=delay, error=str(e)
                    )
                    await self._sleep(delay)
                    continue

                logger.error(f"{job.display_name} failed after {attempt} attempt(s): {e}")
                self._log(job, job_id, "failed", attempt, start, error=str(e))
                await self._give_up(job, e)
                return False

            self._log(job, job_id, "succeeded", attempt, start)
            return True

        return False

    async def _give_up(self, job: Job, exc: Exception) -> None:
        try:
            await job.failed(self.ctx, exc)
        except Exception as e:
            logger.exception(f"Failure handler of {job.display_name} raised: {e}")

        self.ctx.repository.record_failed_job(
            kind=job.kind,
            display_name=job.display_name,
            payload=job.payload(),
            dependencies=job.dependencies(),
            exception=describe_exception(exc),
        )

    async def chain(self, jobs: list[Job]) -> bool:
        """Run jobs in order, stopping at the first one that does not succeed."""
        for job in jobs:
            if not await self.run(job):
                return False
        return True

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def dispatch(self, job: Job) -> asyncio.Task:
        """Run a job in the background."""
        return self._track(self.run(job))

    def dispatch_chain(self, jobs: list[Job]) -> asyncio.Task:
        """Run a chain in the background."""
        return self._track(self.chain(jobs))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every dispatched job and chain has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
