"""Tests for the in-process job queue."""

import pytest

from convoy.exceptions import ChainAbortedError, ProcessFailureError, ValidationFailureError
from convoy.jobs import Job, JobQueue
from convoy.jobs.queue import describe_exception
from convoy.persistence import JobKind, ResourceDependencies


class ScriptedJob(Job):
    """Job that raises the queued errors in order, then succeeds."""

    kind = JobKind.WARM_HOT_CACHE
    tries = 3
    backoff = [60, 120]

    def __init__(self, errors=None, log=None, name="job"):
        self.errors = list(errors or [])
        self.log = log if log is not None else []
        self.name = name
        self.failed_with = None

    def payload(self):
        return {"name": self.name}

    def dependencies(self):
        return ResourceDependencies(repository=self.name)

    async def handle(self, ctx):
        self.log.append(self.name)
        if self.errors:
            raise self.errors.pop(0)

    async def failed(self, ctx, exc):
        self.failed_with = exc


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def queue(ctx, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return JobQueue(ctx, sleep=fake_sleep)


class TestRun:
    """Tests for JobQueue.run."""

    @pytest.mark.asyncio
    async def test_success(self, ctx, queue):
        """Test a job that succeeds first time."""
        job = ScriptedJob()
        assert await queue.run(job) is True
        assert job.log == ["job"]
        assert ctx.repository.list_failed_jobs() == []

    @pytest.mark.asyncio
    async def test_retries_with_backoff(self, queue, sleeps):
        """Test retriable errors are retried after the scheduled delays."""
        job = ScriptedJob(errors=[ProcessFailureError("boom"), ProcessFailureError("boom")])

        assert await queue.run(job) is True
        assert len(job.log) == 3
        assert sleeps == [60, 120]

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_dead_lettered(self, ctx, queue, sleeps):
        """Test a job failing every attempt is recorded with its payload."""
        errors = [ProcessFailureError("boom") for _ in range(3)]
        job = ScriptedJob(errors=errors)

        assert await queue.run(job) is False
        assert sleeps == [60, 120]
        assert job.failed_with is errors[-1]

        failed = ctx.repository.list_failed_jobs()
        assert len(failed) == 1
        assert failed[0].kind == JobKind.WARM_HOT_CACHE
        assert failed[0].display_name == "ScriptedJob"
        assert failed[0].payload == {"name": "job"}
        assert failed[0].dependencies.repository == "job"
        assert failed[0].exception.startswith("ProcessFailureError: boom")

    @pytest.mark.asyncio
    async def test_non_retriable_skips_remaining_tries(self, ctx, queue, sleeps):
        """Test a non-retriable error fails immediately."""
        job = ScriptedJob(errors=[ValidationFailureError("bad input")])

        assert await queue.run(job) is False
        assert job.log == ["job"]
        assert sleeps == []
        assert len(ctx.repository.list_failed_jobs()) == 1

    @pytest.mark.asyncio
    async def test_chain_abort_is_not_recorded(self, ctx, queue):
        """Test an aborted job is neither retried nor dead-lettered."""
        job = ScriptedJob(errors=[ChainAbortedError("repository gone", conversation_id=1)])

        assert await queue.run(job) is False
        assert job.log == ["job"]
        assert job.failed_with is None
        assert ctx.repository.list_failed_jobs() == []

    @pytest.mark.asyncio
    async def test_failing_failure_handler_still_records(self, ctx, queue):
        """Test an exception from failed() does not lose the dead letter."""
        job = ScriptedJob(errors=[ValidationFailureError("bad")])

        async def broken_failed(ctx, exc):
            raise RuntimeError("handler broke")

        job.failed = broken_failed
        assert await queue.run(job) is False
        assert len(ctx.repository.list_failed_jobs()) == 1


class TestChain:
    """Tests for sequential chains."""

    @pytest.mark.asyncio
    async def test_runs_in_order(self, queue):
        """Test every job runs in order."""
        log = []
        jobs = [ScriptedJob(log=log, name="first"), ScriptedJob(log=log, name="second")]

        assert await queue.chain(jobs) is True
        assert log == ["first", "second"]

    @pytest.mark.asyncio
    async def test_stops_at_failure(self, queue):
        """Test later jobs never run after one fails."""
        log = []
        jobs = [
            ScriptedJob(errors=[ChainAbortedError("stop")], log=log, name="first"),
            ScriptedJob(log=log, name="second"),
        ]

        assert await queue.chain(jobs) is False
        assert log == ["first"]


class TestDispatch:
    """Tests for background dispatch."""

    @pytest.mark.asyncio
    async def test_drain_waits_for_dispatched(self, queue):
        """Test drain waits for jobs and chains."""
        log = []
        queue.dispatch(ScriptedJob(log=log, name="solo"))
        queue.dispatch_chain([ScriptedJob(log=log, name="a"), ScriptedJob(log=log, name="b")])
        assert queue.pending == 2

        await queue.drain()

        assert sorted(log) == ["a", "b", "solo"]
        assert queue.pending == 0


class TestDescribeException:
    """Tests for describe_exception."""

    def test_summary_and_traceback(self):
        try:
            raise ValueError("bad value")
        except ValueError as e:
            text = describe_exception(e)
        assert text.splitlines()[0] == "ValueError: bad value"
        assert "Traceback" in text
