"""Property-based tests for the work queue.

Covers: concurrency bound, FIFO dispatch, retry bound, listeners.
"""

import asyncio
import logging
from typing import Any, Dict, List

import pytest
from hypothesis import given, settings, strategies as st

from media_pipeline.models.queue import QueueJob, QueueJobStatus
from media_pipeline.services.work_queue import QueueEventLogger, WorkQueue, create_work_queue
from media_pipeline.utils.errors import QueueError


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestProperty3ConcurrencyBound:
    """Property 3: Concurrency Bound.

    *For any* number of jobs and concurrency limit, the number of processing
    attempts in a queue SHALL never exceed the limit.
    """

    @settings(max_examples=50, deadline=None)
    @given(
        limit=st.integers(min_value=1, max_value=4),
        yields=st.lists(st.integers(min_value=0, max_value=5), min_size=1, max_size=12),
    )
    def test_processing_never_exceeds_limit(self, limit: int, yields: List[int]) -> None:
        """Active and processing counts stay within the queue limit."""

        async def run_test() -> None:
            queue = WorkQueue()
            queue.configure("work", limit)
            running = 0
            peak = 0

            async def handler(job: QueueJob) -> None:
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                processing = queue.find(lambda j: j.status == QueueJobStatus.PROCESSING)
                assert len(processing) <= limit
                assert queue.metrics("work").active <= limit
                for _ in range(job.payload["yields"]):
                    await asyncio.sleep(0)
                running -= 1

            queue.register_handler("work", handler)
            for n in yields:
                await queue.enqueue("work", {"yields": n})
            await queue.join()

            assert peak <= limit
            metrics = queue.metrics("work")
            assert metrics.completed == len(yields)
            assert metrics.active == 0
            assert metrics.pending == 0

        asyncio.run(run_test())


class TestScenarioDQueueLimit:
    """Three jobs on a queue limited to two: the third waits for a slot."""

    @pytest.mark.asyncio
    async def test_third_job_starts_after_a_slot_frees(self) -> None:
        queue = WorkQueue()
        queue.configure("transcode", 2)
        releases = {n: asyncio.Event() for n in range(3)}
        started: List[int] = []

        async def handler(job: QueueJob) -> None:
            started.append(job.payload["n"])
            await releases[job.payload["n"]].wait()

        queue.register_handler("transcode", handler)
        for n in range(3):
            await queue.enqueue("transcode", {"n": n})
        await settle()

        assert started == [0, 1]
        assert queue.metrics("transcode").active == 2
        assert queue.metrics("transcode").pending == 1

        releases[1].set()
        await settle()

        assert started == [0, 1, 2]
        assert queue.metrics("transcode").active == 2

        releases[0].set()
        releases[2].set()
        await queue.join()
        assert queue.metrics("transcode").completed == 3

    @pytest.mark.asyncio
    async def test_dispatch_is_fifo(self) -> None:
        queue = WorkQueue()
        order: List[int] = []

        async def handler(job: QueueJob) -> None:
            order.append(job.payload["n"])

        for n in range(5):
            await queue.enqueue("work", {"n": n})
        queue.register_handler("work", handler)
        await queue.join()

        assert order == [0, 1, 2, 3, 4]


class TestProperty4RetryBound:
    """Property 4: Retry Bound.

    *For any* max_attempts, attempts SHALL never exceed it, and a job that
    fails max_attempts times SHALL end failed.
    """

    @settings(max_examples=50, deadline=None)
    @given(
        max_attempts=st.integers(min_value=1, max_value=5),
        failures=st.integers(min_value=0, max_value=7),
    )
    def test_attempts_never_exceed_max(self, max_attempts: int, failures: int) -> None:
        """A job retries until success or until attempts are exhausted."""

        async def run_test() -> None:
            queue = WorkQueue()
            calls = 0
            events: Dict[str, int] = {"retrying": 0, "failed": 0, "completed": 0}

            async def handler(job: QueueJob) -> str:
                nonlocal calls
                calls += 1
                assert job.attempts <= job.max_attempts
                if calls <= failures:
                    raise RuntimeError(f"boom {calls}")
                return "ok"

            for event in events:
                queue.subscribe(event, lambda job, *args, e=event: events.__setitem__(e, events[e] + 1))
            queue.register_handler("work", handler)
            job = await queue.enqueue("work", {}, attempts=max_attempts)
            await queue.join()

            assert job.attempts <= max_attempts
            if failures >= max_attempts:
                assert job.status == QueueJobStatus.FAILED
                assert job.attempts == max_attempts
                assert events == {"retrying": max_attempts - 1, "failed": 1, "completed": 0}
                assert "boom" in job.error
            else:
                assert job.status == QueueJobStatus.COMPLETED
                assert job.attempts == failures + 1
                assert job.result == "ok"
                assert events == {"retrying": failures, "failed": 0, "completed": 1}

        asyncio.run(run_test())

    @pytest.mark.asyncio
    async def test_retry_goes_to_back_of_line(self) -> None:
        queue = WorkQueue()
        order: List[str] = []
        failed_once = set()

        async def handler(job: QueueJob) -> None:
            name = job.payload["name"]
            order.append(name)
            if name == "a" and name not in failed_once:
                failed_once.add(name)
                raise RuntimeError("transient")

        await queue.enqueue("work", {"name": "a"}, attempts=2)
        await queue.enqueue("work", {"name": "b"})
        queue.register_handler("work", handler)
        await queue.join()

        assert order == ["a", "b", "a"]

    @pytest.mark.asyncio
    async def test_attempts_must_be_positive(self) -> None:
        queue = WorkQueue()
        with pytest.raises(QueueError):
            await queue.enqueue("work", {}, attempts=0)
        with pytest.raises(QueueError):
            queue.configure("work", 0)


class TestQueueBookkeeping:
    """get_job, remove, metrics and listeners."""

    @pytest.mark.asyncio
    async def test_remove_pending_but_not_running(self) -> None:
        queue = WorkQueue()
        gate = asyncio.Event()

        async def handler(job: QueueJob) -> None:
            await gate.wait()

        queue.register_handler("work", handler)
        running = await queue.enqueue("work", {"n": 1})
        waiting = await queue.enqueue("work", {"n": 2})
        await settle()

        assert queue.remove(running.id) is False
        assert queue.remove(waiting.id) is True
        assert queue.get_job(waiting.id) is None
        assert queue.get_job(running.id) is running
        assert queue.remove("nope") is False

        gate.set()
        await queue.join()
        assert queue.metrics("work").total == 1

    @pytest.mark.asyncio
    async def test_find_skips_finished_by_default(self) -> None:
        queue = WorkQueue()

        async def handler(job: QueueJob) -> None:
            return None

        queue.register_handler("work", handler)
        job = await queue.enqueue("work", {"job_id": "x"})
        await queue.join()

        assert queue.find(lambda j: j.payload.get("job_id") == "x") == []
        assert queue.find(lambda j: j.payload.get("job_id") == "x", include_finished=True) == [job]

    @pytest.mark.asyncio
    async def test_finished_jobs_are_trimmed(self) -> None:
        queue = WorkQueue(retain_finished=2)

        async def handler(job: QueueJob) -> None:
            return None

        queue.register_handler("work", handler)
        jobs = [await queue.enqueue("work", {"n": n}) for n in range(4)]
        await queue.join()

        assert queue.get_job(jobs[0].id) is None
        assert queue.get_job(jobs[3].id) is not None
        assert queue.metrics("work").total == 2

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_queue(self) -> None:
        queue = WorkQueue()
        seen: List[str] = []

        def broken(job: QueueJob) -> None:
            raise ValueError("listener bug")

        async def recording(job: QueueJob) -> None:
            seen.append(job.id)

        async def handler(job: QueueJob) -> None:
            return None

        queue.subscribe("completed", broken)
        queue.subscribe("completed", recording)
        queue.register_handler("work", handler)
        job = await queue.enqueue("work", {})
        await queue.join()

        assert job.status == QueueJobStatus.COMPLETED
        assert seen == [job.id]

    def test_unknown_event_rejected(self) -> None:
        with pytest.raises(QueueError):
            WorkQueue().subscribe("exploded", lambda job: None)

    @pytest.mark.asyncio
    async def test_event_logger_reports_failures(self, caplog: pytest.LogCaptureFixture) -> None:
        queue = create_work_queue()

        async def handler(job: QueueJob) -> None:
            raise RuntimeError("disk full")

        queue.register_handler("work", handler)
        with caplog.at_level(logging.INFO, logger="media_pipeline.services.work_queue"):
            await queue.enqueue("work", {}, attempts=2)
            await queue.join()

        assert "Retrying job" in caplog.text
        assert "permanently failed" in caplog.text

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running(self) -> None:
        queue = WorkQueue()
        gate = asyncio.Event()

        async def handler(job: QueueJob) -> Any:
            await gate.wait()

        queue.register_handler("work", handler)
        job = await queue.enqueue("work", {})
        await settle()
        await queue.shutdown()

        assert job.status == QueueJobStatus.FAILED
        assert queue.metrics("work").active == 0

    def test_event_logger_attaches_all_events(self) -> None:
        queue = WorkQueue()
        QueueEventLogger().attach(queue)
        assert all(len(listeners) == 1 for listeners in queue._listeners.values())
