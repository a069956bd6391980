"""Named, concurrency-limited in-process work queues with retry."""

import asyncio
import inspect
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from media_pipeline.models.queue import QueueJob, QueueJobStatus, QueueMetrics
from media_pipeline.utils.errors import QueueError

logger = logging.getLogger(__name__)

Handler = Callable[[QueueJob], Awaitable[Any]]
Listener = Callable[..., Any]

QUEUE_EVENTS = ("added", "started", "completed", "retrying", "failed")


@dataclass
class _QueueState:
    """Everything one named queue owns."""

    name: str
    concurrency: int
    jobs: Dict[str, QueueJob] = field(default_factory=dict)
    pending: Deque[str] = field(default_factory=deque)
    finished: Deque[str] = field(default_factory=deque)
    active: int = 0
    idle: asyncio.Event = field(default_factory=asyncio.Event)


class WorkQueue:
    """
    In-process work queues for pipeline stage attempts.

    Each named queue has its own concurrency ceiling. Pending attempts are
    dispatched FIFO whenever a job is enqueued, a handler is registered, or
    a running attempt finishes, so queues drain without a poller. A failed
    attempt goes to the back of the pending line while attempts remain and
    is marked failed once they are exhausted; what that means for the job
    is left to ``failed`` listeners.

    Terminal attempts are kept for inspection, up to ``retain_finished``
    per queue, oldest discarded first.
    """

    def __init__(self, default_concurrency: int = 1, retain_finished: int = 100) -> None:
        self.default_concurrency = default_concurrency
        self.retain_finished = retain_finished
        self._queues: Dict[str, _QueueState] = {}
        self._handlers: Dict[str, Handler] = {}
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in QUEUE_EVENTS}
        self._tasks: set[asyncio.Task] = set()
        self._closing = False

    def configure(self, queue_name: str, concurrency: int) -> None:
        """Set a queue's concurrency ceiling."""
        if concurrency < 1:
            raise QueueError(f"Concurrency for {queue_name} must be at least 1")
        self._state(queue_name).concurrency = concurrency

    def register_handler(self, queue_name: str, handler: Handler) -> None:
        self._handlers[queue_name] = handler
        logger.info(f"Handler registered for queue: {queue_name}")
        if _has_running_loop():
            self._dispatch(queue_name)

    def subscribe(self, event: str, listener: Listener) -> None:
        """
        Register an observer for a queue lifecycle event.

        Listeners receive the QueueJob, plus the exception for ``retrying``
        and ``failed``. They may be plain functions or coroutines. Listener
        errors are logged and never affect the queue.
        """
        if event not in self._listeners:
            raise QueueError(f"Unknown queue event: {event}")
        self._listeners[event].append(listener)

    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        attempts: int = 1,
        priority: int = 0,
    ) -> QueueJob:
        """
        Add an execution attempt to a queue.

        ``priority`` is recorded on the attempt but dispatch stays FIFO.
        """
        if attempts < 1:
            raise QueueError("attempts must be at least 1")

        state = self._state(queue_name)
        job = QueueJob(
            id=f"{queue_name}-{uuid.uuid4().hex}",
            queue_name=queue_name,
            payload=payload,
            max_attempts=attempts,
            priority=priority,
        )
        state.jobs[job.id] = job
        state.pending.append(job.id)
        state.idle.clear()
        logger.debug(f"Job added to queue {queue_name}: {job.id}")

        await self._emit("added", job)
        self._dispatch(queue_name)
        return job

    def get_job(self, queue_job_id: str) -> Optional[QueueJob]:
        for state in self._queues.values():
            job = state.jobs.get(queue_job_id)
            if job is not None:
                return job
        return None

    def remove(self, queue_job_id: str) -> bool:
        """Forget an attempt. Attempts that are running cannot be removed."""
        for state in self._queues.values():
            job = state.jobs.get(queue_job_id)
            if job is None:
                continue
            if job.status == QueueJobStatus.PROCESSING:
                logger.warning(f"Cannot remove running job {queue_job_id}")
                return False
            del state.jobs[queue_job_id]
            if queue_job_id in state.pending:
                state.pending.remove(queue_job_id)
            if queue_job_id in state.finished:
                state.finished.remove(queue_job_id)
            self._mark_idle(state)
            logger.info(f"Job removed: {queue_job_id}")
            return True
        return False

    def find(
        self, predicate: Callable[[QueueJob], bool], include_finished: bool = False
    ) -> List[QueueJob]:
        """Attempts matching a predicate, across all queues."""
        return [
            job
            for state in self._queues.values()
            for job in state.jobs.values()
            if (include_finished or not job.is_terminal) and predicate(job)
        ]

    def metrics(self, queue_name: str) -> Optional[QueueMetrics]:
        state = self._queues.get(queue_name)
        if state is None:
            return None
        jobs = state.jobs.values()
        return QueueMetrics(
            pending=len(state.pending),
            active=state.active,
            completed=sum(1 for j in jobs if j.status == QueueJobStatus.COMPLETED),
            failed=sum(1 for j in jobs if j.status == QueueJobStatus.FAILED),
            total=len(state.jobs),
        )

    @property
    def queue_names(self) -> List[str]:
        return list(self._queues)

    async def join(self, queue_name: Optional[str] = None) -> None:
        """Wait until a queue (or every queue) has nothing pending or running."""
        while True:
            names = [queue_name] if queue_name else list(self._queues)
            busy = [
                self._queues[name]
                for name in names
                if name in self._queues and not self._is_idle(self._queues[name])
            ]
            if not busy:
                return
            for state in busy:
                state.idle.clear()
            await asyncio.gather(*(state.idle.wait() for state in busy))

    async def shutdown(self) -> None:
        """Cancel running attempts and stop dispatching."""
        self._closing = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _state(self, queue_name: str) -> _QueueState:
        state = self._queues.get(queue_name)
        if state is None:
            state = _QueueState(name=queue_name, concurrency=self.default_concurrency)
            state.idle.set()
            self._queues[queue_name] = state
        return state

    def _is_idle(self, state: _QueueState) -> bool:
        return state.active == 0 and not (state.pending and state.name in self._handlers)

    def _mark_idle(self, state: _QueueState) -> None:
        if self._is_idle(state):
            state.idle.set()

    def _dispatch(self, queue_name: str) -> None:
        """Start pending attempts up to the queue's concurrency ceiling."""
        state = self._queues.get(queue_name)
        handler = self._handlers.get(queue_name)
        if state is None or handler is None:
            return

        while state.pending and state.active < state.concurrency:
            job = state.jobs[state.pending.popleft()]
            job.status = QueueJobStatus.PROCESSING
            job.attempts += 1
            job.started_at = datetime.utcnow()
            state.active += 1

            task = asyncio.get_running_loop().create_task(self._run(state, job, handler))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, state: _QueueState, job: QueueJob, handler: Handler) -> None:
        try:
            await self._emit("started", job)
            try:
                job.result = await handler(job)
            except asyncio.CancelledError:
                job.status = QueueJobStatus.FAILED
                job.error = "cancelled"
                job.failed_at = datetime.utcnow()
                raise
            except Exception as e:
                job.error = f"{type(e).__name__}: {e}"
                if job.attempts < job.max_attempts:
                    job.status = QueueJobStatus.PENDING
                    state.pending.append(job.id)
                    await self._emit("retrying", job, e)
                else:
                    job.status = QueueJobStatus.FAILED
                    job.failed_at = datetime.utcnow()
                    self._finish(state, job)
                    await self._emit("failed", job, e)
            else:
                job.status = QueueJobStatus.COMPLETED
                job.completed_at = datetime.utcnow()
                self._finish(state, job)
                await self._emit("completed", job)
        finally:
            state.active -= 1
            if not self._closing:
                self._dispatch(job.queue_name)
            self._mark_idle(state)

    def _finish(self, state: _QueueState, job: QueueJob) -> None:
        state.finished.append(job.id)
        while len(state.finished) > self.retain_finished:
            state.jobs.pop(state.finished.popleft(), None)

    async def _emit(self, event: str, job: QueueJob, *args: Any) -> None:
        for listener in self._listeners[event]:
            try:
                result = listener(job, *args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Queue listener for {event} failed on {job.id}: {e}")


class QueueEventLogger:
    """Logs queue lifecycle events."""

    def attach(self, queue: WorkQueue) -> None:
        queue.subscribe("added", self.on_added)
        queue.subscribe("started", self.on_started)
        queue.subscribe("completed", self.on_completed)
        queue.subscribe("retrying", self.on_retrying)
        queue.subscribe("failed", self.on_failed)

    def on_added(self, job: QueueJob) -> None:
        logger.debug(f"Queue event: job added {job.id}")

    def on_started(self, job: QueueJob) -> None:
        logger.info(f"Processing job {job.id} (attempt {job.attempts}/{job.max_attempts})")

    def on_completed(self, job: QueueJob) -> None:
        logger.info(f"Job completed: {job.id}")

    def on_retrying(self, job: QueueJob, error: Exception) -> None:
        logger.warning(f"Retrying job {job.id} ({job.attempts}/{job.max_attempts}): {error}")

    def on_failed(self, job: QueueJob, error: Exception) -> None:
        logger.error(f"Job permanently failed: {job.id}: {error}")


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def create_work_queue() -> WorkQueue:
    """Create a WorkQueue with event logging attached."""
    queue = WorkQueue()
    QueueEventLogger().attach(queue)
    return queue
