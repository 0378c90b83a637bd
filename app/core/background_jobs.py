"""Fire-and-forget background job queue.

Refresh work (pattern synthesis, session patterns, style analysis) is
pushed here from the request path and never awaited by it. Jobs are
de-duplicated by key while pending. A failed job is written to the
dead-letter log and dropped.
"""

import asyncio
import inspect
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from app.core.logging import get_logger

logger = get_logger(__name__)
dead_letter_logger = get_logger(f"{__name__}.dead_letter")

DEFAULT_MAXSIZE = 256
DEFAULT_WORKERS = 2
DEAD_LETTER_HISTORY = 100


@dataclass
class BackgroundJob:
    key: str
    func: Callable[..., Any]
    args: tuple = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class DeadLetter:
    key: str
    error: str
    failed_at: float


class BackgroundJobQueue:
    """Bounded asyncio work queue with a small pool of worker tasks.

    Workers are bound to the event loop that first enqueues (or calls
    ``start``). Synchronous callables run in a thread.
    """

    def __init__(self, maxsize: int = DEFAULT_MAXSIZE, workers: int = DEFAULT_WORKERS):
        self.maxsize = maxsize
        self.worker_count = workers
        self._queue: asyncio.Queue | None = None
        self._workers: list[asyncio.Task] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: set[str] = set()
        self._completed_count = 0
        self._failed_count = 0
        self.dead_letters: deque[DeadLetter] = deque(maxlen=DEAD_LETTER_HISTORY)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": bool(self._workers),
            "pending": len(self._pending),
            "completed_count": self._completed_count,
            "failed_count": self._failed_count,
        }

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    async def start(self) -> None:
        self._ensure_started()

    async def stop(self) -> None:
        """Cancel workers. Jobs still queued are abandoned."""
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        self._loop = None
        self._pending.clear()

    async def join(self) -> None:
        """Wait until every queued job has finished. For tests and shutdown."""
        if self._queue is not None:
            await self._queue.join()

    def enqueue(self, key: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """
        Queue ``func(*args, **kwargs)`` unless a job with ``key`` is pending.

        Returns:
            True if queued, False if de-duplicated or the queue is full
        """
        if key in self._pending:
            logger.debug(f"Background job {key} already pending, skipping")
            return False

        queue = self._ensure_started()
        job = BackgroundJob(key=key, func=func, args=args, kwargs=kwargs)
        try:
            queue.put_nowait(job)
        except asyncio.QueueFull:
            self._record_failure(job, "queue full")
            return False

        self._pending.add(key)
        logger.debug(f"Background job queued: {key}")
        return True

    def _ensure_started(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if self._queue is None or self._loop is not loop:
            self._loop = loop
            self._queue = asyncio.Queue(maxsize=self.maxsize)
            self._pending.clear()
            self._workers = [
                loop.create_task(self._worker(i), name=f"background-job-worker-{i}")
                for i in range(self.worker_count)
            ]
        return self._queue

    async def _worker(self, worker_id: int) -> None:
        queue = self._queue
        while True:
            job: BackgroundJob = await queue.get()
            try:
                if inspect.iscoroutinefunction(job.func):
                    await job.func(*job.args, **job.kwargs)
                else:
                    result = await asyncio.to_thread(job.func, *job.args, **job.kwargs)
                    if inspect.isawaitable(result):
                        await result
                self._completed_count += 1
                logger.debug(
                    f"Background job {job.key} done in "
                    f"{time.monotonic() - job.enqueued_at:.2f}s (worker {worker_id})"
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record_failure(job, f"{type(e).__name__}: {e}")
            finally:
                self._pending.discard(job.key)
                queue.task_done()

    def _record_failure(self, job: BackgroundJob, error: str) -> None:
        self._failed_count += 1
        self.dead_letters.append(DeadLetter(key=job.key, error=error, failed_at=time.time()))
        dead_letter_logger.warning(f"Background job {job.key} dead-lettered: {error}")


_job_queue: BackgroundJobQueue | None = None


def get_job_queue() -> BackgroundJobQueue:
    """Process-wide job queue, sized from settings."""
    global _job_queue
    if _job_queue is None:
        from app.core.config import get_settings

        settings = get_settings()
        _job_queue = BackgroundJobQueue(
            maxsize=settings.BACKGROUND_QUEUE_MAXSIZE,
            workers=settings.BACKGROUND_WORKERS,
        )
    return _job_queue
