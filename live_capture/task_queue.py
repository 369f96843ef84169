"""Bounded-concurrency task queue with tail re-enqueue retries."""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskQueueStats:
    total: int
    completed: int
    failed: int
    queued: int
    running: int

    @property
    def pending(self) -> int:
        return self.queued + self.running


@dataclass(slots=True)
class _QueuedTask:
    fn: Callable[..., Any]
    args: tuple[Any, ...]
    max_retries: int
    future: Future = field(default_factory=Future)
    attempts: int = 0


class TaskQueue:
    """Run submitted callables on a worker pool, at most ``max_concurrent`` at a time.

    The queue is FIFO. A task that raises goes back to the tail of the queue until it
    has failed ``max_retries`` times, after which its future carries the exception.
    """

    def __init__(self, max_concurrent: int = 2, *, thread_name_prefix: str = "capture-task") -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix=thread_name_prefix)
        self._condition = threading.Condition()
        self._queue: deque[_QueuedTask] = deque()
        self._running = 0
        self._total = 0
        self._completed = 0
        self._failed = 0
        self._closed = False

    def submit(self, fn: Callable[..., Any], args: Sequence[Any] = (), max_retries: int = 2) -> Future:
        task = _QueuedTask(fn=fn, args=tuple(args), max_retries=max(1, max_retries))
        with self._condition:
            if self._closed:
                raise RuntimeError("TaskQueue has been shut down")
            self._queue.append(task)
            self._total += 1
            self._dispatch_locked()
        return task.future

    def _dispatch_locked(self) -> None:
        while not self._closed and self._running < self.max_concurrent and self._queue:
            task = self._queue.popleft()
            self._executor.submit(self._execute, task)
            self._running += 1

    def _execute(self, task: _QueuedTask) -> None:
        try:
            try:
                result = task.fn(*task.args)
            except Exception as exc:
                task.attempts += 1
                with self._condition:
                    # No retries once shutdown has started.
                    retry = task.attempts < task.max_retries and not self._closed
                    if retry:
                        self._queue.append(task)
                    else:
                        self._failed += 1
                if retry:
                    LOGGER.warning(
                        "Task failed (attempt %d/%d), retrying: %s", task.attempts, task.max_retries, exc
                    )
                    return
                LOGGER.error("Task failed after %d attempts: %s", task.attempts, exc)
                task.future.set_exception(exc)
            else:
                with self._condition:
                    self._completed += 1
                task.future.set_result(result)
        finally:
            with self._condition:
                self._running -= 1
                self._dispatch_locked()
                self._condition.notify_all()

    def stats(self) -> TaskQueueStats:
        with self._condition:
            return TaskQueueStats(
                total=self._total,
                completed=self._completed,
                failed=self._failed,
                queued=len(self._queue),
                running=self._running,
            )

    def drain(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued or running; False if ``timeout`` elapsed first."""

        with self._condition:
            return self._condition.wait_for(lambda: not self._queue and self._running == 0, timeout=timeout)

    def clear(self) -> int:
        """Drop queued (not yet running) tasks, cancelling their futures."""

        with self._condition:
            dropped = list(self._queue)
            self._queue.clear()
            self._condition.notify_all()
        for task in dropped:
            task.future.cancel()
        return len(dropped)

    def shutdown(self, wait: bool = True) -> None:
        """Stop dispatching, cancel queued tasks and release the worker threads."""

        with self._condition:
            self._closed = True
        self.clear()
        self._executor.shutdown(wait=wait)


__all__ = ["TaskQueue", "TaskQueueStats"]
