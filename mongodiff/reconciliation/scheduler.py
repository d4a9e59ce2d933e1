"""
Task Scheduler for MongoDB Diff Reconciliation

Runs one task per work unit on a fixed pool of worker threads behind a
bounded admission queue, and hands results back through a single
completion queue as they finish.
"""

import contextvars
import logging
import queue
import threading
from concurrent.futures import Future
from typing import Callable, Iterator, List, Optional

logger = logging.getLogger(__name__)

_STOP = object()


class SchedulerSaturatedError(RuntimeError):
    """Raised when the admission queue stays full past the submit timeout."""
    pass


class DiffScheduler:
    """
    Bounded worker pool with caller-blocks admission.

    submit() blocks the submitting thread, never a worker, while the queue
    is full. Every finished future is published once to the completion
    queue; as_completed() consumes exactly one entry per submission.
    """

    def __init__(
        self,
        workers: int,
        queue_capacity: int,
        submit_timeout: float = 300.0,
        name: str = "diff-worker"
    ):
        """
        Initialize the scheduler.

        Args:
            workers: Number of worker threads
            queue_capacity: Maximum tasks waiting for a worker
            submit_timeout: Seconds submit() may block before failing
            name: Worker thread name prefix
        """
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")
        if queue_capacity < 1:
            raise ValueError(f"queue_capacity must be at least 1, got {queue_capacity}")

        self.workers = workers
        self.queue_capacity = queue_capacity
        self.submit_timeout = submit_timeout
        self.name = name

        self._work_queue: queue.Queue = queue.Queue(maxsize=queue_capacity)
        self._completed: queue.Queue = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._submitted = 0
        self._observed = 0
        self._seen = set()
        self._shutdown = False

        logger.debug(
            f"Initialized DiffScheduler: {workers} workers, queue capacity {queue_capacity}"
        )

    def start(self) -> "DiffScheduler":
        for i in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"{self.name}-{i}",
                daemon=True
            )
            thread.start()
            self._threads.append(thread)
        return self

    def submit(self, task: Callable) -> Future:
        """
        Queue a task for execution.

        The task runs inside a copy of the caller's contextvars context.

        Args:
            task: Callable returning a result; if it also has
                crashed_result(exc), that result is used when it raises

        Returns:
            Future resolved with the task's result

        Raises:
            SchedulerSaturatedError: If the queue stays full for submit_timeout
            RuntimeError: If the scheduler was shut down
        """
        if self._shutdown:
            raise RuntimeError("Cannot submit to a scheduler that has been shut down")
        if not self._threads:
            self.start()

        future: Future = Future()
        item = (future, task, contextvars.copy_context())

        try:
            self._work_queue.put(item, timeout=self.submit_timeout)
        except queue.Full:
            raise SchedulerSaturatedError(
                f"Work queue full for {self.submit_timeout}s with capacity {self.queue_capacity}; "
                f"{self._submitted} tasks submitted"
            ) from None

        self._submitted += 1
        return future

    def _worker_loop(self) -> None:
        while True:
            item = self._work_queue.get()
            if item is _STOP:
                break

            future, task, ctx = item
            if not future.set_running_or_notify_cancel():
                self._completed.put(future)
                continue

            try:
                result = ctx.run(task)
            except Exception as e:
                logger.exception(f"Task {task} raised an exception")
                crashed = getattr(task, "crashed_result", None)
                if crashed is None:
                    future.set_exception(e)
                else:
                    future.set_result(crashed(e))
            else:
                future.set_result(result)

            self._completed.put(future)

    def as_completed(self, timeout: Optional[float] = None) -> Iterator:
        """
        Yield results in completion order, each exactly once.

        Args:
            timeout: Seconds to wait for any single completion

        Yields:
            Task results

        Raises:
            queue.Empty: If timeout elapses without a completion
        """
        while self._observed < self._submitted:
            future = self._completed.get(timeout=timeout)
            if future in self._seen:
                continue
            self._seen.add(future)
            self._observed += 1
            yield future.result()

    def wait_all(self, timeout: Optional[float] = None) -> list:
        """Block until every submitted task is observed and return their results."""
        return list(self.as_completed(timeout=timeout))

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop the workers after queued work drains.

        In-flight tasks always run to completion.
        """
        if self._shutdown:
            return
        self._shutdown = True

        for _ in self._threads:
            self._work_queue.put(_STOP)
        if wait:
            for thread in self._threads:
                thread.join()

        logger.debug(f"DiffScheduler shut down after {self._submitted} tasks")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


class StatusReporter:
    """
    Periodically logs a summary snapshot on its own thread.

    Read-only with respect to the summary; stopping it at any time has no
    effect on the run's results.
    """

    def __init__(self, summary, interval: float = 5.0):
        """
        Initialize the reporter.

        Args:
            summary: DiffSummary to report
            interval: Seconds between reports
        """
        self.summary = summary
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "StatusReporter":
        self._thread = threading.Thread(target=self._run, name="status-reporter", daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        # First report immediately, then every interval
        while True:
            logger.info(self.summary.get_summary(False))
            if self._stop.wait(self.interval):
                break

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
