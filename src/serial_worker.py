"""
Single-thread FIFO job runner.

Jobs submitted from any thread run one at a time, in submission order, on a
background daemon thread. Each job runs to completion before the next one
starts. Used for scan dispatch (strict ordering) and for remote sync uploads
(kept off the scan path so a slow server never delays scanning).
"""

import threading
from collections import deque
from typing import Callable, Deque, Optional

from logger import get_logger

logger = get_logger(__name__)

Job = Callable[[], None]


class SerialWorker:
    """
    Background FIFO queue of callables.

    Behaviour:
    - submit(job): non-blocking, appends the job to the queue
    - flush(): blocking, waits until the queue is empty and no job is running
    - shutdown(): flush then stop the daemon thread; later submits are refused

    A job that raises is logged and does not stop the worker.

    sync_mode=True skips the background thread and runs each job inside
    submit(); useful for unit tests that assert state right after a call.
    """

    def __init__(self, name: str = "serial-worker", sync_mode: bool = False) -> None:
        self.name = name
        self._sync_mode = sync_mode
        self._stopped = False

        if sync_mode:
            return  # No thread needed

        self._condition = threading.Condition()
        self._queue: Deque[Job] = deque()
        self._is_running_job = False
        self._thread = threading.Thread(target=self._run, daemon=True, name=name)
        self._thread.start()

    @property
    def sync_mode(self) -> bool:
        return self._sync_mode

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, job: Job) -> bool:
        """
        Queue a job for execution.

        Returns:
            False if the worker has been shut down and the job was dropped
        """
        if self._sync_mode:
            if self._stopped:
                logger.warning(f"{self.name}: job submitted after shutdown, dropped")
                return False
            self._execute(job)
            return True

        # _stopped is read and written under the condition
        with self._condition:
            if self._stopped:
                logger.warning(f"{self.name}: job submitted after shutdown, dropped")
                return False
            self._queue.append(job)
            self._condition.notify_all()
        return True

    def pending(self) -> int:
        """Jobs queued or running."""
        if self._sync_mode:
            return 0
        with self._condition:
            return len(self._queue) + (1 if self._is_running_job else 0)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every queued job has finished.

        Must not be called from inside a job (it would wait for itself).

        Returns:
            True if idle, False if the timeout expired first
        """
        if self._sync_mode:
            return True

        with self._condition:
            return self._condition.wait_for(
                lambda: not self._queue and not self._is_running_job,
                timeout=timeout,
            )

    def shutdown(self, timeout: float = 10) -> None:
        """
        Finish queued jobs then stop the background thread.

        Safe to call multiple times; subsequent calls are no-ops.
        """
        if self._sync_mode:
            self._stopped = True
            return

        with self._condition:
            if self._stopped:
                return
            self._stopped = True

        self.flush(timeout=timeout)
        with self._condition:
            self._condition.notify_all()
        self._thread.join(timeout=timeout)

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    def _execute(self, job: Job) -> None:
        try:
            job()
        except Exception:
            logger.exception(f"{self.name}: job failed")

    def _run(self) -> None:
        while True:
            with self._condition:
                while not self._queue and not self._stopped:
                    self._condition.wait()

                if self._stopped and not self._queue:
                    break

                job = self._queue.popleft()
                self._is_running_job = True

            # Run outside the lock so submit() is never blocked
            try:
                self._execute(job)
            finally:
                with self._condition:
                    self._is_running_job = False
                    self._condition.notify_all()
