"""Compensating cleanup jobs run once at process shutdown.

Operations register jobs here for side effects they leave behind, such
as staged template objects, changesets and placeholder stacks. All jobs
run concurrently under one shared deadline and a failing job never stops
its siblings.
"""

import logging
import threading
from typing import Callable, List, Optional

from .cancellation import CancelScope


logger = logging.getLogger(__name__)

CleanupJob = Callable[[CancelScope], None]


class CleanupError(Exception):
    """Raised (and reported) when a cleanup job fails or times out."""
    pass


class CleanupRegistry:
    """Ordered registry of compensating cleanup jobs."""

    DEFAULT_TIMEOUT_SECONDS = 10.0

    def __init__(self, timeout: Optional[float] = None,
                 on_error: Optional[Callable[[Exception], None]] = None) -> None:
        """Initialize the registry.

        Args:
            timeout: Shared deadline for all jobs in seconds (default: 10)
            on_error: Error sink called once per failed job (default: log a warning)
        """
        self.timeout = timeout or self.DEFAULT_TIMEOUT_SECONDS
        self.on_error = on_error or self._log_error
        self._jobs: List[CleanupJob] = []
        self._lock = threading.Lock()

    def register(self, job: CleanupJob) -> None:
        """Append a job. Safe to call from any thread."""
        with self._lock:
            self._jobs.append(job)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def run_all(self) -> List[Exception]:
        """Run every registered job concurrently under the shared deadline.

        Jobs that succeed are removed from the registry. Failed or timed
        out jobs are reported to the error sink and stay registered.

        Returns:
            The errors reported for this run
        """
        with self._lock:
            jobs = list(self._jobs)
        if not jobs:
            return []

        logger.info(f"Running {len(jobs)} cleanup job(s)")
        scope = CancelScope(timeout=self.timeout)
        errors: List[Exception] = []
        succeeded: List[CleanupJob] = []
        results_lock = threading.Lock()

        def run(job: CleanupJob) -> None:
            try:
                job(scope)
            except Exception as e:
                with results_lock:
                    errors.append(e)
            else:
                with results_lock:
                    succeeded.append(job)

        threads = []
        for index, job in enumerate(jobs):
            thread = threading.Thread(
                target=run, args=(job,), name=f"cleanup-{index}", daemon=True
            )
            threads.append((job, thread))
            thread.start()

        for job, thread in threads:
            remaining = scope.remaining()
            thread.join(remaining if remaining is not None else 0)
            if thread.is_alive():
                with results_lock:
                    errors.append(CleanupError(
                        f"Cleanup job {getattr(job, '__name__', job)} did not finish "
                        f"within {self.timeout} seconds"
                    ))

        with self._lock:
            for job in succeeded:
                if job in self._jobs:
                    self._jobs.remove(job)

        with results_lock:
            reported = list(errors)
        for error in reported:
            self.on_error(error)
        return reported

    @staticmethod
    def _log_error(error: Exception) -> None:
        logger.warning(f"Cleanup failed: {error}")
