# scheduler.py
from __future__ import annotations

import logging
import threading
from typing import Optional

from .containers import BackendUnavailable, ContainerRuntime
from .git_facts.git import SourceProvider
from .runner import RunExecutor
from .settings import DEFAULT_POLL_INTERVAL, DEFAULT_STEP_TIMEOUT, JobLimits
from .store import RunStore

logger = logging.getLogger(__name__)

RESTART_REASON = "Runner restarted while this run was in progress"


class Scheduler:
    """
    Background worker that polls for queued runs and executes them.

    One run at a time: each wake takes the oldest queued run and drives it to
    completion before sleeping again.
    """

    def __init__(
        self,
        store: RunStore,
        runtime: ContainerRuntime,
        source: Optional[SourceProvider] = None,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        step_timeout: Optional[float] = DEFAULT_STEP_TIMEOUT,
        limits: JobLimits = JobLimits(),
    ):
        """
        Args:
            store: Persistence for runs, jobs and steps
            runtime: Container runtime jobs execute in
            source: Resolves repositories to mountable paths
            poll_interval: Seconds between polls
            step_timeout: Per-step limit in seconds (None disables it)
            limits: Container resource ceiling and paths
        """
        self.store = store
        self.runtime = runtime
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.disabled = False
        self.executor = RunExecutor(
            store,
            runtime,
            source,
            limits=limits,
            step_timeout=step_timeout,
            stop_event=self._stop,
        )

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        """Ask the loop to stop at the next run, job or step boundary."""
        self._stop.set()

    def check_backend(self) -> bool:
        """
        Verify the container runtime once.

        An unreachable runtime disables the scheduler for the rest of the
        process; it is never probed again.
        """
        if self.disabled:
            return False
        try:
            self.runtime.ping()
        except BackendUnavailable as e:
            self.disabled = True
            logger.warning("scheduler.disabled", extra={"error": str(e)})
            return False
        return True

    def tick(self) -> bool:
        """
        One wake: execute at most one queued run.

        Returns True if a run was picked up.
        """
        if self.stopping or self.disabled:
            return False

        queued = self.store.list_queued_runs(limit=1)
        if not queued:
            return False

        run = queued[0]
        try:
            self.executor.execute_run(run)
        except Exception as e:
            logger.error(
                "run.crashed",
                extra={"run_id": run.id, "error": str(e)},
                exc_info=True,
            )
            self.store.fail_run(run.id, f"Runner error: {e}")
        return True

    def run_forever(self) -> None:
        """Run the poll loop in the calling thread until stopped."""
        if not self.check_backend():
            return

        reconciled = self.store.reconcile_in_progress_runs(RESTART_REASON)
        if reconciled:
            logger.warning("scheduler.reconciled", extra={"runs": reconciled})

        logger.info("scheduler.started", extra={"poll_interval": self.poll_interval})
        while not self.stopping:
            try:
                self.tick()
            except Exception as e:
                # store unreachable and the like: try again on the next wake
                logger.error("scheduler.tick_failed", extra={"error": str(e)}, exc_info=True)
            self._stop.wait(self.poll_interval)
        logger.info("scheduler.stopped")

    def start(self) -> threading.Thread:
        """Run the poll loop on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._thread = threading.Thread(target=self.run_forever, name="repoci-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self.request_stop()
        if self._thread is not None:
            self._thread.join(timeout)
