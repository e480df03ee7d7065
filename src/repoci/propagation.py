# propagation.py
# Failure policy:
#   - a failed step cancels the rest of its own job and fails that job
#   - a failed job never stops later jobs of the same run
#   - a run succeeds only if every job succeeded
from __future__ import annotations

from typing import Iterable

from .model import Status
from .store import RunStore


def exit_code_marker(exit_code: int) -> str:
    return f"Process exited with code {exit_code}"


def failure_output(output: str, exit_code: int) -> str:
    return f"{output}\n\n{exit_code_marker(exit_code)}"


def aggregate_run_status(job_statuses: Iterable[Status]) -> Status:
    """Success if every job succeeded (vacuously for no jobs), otherwise Failure."""
    return Status.SUCCESS if all(s == Status.SUCCESS for s in job_statuses) else Status.FAILURE


def fail_step(store: RunStore, job_id: int, step_id: int, output: str) -> int:
    """
    Record a step failure and cascade it through its job.

    Returns the number of steps cancelled.
    """
    store.record_step_result(step_id, Status.FAILURE, output)
    cancelled = store.cancel_remaining_steps(job_id)
    store.finish_job(job_id, Status.FAILURE)
    return cancelled


def fail_job(store: RunStore, job_id: int) -> int:
    """Fail a job that broke outside a step result (provisioning, transport)."""
    cancelled = store.cancel_remaining_steps(job_id)
    store.finish_job(job_id, Status.FAILURE)
    return cancelled
