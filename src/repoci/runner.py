# runner.py
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from .containers import ContainerRuntime, ExecTimeout, Mount
from .git_facts.git import SourceProvider
from .model import Job, Run, Status, Step
from .propagation import aggregate_run_status, fail_job, fail_step, failure_output
from .settings import DEFAULT_STEP_TIMEOUT, JobLimits
from .store import RunStore

logger = logging.getLogger(__name__)


DEFAULT_IMAGE = "ubuntu:22.04"

RUNS_ON_IMAGES: Dict[str, str] = {
    "ubuntu-latest": "ubuntu:22.04",
    "ubuntu-22.04": "ubuntu:22.04",
    "ubuntu-20.04": "ubuntu:20.04",
    "node": "node:20",
    "node-latest": "node:20",
    "node-20": "node:20",
    "node-18": "node:18",
    "python": "python:3.12",
    "python-latest": "python:3.12",
    "python-3.12": "python:3.12",
    "python-3.11": "python:3.11",
    "dotnet": "mcr.microsoft.com/dotnet/sdk:8.0",
    "dotnet-8": "mcr.microsoft.com/dotnet/sdk:8.0",
    "dotnet-latest": "mcr.microsoft.com/dotnet/sdk:8.0",
    "dotnet-6": "mcr.microsoft.com/dotnet/sdk:6.0",
}

NO_COMMAND = "echo 'No command'"


def resolve_image(runs_on: str) -> str:
    """Map a `runs-on` label to a container image. Unknown labels get the default."""
    return RUNS_ON_IMAGES.get(runs_on.strip().lower(), DEFAULT_IMAGE)


def resolve_command(step: Step) -> str:
    return step.command or NO_COMMAND


def shell_argv(command: str) -> List[str]:
    return ["sh", "-c", command]


def action_skipped_output(reference: str) -> str:
    return f"Skipped '{reference}': reusable actions are not executed by this runner."


def timeout_output(timeout: float) -> str:
    return f"Step timed out after {timeout:g} seconds"


class RunExecutor:
    """
    Drives one run to completion, job by job, step by step.

    Every status change is written through the store as it happens. Jobs run
    in their materialized order and all of them are attempted, whatever
    happened to the ones before.
    """

    def __init__(
        self,
        store: RunStore,
        runtime: ContainerRuntime,
        source: Optional[SourceProvider] = None,
        *,
        limits: JobLimits = JobLimits(),
        step_timeout: Optional[float] = DEFAULT_STEP_TIMEOUT,
        stop_event: Optional[threading.Event] = None,
    ):
        self.store = store
        self.runtime = runtime
        self.source = source
        self.limits = limits
        self.step_timeout = step_timeout
        self.stop_event = stop_event or threading.Event()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    # ------------------------------------------------------------------
    # Run level
    # ------------------------------------------------------------------

    def execute_run(self, run: Run) -> Status:
        logger.info(
            "run.started",
            extra={"run_id": run.id, "repo": run.repo_name, "workflow": run.workflow_name},
        )
        self.store.start_run(run.id)

        statuses: List[Status] = []
        for job in run.jobs:
            if self.stopping:
                self.store.cancel_job(job.id)
                statuses.append(Status.CANCELLED)
                continue
            statuses.append(self._run_job(run, job))

        final = aggregate_run_status(statuses)
        self.store.finish_run(run.id, final)
        logger.info("run.completed", extra={"run_id": run.id, "status": final.value})
        return final

    # ------------------------------------------------------------------
    # Job level
    # ------------------------------------------------------------------

    def _mounts(self, repo_name: str) -> List[Mount]:
        if self.source is None:
            return []
        path = self.source.resolve(repo_name)
        if path is None:
            return []
        return [Mount(source=str(path), target=self.limits.mount_target, read_only=True)]

    def _run_job(self, run: Run, job: Job) -> Status:
        self.store.start_job(job.id)
        image = resolve_image(job.runs_on)
        container_id: Optional[str] = None
        logger.info(
            "job.started",
            extra={"run_id": run.id, "job": job.name, "image": image},
        )

        try:
            self.runtime.pull_image(image)

            mounts = self._mounts(run.repo_name)
            container_id = self.runtime.create_container(
                image,
                self.limits.memory_bytes,
                self.limits.cpus,
                mounts,
                self.limits.workdir,
            )
            self.runtime.start(container_id)

            if mounts:
                self._bootstrap(container_id)

            status = self._run_steps(job, container_id)
        except Exception as e:
            logger.error(
                "job.failed",
                extra={"run_id": run.id, "job": job.name, "error": str(e)},
                exc_info=True,
            )
            fail_job(self.store, job.id)
            return Status.FAILURE
        finally:
            if container_id is not None:
                self._cleanup(container_id)

        logger.info(
            "job.completed",
            extra={"run_id": run.id, "job": job.name, "status": status.value},
        )
        return status

    def _bootstrap(self, container_id: str) -> None:
        """Clone the mounted repository into the workspace. Failure is not fatal."""
        try:
            result = self.runtime.exec(
                container_id,
                shell_argv(self.limits.bootstrap_command),
                timeout=self.step_timeout,
            )
            logger.debug("workspace.bootstrapped", extra={"exit_code": result.exit_code})
        except Exception as e:
            logger.warning("workspace.bootstrap_failed", extra={"error": str(e)})

    def _cleanup(self, container_id: str) -> None:
        try:
            self.runtime.stop(container_id, self.limits.stop_grace_seconds)
        except Exception as e:
            logger.warning("container.stop_failed", extra={"container": container_id, "error": str(e)})
        try:
            self.runtime.remove(container_id, force=True)
        except Exception as e:
            logger.warning("container.remove_failed", extra={"container": container_id, "error": str(e)})

    # ------------------------------------------------------------------
    # Step level
    # ------------------------------------------------------------------

    def _run_steps(self, job: Job, container_id: str) -> Status:
        for step in job.steps:
            if self.stopping:
                self.store.cancel_job(job.id)
                return Status.CANCELLED

            self.store.start_step(step.id)

            if step.is_action:
                self.store.record_step_result(step.id, Status.SUCCESS, action_skipped_output(step.uses or ""))
                continue

            try:
                result = self.runtime.exec(
                    container_id,
                    shell_argv(resolve_command(step)),
                    timeout=self.step_timeout,
                )
            except ExecTimeout:
                cancelled = fail_step(self.store, job.id, step.id, timeout_output(self.step_timeout or 0))
                logger.warning(
                    "step.timed_out",
                    extra={"job": job.name, "step": step.name, "cancelled": cancelled},
                )
                return Status.FAILURE
            except Exception as e:
                # The job boundary fails the job; the step keeps the reason.
                self.store.record_step_result(step.id, Status.FAILURE, str(e))
                raise

            if result.exit_code != 0:
                cancelled = fail_step(
                    self.store,
                    job.id,
                    step.id,
                    failure_output(result.output, result.exit_code),
                )
                logger.info(
                    "step.failed",
                    extra={
                        "job": job.name,
                        "step": step.name,
                        "exit_code": result.exit_code,
                        "cancelled": cancelled,
                    },
                )
                return Status.FAILURE

            self.store.record_step_result(step.id, Status.SUCCESS, result.output)

        self.store.finish_job(job.id, Status.SUCCESS)
        return Status.SUCCESS
