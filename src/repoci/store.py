# store.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Protocol, Sequence

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, selectinload

from .db.models import Base, WorkflowJob, WorkflowRun, WorkflowStep
from .db.session import make_engine, make_sessionmaker
from .model import Job, Run, Status, Step

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class InvalidTransition(ValueError):
    """A status change that would move an entity backwards or out of a terminal state."""


class NotFound(LookupError):
    pass


# Forward-only lifecycle. Terminal states have no outgoing edges.
ALLOWED_TRANSITIONS = {
    Status.QUEUED: {Status.IN_PROGRESS, Status.CANCELLED},
    Status.IN_PROGRESS: {Status.SUCCESS, Status.FAILURE, Status.CANCELLED},
}


def check_transition(kind: str, entity_id: int, current: Status, target: Status) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"{kind} {entity_id}: cannot move from {current.value} to {target.value}"
        )


# ---------------------------------------------------------------------
# Inputs for create_run
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class NewStep:
    name: str
    command: Optional[str] = None
    uses: Optional[str] = None


@dataclass(frozen=True)
class NewJob:
    name: str
    runs_on: str
    steps: List[NewStep] = field(default_factory=list)


class RunStore(Protocol):
    """Everything the engine needs from persistence. Every write is durable on return."""

    def create_run(
        self,
        repo_name: str,
        workflow_name: str,
        branch: str,
        commit_sha: str,
        commit_message: str,
        triggered_by: str,
        jobs: Sequence[NewJob] = (),
    ) -> Run: ...

    def get_run(self, run_id: int) -> Optional[Run]: ...

    def list_runs(self, repo_name: str) -> List[Run]: ...

    def list_queued_runs(self, limit: int = 1) -> List[Run]: ...

    def delete_run(self, run_id: int) -> bool: ...

    def start_run(self, run_id: int) -> None: ...

    def finish_run(self, run_id: int, status: Status) -> None: ...

    def fail_run(self, run_id: int, reason: str) -> None: ...

    def start_job(self, job_id: int) -> None: ...

    def finish_job(self, job_id: int, status: Status) -> None: ...

    def cancel_job(self, job_id: int) -> None: ...

    def start_step(self, step_id: int) -> None: ...

    def record_step_result(self, step_id: int, status: Status, output: str) -> None: ...

    def cancel_remaining_steps(self, job_id: int) -> int: ...

    def reconcile_in_progress_runs(self, reason: str) -> int: ...


# ---------------------------------------------------------------------
# Row -> record
# ---------------------------------------------------------------------

def _step_record(row: WorkflowStep) -> Step:
    return Step(
        id=row.id,
        name=row.name,
        command=row.command,
        uses=row.uses,
        status=row.status,
        output=row.output,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _job_record(row: WorkflowJob) -> Job:
    return Job(
        id=row.id,
        name=row.name,
        runs_on=row.runs_on,
        status=row.status,
        started_at=row.started_at,
        completed_at=row.completed_at,
        steps=[_step_record(s) for s in row.steps],
    )


def _run_record(row: WorkflowRun) -> Run:
    return Run(
        id=row.id,
        repo_name=row.repo_name,
        workflow_name=row.workflow_name,
        branch=row.branch,
        commit_sha=row.commit_sha,
        commit_message=row.commit_message,
        triggered_by=row.triggered_by,
        status=row.status,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        jobs=[_job_record(j) for j in row.jobs],
    )


def _with_graph(stmt):
    return stmt.options(selectinload(WorkflowRun.jobs).selectinload(WorkflowJob.steps))


class SqlRunStore:
    """
    SQLAlchemy-backed run store.

    Status changes go through the named commands below; each one opens its
    own transaction and commits before returning, so observers see progress
    as it happens.
    """

    def __init__(self, engine: Engine | str):
        self.engine = make_engine(engine) if isinstance(engine, str) else engine
        self._sessions = make_sessionmaker(self.engine)
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._sessions() as s:
            with s.begin():
                yield s

    @staticmethod
    def _get(s: Session, model, entity_id: int):
        row = s.get(model, entity_id)
        if row is None:
            raise NotFound(f"{model.__tablename__} {entity_id} not found")
        return row

    # ---- queries ----

    def create_run(
        self,
        repo_name: str,
        workflow_name: str,
        branch: str,
        commit_sha: str,
        commit_message: str,
        triggered_by: str,
        jobs: Sequence[NewJob] = (),
    ) -> Run:
        with self._session() as s:
            run = WorkflowRun(
                repo_name=repo_name,
                workflow_name=workflow_name,
                branch=branch,
                commit_sha=commit_sha,
                commit_message=commit_message,
                triggered_by=triggered_by,
                status=Status.QUEUED,
                created_at=now_utc(),
            )
            for job_pos, new_job in enumerate(jobs):
                job = WorkflowJob(
                    position=job_pos,
                    name=new_job.name,
                    runs_on=new_job.runs_on,
                    status=Status.QUEUED,
                )
                job.steps = [
                    WorkflowStep(
                        position=step_pos,
                        name=new_step.name,
                        command=new_step.command,
                        uses=new_step.uses,
                        status=Status.QUEUED,
                    )
                    for step_pos, new_step in enumerate(new_job.steps)
                ]
                run.jobs.append(job)
            s.add(run)
            s.flush()
            record = _run_record(run)

        logger.info(
            "run.created",
            extra={"run_id": record.id, "repo": repo_name, "jobs": len(record.jobs)},
        )
        return record

    def get_run(self, run_id: int) -> Optional[Run]:
        with self._session() as s:
            row = s.scalars(_with_graph(sa.select(WorkflowRun).where(WorkflowRun.id == run_id))).first()
            return _run_record(row) if row is not None else None

    def list_runs(self, repo_name: str) -> List[Run]:
        """Runs of one repository, newest first."""
        with self._session() as s:
            stmt = _with_graph(
                sa.select(WorkflowRun)
                .where(WorkflowRun.repo_name == repo_name)
                .order_by(WorkflowRun.created_at.desc(), WorkflowRun.id.desc())
            )
            return [_run_record(r) for r in s.scalars(stmt)]

    def list_queued_runs(self, limit: int = 1) -> List[Run]:
        """Queued runs, oldest first."""
        with self._session() as s:
            stmt = _with_graph(
                sa.select(WorkflowRun)
                .where(WorkflowRun.status == Status.QUEUED)
                .order_by(WorkflowRun.created_at.asc(), WorkflowRun.id.asc())
                .limit(limit)
            )
            return [_run_record(r) for r in s.scalars(stmt)]

    def delete_run(self, run_id: int) -> bool:
        with self._session() as s:
            row = s.get(WorkflowRun, run_id)
            if row is None:
                return False
            s.delete(row)
        logger.info("run.deleted", extra={"run_id": run_id})
        return True

    # ---- run commands ----

    def start_run(self, run_id: int) -> None:
        with self._session() as s:
            run = self._get(s, WorkflowRun, run_id)
            check_transition("run", run_id, run.status, Status.IN_PROGRESS)
            run.status = Status.IN_PROGRESS
            run.started_at = now_utc()

    def finish_run(self, run_id: int, status: Status) -> None:
        if not status.is_terminal:
            raise InvalidTransition(f"run {run_id}: {status.value} is not a final status")
        with self._session() as s:
            run = self._get(s, WorkflowRun, run_id)
            check_transition("run", run_id, run.status, status)
            run.status = status
            run.completed_at = now_utc()

    def fail_run(self, run_id: int, reason: str) -> None:
        """
        Force a run and everything still open inside it to a final state.

        In-progress steps and jobs become Failure (the step keeps `reason` in
        its output), queued ones become Cancelled. A run that is already final
        is left alone.

        This is the one command that bypasses `check_transition`: a Queued run
        goes straight to Failure (its start time is stamped so that
        created <= started <= completed still holds).
        """
        now = now_utc()
        with self._session() as s:
            run = self._get(s, WorkflowRun, run_id)
            if run.status.is_terminal:
                return
            for job in run.jobs:
                for step in job.steps:
                    if step.status == Status.IN_PROGRESS:
                        step.status = Status.FAILURE
                        step.output = _append(step.output, reason)
                        step.completed_at = now
                    elif step.status == Status.QUEUED:
                        step.status = Status.CANCELLED
                if job.status == Status.IN_PROGRESS:
                    job.status = Status.FAILURE
                    job.completed_at = now
                elif job.status == Status.QUEUED:
                    job.status = Status.CANCELLED
            if run.status == Status.QUEUED:
                run.started_at = now
            run.status = Status.FAILURE
            run.completed_at = now
        logger.warning("run.forced_failure", extra={"run_id": run_id, "reason": reason})

    def reconcile_in_progress_runs(self, reason: str) -> int:
        """Fail runs left in progress by a previous process. Returns how many."""
        with self._session() as s:
            ids = list(s.scalars(sa.select(WorkflowRun.id).where(WorkflowRun.status == Status.IN_PROGRESS)))
        for run_id in ids:
            self.fail_run(run_id, reason)
        return len(ids)

    # ---- job commands ----

    def start_job(self, job_id: int) -> None:
        with self._session() as s:
            job = self._get(s, WorkflowJob, job_id)
            check_transition("job", job_id, job.status, Status.IN_PROGRESS)
            job.status = Status.IN_PROGRESS
            job.started_at = now_utc()

    def finish_job(self, job_id: int, status: Status) -> None:
        if not status.is_terminal:
            raise InvalidTransition(f"job {job_id}: {status.value} is not a final status")
        with self._session() as s:
            job = self._get(s, WorkflowJob, job_id)
            check_transition("job", job_id, job.status, status)
            job.status = status
            job.completed_at = now_utc()

    def cancel_job(self, job_id: int) -> None:
        """Cancel a job that will not run (further), together with its queued steps."""
        with self._session() as s:
            job = self._get(s, WorkflowJob, job_id)
            check_transition("job", job_id, job.status, Status.CANCELLED)
            for step in job.steps:
                if step.status == Status.QUEUED:
                    step.status = Status.CANCELLED
            if job.status == Status.IN_PROGRESS:
                job.completed_at = now_utc()
            job.status = Status.CANCELLED

    # ---- step commands ----

    def start_step(self, step_id: int) -> None:
        with self._session() as s:
            step = self._get(s, WorkflowStep, step_id)
            check_transition("step", step_id, step.status, Status.IN_PROGRESS)
            step.status = Status.IN_PROGRESS
            step.started_at = now_utc()

    def record_step_result(self, step_id: int, status: Status, output: str) -> None:
        if status not in (Status.SUCCESS, Status.FAILURE):
            raise InvalidTransition(f"step {step_id}: a result must be success or failure")
        with self._session() as s:
            step = self._get(s, WorkflowStep, step_id)
            check_transition("step", step_id, step.status, status)
            step.status = status
            step.output = output
            step.completed_at = now_utc()

    def cancel_remaining_steps(self, job_id: int) -> int:
        """Cancel every still-queued step of a job. Returns how many were cancelled."""
        with self._session() as s:
            job = self._get(s, WorkflowJob, job_id)
            cancelled = 0
            for step in job.steps:
                if step.status == Status.QUEUED:
                    step.status = Status.CANCELLED
                    cancelled += 1
            return cancelled


def _append(output: Optional[str], line: str) -> str:
    return f"{output}\n\n{line}" if output else line
