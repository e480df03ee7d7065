# materializer.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .git_facts.git import SourceProvider
from .loader import load_definitions
from .model import ActionStep, Run, StepDefinition, WorkflowDefinition
from .settings import DEFAULT_WORKFLOW_DIR
from .store import NewJob, NewStep, RunStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerContext:
    """Who and what triggered a run."""
    branch: str
    commit_sha: str
    commit_message: str
    triggered_by: str


def _new_step(step: StepDefinition) -> NewStep:
    if isinstance(step, ActionStep):
        return NewStep(name=step.display_name, command=None, uses=step.reference)
    # A shell step without `run` falls back to its declared name as command;
    # with neither, the runner uses its own placeholder.
    return NewStep(name=step.display_name, command=step.command or step.name)


def materialize_run(
    store: RunStore,
    repo_name: str,
    definition: WorkflowDefinition,
    trigger: TriggerContext,
) -> Run:
    """Persist a Queued run mirroring `definition`. Nothing is executed here."""
    jobs = [
        NewJob(
            name=job_name,
            runs_on=job_def.runs_on,
            steps=[_new_step(s) for s in job_def.steps],
        )
        for job_name, job_def in definition.jobs.items()
    ]
    return store.create_run(
        repo_name=repo_name,
        workflow_name=definition.name,
        branch=trigger.branch,
        commit_sha=trigger.commit_sha,
        commit_message=trigger.commit_message,
        triggered_by=trigger.triggered_by,
        jobs=jobs,
    )


def record_bare_run(
    store: RunStore,
    repo_name: str,
    workflow_name: str,
    trigger: TriggerContext,
) -> Run:
    """Record a run with no jobs, for triggers that do not come from a workflow file."""
    return store.create_run(
        repo_name=repo_name,
        workflow_name=workflow_name,
        branch=trigger.branch,
        commit_sha=trigger.commit_sha,
        commit_message=trigger.commit_message,
        triggered_by=trigger.triggered_by,
    )


def trigger_workflows(
    source: SourceProvider,
    store: RunStore,
    repo_name: str,
    trigger: TriggerContext,
    *,
    ref: Optional[str] = None,
    directory: str = DEFAULT_WORKFLOW_DIR,
) -> List[Run]:
    """
    Queue one run per workflow document found in the repository.

    `ref` defaults to the triggering commit.
    """
    ref = ref or trigger.commit_sha
    definitions = load_definitions(source, repo_name, ref=ref, directory=directory)
    runs = [materialize_run(store, repo_name, d, trigger) for d in definitions]
    logger.info(
        "workflows.triggered",
        extra={"repo": repo_name, "ref": ref, "runs": [r.id for r in runs]},
    )
    return runs
