# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class Status(str, Enum):
    """Lifecycle status shared by runs, jobs and steps."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (Status.SUCCESS, Status.FAILURE, Status.CANCELLED)


# ---------------------------------------------------------------------
# Definitions (parsed workflow documents)
# ---------------------------------------------------------------------

DEFAULT_RUNS_ON = "ubuntu-latest"
DEFAULT_STEP_NAME = "Step"


@dataclass(frozen=True)
class ShellStep:
    """A step that runs a shell command inside the job container."""
    command: Optional[str]
    name: Optional[str] = None
    with_: Optional[Dict[str, str]] = None
    env: Optional[Dict[str, str]] = None

    @property
    def display_name(self) -> str:
        return self.name or self.command or DEFAULT_STEP_NAME


@dataclass(frozen=True)
class ActionStep:
    """A `uses:` step. Recognized and stored, never executed."""
    reference: str
    name: Optional[str] = None
    with_: Optional[Dict[str, str]] = None
    env: Optional[Dict[str, str]] = None

    @property
    def display_name(self) -> str:
        return self.name or self.reference


StepDefinition = Union[ShellStep, ActionStep]


@dataclass(frozen=True)
class JobDefinition:
    runs_on: str = DEFAULT_RUNS_ON
    steps: List[StepDefinition] = field(default_factory=list)


@dataclass(frozen=True)
class WorkflowDefinition:
    """
    A parsed workflow document.

    `jobs` keeps the declaration order of the document, which is also the
    order jobs execute in.
    """
    name: str
    file_name: str
    on: Any = None
    jobs: Dict[str, JobDefinition] = field(default_factory=dict)


# ---------------------------------------------------------------------
# Records (persisted execution graph, read-only snapshots)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    id: int
    name: str
    command: Optional[str]
    status: Status
    uses: Optional[str] = None
    output: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_action(self) -> bool:
        return self.uses is not None and self.command is None


@dataclass(frozen=True)
class Job:
    id: int
    name: str
    runs_on: str
    status: Status
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: List[Step] = field(default_factory=list)


@dataclass(frozen=True)
class Run:
    id: int
    repo_name: str
    workflow_name: str
    branch: str
    commit_sha: str
    commit_message: str
    triggered_by: str
    status: Status
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    jobs: List[Job] = field(default_factory=list)
