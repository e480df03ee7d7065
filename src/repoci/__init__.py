from .loader import load_definitions, parse_workflow
from .materializer import TriggerContext, materialize_run, record_bare_run, trigger_workflows
from .model import (
    ActionStep,
    Job,
    JobDefinition,
    Run,
    ShellStep,
    Status,
    Step,
    WorkflowDefinition,
)
from .runner import RunExecutor, resolve_image
from .scheduler import Scheduler
from .store import SqlRunStore

__all__ = [
    "ActionStep",
    "Job",
    "JobDefinition",
    "Run",
    "RunExecutor",
    "Scheduler",
    "ShellStep",
    "SqlRunStore",
    "Status",
    "Step",
    "TriggerContext",
    "WorkflowDefinition",
    "load_definitions",
    "materialize_run",
    "parse_workflow",
    "record_bare_run",
    "resolve_image",
    "trigger_workflows",
]
