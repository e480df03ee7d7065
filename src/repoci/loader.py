# loader.py
from __future__ import annotations

import logging
import posixpath
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .git_facts.git import SourceProvider
from .model import (
    DEFAULT_RUNS_ON,
    ActionStep,
    JobDefinition,
    ShellStep,
    StepDefinition,
    WorkflowDefinition,
)
from .settings import DEFAULT_WORKFLOW_DIR

logger = logging.getLogger(__name__)

WORKFLOW_EXTENSIONS = (".yml", ".yaml")


# ---------------------------------------------------------------------
# Raw document models
# ---------------------------------------------------------------------
# Workflow files are written by hand and only a handful of keys mean
# anything to us. Everything else is ignored, and values of the wrong shape
# are coerced or dropped instead of rejected.

def _scalar(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _string_map(value: Any) -> Optional[Dict[str, str]]:
    if not isinstance(value, dict):
        return None
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


class RawStep(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Optional[Dict[str, str]] = Field(default=None, alias="with")
    env: Optional[Dict[str, str]] = None

    @field_validator("name", "run", "uses", mode="before")
    @classmethod
    def _coerce_scalar(cls, v: Any) -> Optional[str]:
        return _scalar(v)

    @field_validator("with_", "env", mode="before")
    @classmethod
    def _coerce_map(cls, v: Any) -> Optional[Dict[str, str]]:
        return _string_map(v)

    def to_definition(self) -> StepDefinition:
        if self.run is None and self.uses is not None:
            return ActionStep(reference=self.uses, name=self.name, with_=self.with_, env=self.env)
        return ShellStep(command=self.run, name=self.name, with_=self.with_, env=self.env)


class RawJob(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    runs_on: str = Field(default=DEFAULT_RUNS_ON, alias="runs-on")
    steps: List[RawStep] = Field(default_factory=list)

    @field_validator("runs_on", mode="before")
    @classmethod
    def _coerce_runs_on(cls, v: Any) -> str:
        # `runs-on: [self-hosted, linux]` -> first label
        if isinstance(v, list):
            v = v[0] if v else None
        return _scalar(v) or DEFAULT_RUNS_ON

    @field_validator("steps", mode="before")
    @classmethod
    def _only_mappings(cls, v: Any) -> list:
        if not isinstance(v, list):
            return []
        return [s for s in v if isinstance(s, dict)]

    def to_definition(self) -> JobDefinition:
        return JobDefinition(
            runs_on=self.runs_on,
            steps=[s.to_definition() for s in self.steps],
        )


class RawWorkflow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    jobs: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, v: Any) -> Optional[str]:
        return _scalar(v)

    @field_validator("jobs", mode="before")
    @classmethod
    def _coerce_jobs(cls, v: Any) -> Dict[str, Any]:
        if not isinstance(v, dict):
            return {}
        return {str(k): job for k, job in v.items()}


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------

def parse_workflow(text: str, file_name: str) -> Optional[WorkflowDefinition]:
    """
    Parse one workflow document.

    Returns None when the document is not valid YAML or is not a mapping.
    Jobs and steps that are not mappings are skipped.
    """
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        logger.warning("workflow.parse_failed", extra={"file": file_name, "error": str(e)})
        return None

    if not isinstance(raw, dict):
        return None

    # YAML 1.1 reads a bare `on:` key as the boolean True.
    trigger = raw.get("on", raw.get(True))
    doc_fields = {str(k): v for k, v in raw.items() if isinstance(k, str)}

    try:
        doc = RawWorkflow.model_validate(doc_fields)
        jobs: Dict[str, JobDefinition] = {}
        for job_name, job_value in doc.jobs.items():
            if not isinstance(job_value, dict):
                continue
            jobs[job_name] = RawJob.model_validate(job_value).to_definition()
    except ValidationError as e:
        logger.warning("workflow.invalid", extra={"file": file_name, "error": str(e)})
        return None

    return WorkflowDefinition(
        name=doc.name or file_name,
        file_name=file_name,
        on=trigger,
        jobs=jobs,
    )


def is_workflow_file(path: str) -> bool:
    return path.lower().endswith(WORKFLOW_EXTENSIONS)


def load_definitions(
    source: SourceProvider,
    repo_name: str,
    ref: str = "HEAD",
    directory: str = DEFAULT_WORKFLOW_DIR,
) -> List[WorkflowDefinition]:
    """
    Load every workflow document directly under `directory` at `ref`.

    Files are visited in name order. A file that cannot be read or parsed
    contributes nothing; it never stops the others from loading.
    """
    try:
        paths = source.list_files(repo_name, ref, directory)
    except Exception as e:
        # unknown repo, unknown ref, empty repository, no workflow directory
        logger.info(
            "workflow.listing_unavailable",
            extra={"repo": repo_name, "ref": ref, "error": str(e)},
        )
        return []

    definitions: List[WorkflowDefinition] = []
    for path in sorted(p for p in paths if is_workflow_file(p)):
        file_name = posixpath.basename(path)
        try:
            text = source.read_file(repo_name, ref, path)
            definition = parse_workflow(text, file_name)
        except Exception as e:
            logger.warning(
                "workflow.load_failed",
                extra={"repo": repo_name, "file": file_name, "error": str(e)},
            )
            continue
        if definition is not None:
            definitions.append(definition)

    logger.debug(
        "workflow.loaded",
        extra={"repo": repo_name, "ref": ref, "count": len(definitions)},
    )
    return definitions
