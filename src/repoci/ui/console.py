"""Console output formatting utilities for repoci."""

from __future__ import annotations

import logging
import sys
from typing import Iterable, Optional

from ..model import Run, WorkflowDefinition

# Attributes every LogRecord has; anything else came in through `extra=`.
_RECORD_FIELDS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class KeyValueFormatter(logging.Formatter):
    """Plain-text formatter that appends `extra` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {k: v for k, v in vars(record).items() if k not in _RECORD_FIELDS}
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        return line


def configure_logging(debug: bool = False) -> None:
    """Install the key=value formatter on the root logger (no-op if already configured)."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(KeyValueFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, handlers=[handler])


def _ts(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_scheduler_started(self, database: str, repos_root: str, poll_interval: float) -> None:
        print("\nSCHEDULER STARTED")
        print(f"Database: {database}")
        print(f"Repositories: {repos_root}")
        print(f"Polling every: {poll_interval:g}s")
        print()

    def print_workflows(self, repo_name: str, definitions: Iterable[WorkflowDefinition]) -> None:
        definitions = list(definitions)
        self.print_header(f"WORKFLOWS: {repo_name} ({len(definitions)})")
        for d in definitions:
            print(f"{d.name} [{d.file_name}]")
            for job_name, job_def in d.jobs.items():
                print(f"  {job_name} (runs-on: {job_def.runs_on}, steps: {len(job_def.steps)})")

    def print_runs(self, runs: Iterable[Run]) -> None:
        """Print one line per run."""
        runs = list(runs)
        if not runs:
            print("No runs.")
            return
        for run in runs:
            print(
                f"#{run.id} {run.status.value.upper():<12} {run.workflow_name} "
                f"({run.branch} @ {run.commit_sha[:7]}) by {run.triggered_by} {_ts(run.created_at)}"
            )

    def print_run(self, run: Run, show_output: bool = False) -> None:
        """Print a run with its jobs and steps."""
        self.print_header(f"RUN #{run.id}: {run.workflow_name}")
        print(f"Repository: {run.repo_name}")
        print(f"Commit: {run.commit_sha} ({run.branch})")
        print(f"Message: {run.commit_message}")
        print(f"Triggered by: {run.triggered_by}")
        print(f"Status: {run.status.value}")
        print(f"Created: {_ts(run.created_at)}  Started: {_ts(run.started_at)}  Completed: {_ts(run.completed_at)}")
        for job in run.jobs:
            print(f"\nJOB: {job.name} [{job.runs_on}] {job.status.value}")
            for step in job.steps:
                print(f"  STEP: {step.name} {step.status.value}")
                if show_output and step.output:
                    for line in step.output.rstrip().splitlines():
                        print(f"    | {line}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
