from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

DEFAULT_DATABASE_URL = "sqlite:///repoci.db"
DEFAULT_REPOS_ROOT = "/repos"
DEFAULT_WORKFLOW_DIR = ".github/workflows"
DEFAULT_POLL_INTERVAL = 5.0
# Matches the lifetime of the job container (`sleep 3600`).
DEFAULT_STEP_TIMEOUT = 3600.0


@dataclass(frozen=True)
class JobLimits:
    """Container constants applied to every job."""
    memory_bytes: int = 512 * 1024 * 1024
    cpus: float = 1.0
    workdir: str = "/workspace"
    mount_target: str = "/repo"
    stop_grace_seconds: int = 5
    bootstrap_command: str = "git clone /repo /workspace 2>&1 || true"


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    repos_root: str = DEFAULT_REPOS_ROOT
    workflow_dir: str = DEFAULT_WORKFLOW_DIR
    poll_interval: float = DEFAULT_POLL_INTERVAL
    step_timeout: Optional[float] = DEFAULT_STEP_TIMEOUT
    docker: str = "docker"
    limits: JobLimits = field(default_factory=JobLimits)


def _timeout(raw: str) -> Optional[float]:
    value = float(raw)
    return value if value > 0 else None


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Read settings from REPOCI_* environment variables."""
    env = os.environ if environ is None else environ
    return Settings(
        database_url=env.get("REPOCI_DATABASE_URL", DEFAULT_DATABASE_URL),
        repos_root=env.get("REPOCI_REPOS_ROOT", DEFAULT_REPOS_ROOT),
        workflow_dir=env.get("REPOCI_WORKFLOW_DIR", DEFAULT_WORKFLOW_DIR),
        poll_interval=float(env.get("REPOCI_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)),
        step_timeout=_timeout(env.get("REPOCI_STEP_TIMEOUT", str(DEFAULT_STEP_TIMEOUT))),
        docker=env.get("REPOCI_DOCKER", "docker"),
    )
