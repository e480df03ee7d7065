# containers.py
from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------

@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - log records
      - debugging without full tracebacks
    """
    kind: str
    message: str
    details: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ContainerError(CIError):
    """A container runtime call failed."""


class BackendUnavailable(ContainerError):
    """The container runtime cannot be reached at all."""


class ExecTimeout(ContainerError):
    """A command inside a container ran past its timeout."""


# ---------------------------------------------------------------------
# Runtime interface
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Mount:
    source: str
    target: str
    read_only: bool = True


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str


class ContainerRuntime(Protocol):
    def ping(self) -> None: ...

    def pull_image(self, image: str) -> None: ...

    def create_container(
        self,
        image: str,
        memory_bytes: int,
        cpus: float,
        mounts: Sequence[Mount],
        workdir: str,
    ) -> str: ...

    def start(self, container_id: str) -> None: ...

    def exec(self, container_id: str, argv: Sequence[str], timeout: Optional[float] = None) -> ExecResult: ...

    def stop(self, container_id: str, grace_seconds: int) -> None: ...

    def remove(self, container_id: str, force: bool = True) -> None: ...


def combine_output(stdout: str, stderr: str) -> str:
    return stdout + (f"\nSTDERR:\n{stderr}" if stderr else "")


# ---------------------------------------------------------------------
# docker CLI implementation
# ---------------------------------------------------------------------

# Keeps the job container alive while steps are exec'd into it.
KEEPALIVE_COMMAND = ["sleep", "3600"]


class DockerCLIRuntime:
    """Container runtime driving the `docker` CLI through subprocess."""

    def __init__(self, docker: str = "docker", call_timeout: float = 1800.0):
        self.docker = docker
        self.call_timeout = call_timeout

    def _run(
        self,
        args: List[str],
        kind: str,
        *,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        cmd = [self.docker, *args]
        logger.debug("docker.call", extra={"argv": cmd})
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.call_timeout,
            )
        except FileNotFoundError:
            raise BackendUnavailable(
                kind="docker_unavailable",
                message=f"docker CLI not found: {self.docker}",
                details={"hint": "Install Docker and ensure the daemon is running."},
            )
        except subprocess.TimeoutExpired:
            raise ContainerError(
                kind=f"{kind}_timeout",
                message=f"docker {args[0]} did not finish in time",
            )
        if proc.returncode != 0:
            raise ContainerError(
                kind=f"{kind}_failed",
                message=f"docker {args[0]} exited with {proc.returncode}",
                details={"stderr": proc.stderr.strip()[-2000:]},
            )
        return proc

    def ping(self) -> None:
        if shutil.which(self.docker) is None:
            raise BackendUnavailable(
                kind="docker_unavailable",
                message=f"docker CLI not found: {self.docker}",
                details={"hint": "Install Docker and ensure the daemon is running."},
            )
        try:
            self._run(["info"], "docker_info", timeout=10)
        except ContainerError as e:
            raise BackendUnavailable(
                kind="docker_unavailable",
                message="docker daemon is not reachable",
                details=e.details,
            ) from e

    def pull_image(self, image: str) -> None:
        self._run(["pull", image], "image_pull")

    def create_container(
        self,
        image: str,
        memory_bytes: int,
        cpus: float,
        mounts: Sequence[Mount],
        workdir: str,
    ) -> str:
        args = ["create", "--memory", str(memory_bytes), "--cpus", f"{cpus:g}", "-w", workdir]
        for m in mounts:
            spec = f"{m.source}:{m.target}"
            if m.read_only:
                spec += ":ro"
            args.extend(["-v", spec])
        args.append(image)
        args.extend(KEEPALIVE_COMMAND)
        proc = self._run(args, "container_create")
        return proc.stdout.strip()

    def start(self, container_id: str) -> None:
        self._run(["start", container_id], "container_start")

    def exec(self, container_id: str, argv: Sequence[str], timeout: Optional[float] = None) -> ExecResult:
        cmd = [self.docker, "exec", container_id, *argv]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError:
            raise BackendUnavailable(
                kind="docker_unavailable",
                message=f"docker CLI not found: {self.docker}",
            )
        except subprocess.TimeoutExpired:
            raise ExecTimeout(
                kind="exec_timeout",
                message=f"command did not finish within {timeout:g} seconds",
                details={"container": container_id},
            )
        return ExecResult(exit_code=proc.returncode, output=combine_output(proc.stdout, proc.stderr))

    def stop(self, container_id: str, grace_seconds: int) -> None:
        self._run(["stop", "-t", str(grace_seconds), container_id], "container_stop")

    def remove(self, container_id: str, force: bool = True) -> None:
        args = ["rm"]
        if force:
            args.append("-f")
        args.append(container_id)
        self._run(args, "container_remove")
