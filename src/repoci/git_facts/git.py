# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all read-only access to hosted repositories so the
# rest of the engine never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Protocol


class SourceProvider(Protocol):
    """Read-only access to hosted repositories."""

    def resolve(self, repo_name: str) -> Optional[Path]: ...

    def list_files(self, repo_name: str, ref: str, directory: str) -> List[str]: ...

    def read_file(self, repo_name: str, ref: str, path: str) -> str: ...


def _git(args: list[str], cwd: Optional[str] = None, strip: bool = True) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["ls-tree", "HEAD"])
        cwd: Working directory in which to run the git command. For hosted
             repositories this is the repository directory itself, which
             works the same for bare and non-bare repositories.
        strip: Strip surrounding whitespace (off when reading file content).

    Returns:
        Stdout from the git command.

    Raises:
        subprocess.CalledProcessError: git exited non-zero (unknown ref,
            missing path, empty repository, ...).
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        encoding="utf-8",
        stderr=subprocess.PIPE,
    )
    return out.strip() if strip else out


class GitSourceProvider:
    """
    Source provider backed by repositories on the local filesystem.

    Repositories live directly under `repos_root`, either as `<name>` or as a
    bare `<name>.git` directory.
    """

    def __init__(self, repos_root: str | Path):
        self.repos_root = Path(repos_root)

    def resolve(self, repo_name: str) -> Optional[Path]:
        """
        Return the on-disk location of a repository, or None.

        The plain directory name wins over the `.git` suffixed one.
        """
        path = self.repos_root / repo_name
        if path.is_dir():
            return path
        bare = self.repos_root / f"{repo_name}.git"
        if bare.is_dir():
            return bare
        return None

    def _require(self, repo_name: str) -> Path:
        path = self.resolve(repo_name)
        if path is None:
            raise FileNotFoundError(f"Repository not found: {repo_name}")
        return path

    def list_files(self, repo_name: str, ref: str, directory: str) -> List[str]:
        """
        List the blobs directly under `directory` at `ref` (non-recursive).

        Returns paths relative to the repository root, e.g.
        ".github/workflows/ci.yml".
        """
        root = self._require(repo_name)
        # `git ls-tree -z <ref> -- <dir>/` prints one "<mode> <type> <sha>\t<path>"
        # record per direct child, NUL-terminated with the path unquoted;
        # sub-trees show up with type "tree".
        out = _git(["ls-tree", "-z", ref, "--", directory.rstrip("/") + "/"], cwd=str(root))

        files: List[str] = []
        for record in out.split("\0"):
            if not record:
                continue
            meta, _, path = record.partition("\t")
            parts = meta.split()
            if len(parts) >= 2 and parts[1] == "blob":
                files.append(path)
        return files

    def read_file(self, repo_name: str, ref: str, path: str) -> str:
        """Return the content of `path` at `ref`."""
        root = self._require(repo_name)
        return _git(["show", f"{ref}:{path}"], cwd=str(root), strip=False)
