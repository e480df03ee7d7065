from __future__ import annotations

import shutil
import subprocess

import pytest

from repoci.git_facts import git
from repoci.git_facts.git import GitSourceProvider
from repoci.loader import load_definitions


def test_resolve_prefers_plain_directory(tmp_path):
    (tmp_path / "demo").mkdir()
    (tmp_path / "demo.git").mkdir()

    assert GitSourceProvider(tmp_path).resolve("demo") == tmp_path / "demo"


def test_resolve_falls_back_to_bare_repository(tmp_path):
    (tmp_path / "demo.git").mkdir()

    assert GitSourceProvider(tmp_path).resolve("demo") == tmp_path / "demo.git"


def test_resolve_unknown_repository(tmp_path):
    assert GitSourceProvider(tmp_path).resolve("demo") is None


def test_list_files_keeps_direct_blobs(tmp_path, monkeypatch):
    (tmp_path / "demo.git").mkdir()
    seen = {}

    def fake_git(args, cwd=None):
        seen["args"], seen["cwd"] = args, cwd
        return "\0".join([
            "100644 blob 1111111111111111111111111111111111111111\t.github/workflows/ci.yml",
            "040000 tree 2222222222222222222222222222222222222222\t.github/workflows/templates",
            "100644 blob 3333333333333333333333333333333333333333\t.github/workflows/notes.md",
        ]) + "\0"

    monkeypatch.setattr(git, "_git", fake_git)

    files = GitSourceProvider(tmp_path).list_files("demo", "main", ".github/workflows")

    assert files == [".github/workflows/ci.yml", ".github/workflows/notes.md"]
    assert seen["args"] == ["ls-tree", "-z", "main", "--", ".github/workflows/"]
    assert seen["cwd"] == str(tmp_path / "demo.git")


def test_list_files_for_unknown_repository(tmp_path):
    with pytest.raises(FileNotFoundError):
        GitSourceProvider(tmp_path).list_files("demo", "HEAD", ".github/workflows")


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

CI = "name: CI\njobs:\n  test:\n    steps:\n      - run: pytest\n"
DEPLOY = "name: Deploy\njobs:\n  ship:\n    steps:\n      - run: ./deploy.sh\n"


def _commit_repo(path, files):
    subprocess.run(["git", "init", "-q", str(path)], check=True)
    for name, content in files.items():
        target = path / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    subprocess.run(["git", "-C", str(path), "add", "-A"], check=True)
    subprocess.run(
        [
            "git", "-C", str(path),
            "-c", "user.name=repoci", "-c", "user.email=repoci@example.invalid",
            "-c", "commit.gpgsign=false",
            "commit", "-q", "-m", "add workflows",
        ],
        check=True,
    )


FILES = {
    ".github/workflows/ci.yml": CI,
    ".github/workflows/déploy.yml": DEPLOY,
    ".github/workflows/templates/base.yml": CI,
    "README.md": "demo\n",
}


@requires_git
def test_real_repository_lists_unicode_paths_unquoted(tmp_path):
    _commit_repo(tmp_path / "demo", FILES)

    files = GitSourceProvider(tmp_path).list_files("demo", "HEAD", ".github/workflows")

    assert sorted(files) == [".github/workflows/ci.yml", ".github/workflows/déploy.yml"]


@requires_git
def test_real_repository_read_file_keeps_content(tmp_path):
    _commit_repo(tmp_path / "demo", FILES)

    content = GitSourceProvider(tmp_path).read_file("demo", "HEAD", ".github/workflows/déploy.yml")

    assert content == DEPLOY


@requires_git
def test_load_definitions_from_plain_repository(tmp_path):
    _commit_repo(tmp_path / "demo", FILES)

    definitions = load_definitions(GitSourceProvider(tmp_path), "demo")

    assert sorted(d.name for d in definitions) == ["CI", "Deploy"]


@requires_git
def test_load_definitions_from_bare_repository(tmp_path):
    work = tmp_path / "work"
    _commit_repo(work, FILES)
    repos = tmp_path / "repos"
    repos.mkdir()
    subprocess.run(["git", "clone", "-q", "--bare", str(work), str(repos / "demo.git")], check=True)

    source = GitSourceProvider(repos)
    definitions = load_definitions(source, "demo")

    assert source.resolve("demo") == repos / "demo.git"
    assert sorted(d.name for d in definitions) == ["CI", "Deploy"]
    assert source.read_file("demo", "HEAD", ".github/workflows/ci.yml") == CI


@requires_git
def test_load_definitions_at_unknown_ref_is_empty(tmp_path):
    _commit_repo(tmp_path / "demo", FILES)

    assert load_definitions(GitSourceProvider(tmp_path), "demo", ref="no-such-ref") == []
