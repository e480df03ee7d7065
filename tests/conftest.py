from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure `import repoci` works when running `pytest` from repo root without installing.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from repoci.materializer import TriggerContext  # noqa: E402
from repoci.store import SqlRunStore  # noqa: E402

from fakes import FakeRuntime, MemorySource  # noqa: E402


@pytest.fixture
def store(tmp_path):
    s = SqlRunStore(f"sqlite:///{tmp_path}/repoci.db")
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def source():
    return MemorySource()


@pytest.fixture
def trigger():
    return TriggerContext(
        branch="main",
        commit_sha="0123456789abcdef",
        commit_message="Add CI",
        triggered_by="alice",
    )
