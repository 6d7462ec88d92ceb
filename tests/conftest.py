import os
import shutil
from datetime import datetime, timedelta, timezone

import pytest
from git import Repo

ENV_VARS = (
    "PHASEFLOW_CONFIG",
    "PHASEFLOW_USE_STATE_LOG",
    "PHASEFLOW_FORCE_RESUME",
    "PHASEFLOW_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class FakeClock:
    """Settable UTC clock for time-dependent tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def git_repo(tmp_path):
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    path = tmp_path / "repo"
    path.mkdir()
    repo = Repo.init(path)
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Test User")
        cw.set_value("user", "email", "test@example.com")
        cw.set_value("commit", "gpgsign", "false")
    (path / "README.md").write_text("hello\n")
    repo.git.add("README.md")
    repo.git.commit("-m", "[DEVELOPER] [STEP-001] Initial project skeleton")
    return repo


def snapshot_tree(root) -> dict:
    """Map every working-tree file (outside .git) to its bytes."""
    result = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d != ".git"]
        for name in filenames:
            full = os.path.join(dirpath, name)
            with open(full, "rb") as fh:
                result[os.path.relpath(full, root)] = fh.read()
    return result


@pytest.fixture
def tree_snapshot():
    return snapshot_tree
