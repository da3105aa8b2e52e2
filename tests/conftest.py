import subprocess
from pathlib import Path

import pytest

from task_agent.models import SessionConfig
from task_agent.models import TaskSnapshot
from task_agent.state import StateStore


def _git(*args: str, cwd: Path) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture()
def state_store(tmp_path: Path) -> StateStore:
    db_path = tmp_path / "state.db"
    store = StateStore(db_path)
    yield store
    store.close()


@pytest.fixture()
def git_remote(tmp_path: Path) -> Path:
    """Bare repository with a ``main`` branch, usable as a clone URL."""

    seed = tmp_path / "seed"
    seed.mkdir()
    _git("init", cwd=seed)
    _git("checkout", "-b", "main", cwd=seed)
    _git("config", "user.name", "tester", cwd=seed)
    _git("config", "user.email", "tester@example.com", cwd=seed)
    (seed / "README.md").write_text("demo", encoding="utf-8")
    _git("add", "README.md", cwd=seed)
    _git("commit", "-m", "init", cwd=seed)

    remote = tmp_path / "remote.git"
    _git("init", "--bare", str(remote), cwd=tmp_path)
    _git("symbolic-ref", "HEAD", "refs/heads/main", cwd=remote)
    _git("push", str(remote), "main:main", cwd=seed)
    return remote


@pytest.fixture()
def session_config(git_remote: Path) -> SessionConfig:
    return SessionConfig(repo_owner="acme", repo_name="widgets", clone_url=str(git_remote))


@pytest.fixture()
def task() -> TaskSnapshot:
    return TaskSnapshot(
        id="a1b2c3d4-0000-4000-8000-000000000001",
        title="Add login page",
        description="Build the login form and wire it to the auth API.",
        priority="High",
        estimated_hours=3,
        tags=("frontend", "auth"),
        goal_title="Launch v1",
    )


@pytest.fixture(autouse=True)
def _clear_settings_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASK_AGENT_SETTINGS", raising=False)
