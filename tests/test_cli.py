from pathlib import Path

import pytest

from task_agent import cli
from task_agent.models import Session
from task_agent.models import SessionStatus
from task_agent.state import StateStore


@pytest.fixture()
def settings_file(tmp_path: Path) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(
        f"sqlite_path: {tmp_path / 'state.db'}\n"
        f"workspace_root: {tmp_path / 'workspaces'}\n"
        f"bus_dir: {tmp_path / 'bus'}\n",
        encoding="utf-8",
    )
    return path


def _run(settings_file: Path, *args: str) -> int:
    return cli.main(["--settings", str(settings_file), *args])


def test_init_writes_settings(tmp_path, capsys):
    target = tmp_path / "conf" / "settings.yaml"
    assert cli.main(["--settings", str(target), "init"]) == 0
    assert target.exists()
    assert str(target) in capsys.readouterr().out


def test_config_set_and_show(settings_file, capsys):
    assert _run(settings_file, "config", "show") == 0
    assert "No configuration saved" in capsys.readouterr().out

    assert _run(settings_file, "config", "set", "--owner", "acme", "--repo", "widgets", "--github-token", "ghs_x") == 0
    assert "acme/widgets" in capsys.readouterr().out

    assert _run(settings_file, "config", "set", "--base-branch", "develop", "--no-auto-create-pr") == 0
    capsys.readouterr()
    assert _run(settings_file, "config", "show") == 0
    out = capsys.readouterr().out
    assert "base_branch: develop" in out
    assert "auto_create_pr: False" in out
    assert "github_token: ***" in out
    assert "ghs_x" not in out


def test_config_set_rejects_invalid_values(settings_file, capsys):
    code = _run(settings_file, "config", "set", "--owner", "acme", "--repo", "widgets", "--max-minutes", "500")
    assert code == 1
    assert "error:" in capsys.readouterr().err


def test_templates_add_and_list(settings_file, tmp_path, capsys):
    template = tmp_path / "review.md"
    template.write_text("---\ndescription: Review only\n---\nReview {{task_title}}\n", encoding="utf-8")

    assert _run(settings_file, "templates", "add", str(template), "--default") == 0
    capsys.readouterr()
    assert _run(settings_file, "templates", "list") == 0
    out = capsys.readouterr().out
    assert "- review (default): Review only" in out
    assert "- default: " in out


def test_sessions_and_status(settings_file, tmp_path, capsys):
    store = StateStore(tmp_path / "state.db")
    session = Session(task_id="task-9")
    session.transition(SessionStatus.INITIALIZING)
    session.append_log("hello log")
    store.create_session(session)
    store.close()

    assert _run(settings_file, "sessions") == 0
    assert session.id in capsys.readouterr().out

    assert _run(settings_file, "sessions", "--task", "other") == 0
    assert "No sessions" in capsys.readouterr().out

    assert _run(settings_file, "status", session.id) == 0
    out = capsys.readouterr().out
    assert "status=initializing" in out
    assert "hello log" in out

    assert _run(settings_file, "status", "missing") == 1


def test_recover_marks_orphans(settings_file, tmp_path, capsys):
    store = StateStore(tmp_path / "state.db")
    session = Session(task_id="task-9")
    session.transition(SessionStatus.INITIALIZING)
    store.create_session(session)
    store.close()

    assert _run(settings_file, "recover") == 0
    out = capsys.readouterr().out
    assert "Recovered 1 orphaned session(s)" in out

    store = StateStore(tmp_path / "state.db")
    try:
        assert store.load_session(session.id).error_message == "orphaned after restart"
    finally:
        store.close()


def test_launch_without_config_fails(settings_file, capsys):
    assert _run(settings_file, "launch", "--task-id", "t1", "--title", "Demo") == 1
    assert "No session configuration" in capsys.readouterr().err


def test_cleanup(settings_file, capsys):
    assert _run(settings_file, "cleanup", "--days", "7") == 0
    assert "Removed 0 session(s)" in capsys.readouterr().out
