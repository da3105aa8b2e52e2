import os
import sys
import threading
import time
from datetime import timedelta
from pathlib import Path

import pytest
from prometheus_client import REGISTRY

from task_agent.errors import ConcurrentSessionExists
from task_agent.errors import ConfigMissing
from task_agent.errors import PublishError
from task_agent.errors import SessionNotFound
from task_agent.errors import StoreError
from task_agent.local_bus import LocalBus
from task_agent.models import PromptTemplate
from task_agent.models import Session
from task_agent.models import SessionStatus
from task_agent.models import TaskSnapshot
from task_agent.orchestrator import ORPHANED_REASON
from task_agent.orchestrator import SessionEntry
from task_agent.orchestrator import SessionOrchestrator
from task_agent.orchestrator import SessionRegistry
from task_agent.publisher import parse_pr_url
from task_agent.supervisor import ProcessSupervisor
from task_agent.workspace import WorkspaceManager

SLEEPER = "import os, time\nprint(os.getpid(), flush=True)\ntime.sleep(60)"


class FakePublisher:
    def __init__(self, url: str = "https://repo/pull/42", error: Exception | None = None) -> None:
        self.url = url
        self.error = error
        self.calls: list[dict] = []

    def publish(self, workdir, *, branch, base_branch, title, body, token=None):
        self.calls.append(
            {"workdir": Path(workdir), "branch": branch, "base_branch": base_branch, "title": title, "body": body}
        )
        if self.error is not None:
            raise self.error
        return parse_pr_url(self.url)


@pytest.fixture()
def bus(tmp_path: Path) -> LocalBus:
    return LocalBus(tmp_path / "bus")


@pytest.fixture()
def make_orchestrator(tmp_path, state_store, bus):
    created: list[SessionOrchestrator] = []

    def _make(script: str = "print('done')", *, publisher=None, command=None, recover_orphans=True):
        orchestrator = SessionOrchestrator(
            store=state_store,
            workspaces=WorkspaceManager(tmp_path / "workspaces"),
            supervisor=ProcessSupervisor(kill_grace_seconds=1.0),
            publisher=publisher or FakePublisher(),
            bus=bus,
            agent_command=command or [sys.executable, "-c", script],
            log_flush_lines=1,
            max_workers=4,
            recover_orphans=recover_orphans,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.shutdown()


@pytest.fixture()
def configured(state_store, session_config):
    state_store.save_config(session_config)
    return session_config


def _wait_for(predicate, timeout: float = 30.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.05)
    raise AssertionError("condition not met in time")


def _pid_from_log(session: Session) -> int:
    for line in session.log:
        if line.isdigit():
            return int(line)
    raise AssertionError("agent pid not logged")


def _pid_gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


def test_successful_session_opens_pr(make_orchestrator, configured, task, state_store, bus):
    publisher = FakePublisher()
    orchestrator = make_orchestrator("print('step 1')\nprint('step 2')", publisher=publisher)

    session_id = orchestrator.launch(task)
    session = orchestrator.wait(session_id, timeout=60)

    assert session.status is SessionStatus.COMPLETED
    assert session.pr_url == "https://repo/pull/42"
    assert session.pr_number == 42
    assert session.error_message is None
    assert session.branch_name == "claude/a1b2c3d4-add-login-page"
    assert session.completed_at is not None
    assert session.log.index("step 1") < session.log.index("step 2")

    call = publisher.calls[0]
    assert call["branch"] == session.branch_name
    assert call["base_branch"] == "main"
    assert call["title"] == "Add login page"
    assert call["workdir"] == Path(session.workspace_path)

    stored = state_store.load_session(session_id)
    assert stored.status is SessionStatus.COMPLETED
    assert stored.log == session.log
    assert orchestrator.list_active() == []

    intents = [entry for entry in bus.read_intents()[0] if entry["session_id"] == session_id]
    assert [entry["session_status"] for entry in intents] == [
        "initializing",
        "working",
        "creating_pr",
        "completed",
    ]
    assert intents[1]["task_status"] == "in_progress"
    assert intents[-1]["task_status"] == "review"
    assert intents[-1]["pr_url"] == "https://repo/pull/42"


def test_agent_receives_prompt_and_environment(make_orchestrator, configured, task):
    script = (
        "import os, sys\n"
        "print(open(sys.argv[1]).read())\n"
        "print('BRANCH=' + os.environ['TASK_AGENT_BRANCH'])\n"
        "print('CWD=' + os.getcwd())\n"
    )
    command = [sys.executable, "-c", script, "{prompt_file}", "{instructions_file}", "{model}"]
    orchestrator = make_orchestrator(command=command)

    session = orchestrator.wait(orchestrator.launch(task), timeout=60)
    assert session.status is SessionStatus.COMPLETED
    assert "Task Title: Add login page" in session.log
    assert "- Tags: frontend, auth" in session.log
    assert "BRANCH=claude/a1b2c3d4-add-login-page" in session.log
    cwd_line = next(line for line in session.log if line.startswith("CWD="))
    assert os.path.realpath(cwd_line[4:]) == os.path.realpath(session.workspace_path)
    # prompt files live outside the clone
    assert not (Path(session.workspace_path) / "task_prompt.md").exists()


def test_nonzero_exit_fails_session(make_orchestrator, configured, task):
    publisher = FakePublisher()
    orchestrator = make_orchestrator("import sys\nprint('boom', flush=True)\nsys.exit(1)", publisher=publisher)

    session = orchestrator.wait(orchestrator.launch(task), timeout=60)
    assert session.status is SessionStatus.FAILED
    assert "1" in session.error_message
    assert session.error_message == "Agent exited with code 1"
    assert "boom" in session.log
    assert session.log[-1].endswith("ERROR: Agent exited with code 1")
    assert publisher.calls == []


def test_cancel_while_working(make_orchestrator, configured, task, state_store):
    orchestrator = make_orchestrator(SLEEPER)
    session_id = orchestrator.launch(task)
    _wait_for(
        lambda: orchestrator.get_status(session_id).status is SessionStatus.WORKING
        and any(line.isdigit() for line in orchestrator.get_status(session_id).log)
    )
    pid = _pid_from_log(orchestrator.get_status(session_id))

    begin = time.monotonic()
    orchestrator.cancel(session_id)
    session = orchestrator.wait(session_id, timeout=30)
    assert time.monotonic() - begin < 15
    assert session.status is SessionStatus.CANCELLED
    assert session.error_message == "Session cancelled by user"
    assert _pid_gone(pid)
    assert state_store.load_session(session_id).status is SessionStatus.CANCELLED

    # cancelling a terminal session is a no-op
    orchestrator.cancel(session_id)
    assert orchestrator.get_status(session_id).status is SessionStatus.CANCELLED
    assert orchestrator.get_status(session_id).completed_at == session.completed_at


def test_timeout_fails_session_and_kills_process(make_orchestrator, state_store, session_config, task):
    state_store.save_config(session_config.model_copy(update={"max_session_duration_minutes": 0.02}))
    orchestrator = make_orchestrator(SLEEPER)

    session = orchestrator.wait(orchestrator.launch(task), timeout=60)
    assert session.status is SessionStatus.FAILED
    assert session.error_message.startswith("Agent timed out")
    assert _pid_gone(_pid_from_log(session))


def test_orphaned_session_failed_on_startup(make_orchestrator, configured, state_store):
    orphan = Session(task_id="task-orphan")
    orphan.transition(SessionStatus.INITIALIZING)
    orphan.transition(SessionStatus.WORKING)
    state_store.create_session(orphan)
    finished = Session(task_id="task-done")
    finished.cancel()
    state_store.save_session(finished)

    orchestrator = make_orchestrator()
    session = orchestrator.get_status(orphan.id)
    assert session.status is SessionStatus.FAILED
    assert session.error_message == ORPHANED_REASON
    assert state_store.load_session(orphan.id).status is SessionStatus.FAILED
    assert state_store.list_active() == []
    assert orchestrator.get_status(finished.id).status is SessionStatus.CANCELLED
    assert orchestrator.rehydrate() == []


def test_pending_session_failed_on_startup(make_orchestrator, state_store):
    pending = Session(task_id="t-pending")
    state_store.create_session(pending)

    orchestrator = make_orchestrator()
    session = orchestrator.get_status(pending.id)
    assert session.status is SessionStatus.FAILED
    assert session.error_message == ORPHANED_REASON
    assert state_store.load_session(pending.id).status is SessionStatus.FAILED


def test_list_active_includes_sessions_owned_elsewhere(make_orchestrator, state_store):
    foreign = Session(task_id="task-foreign")
    foreign.transition(SessionStatus.INITIALIZING)
    state_store.create_session(foreign)

    orchestrator = make_orchestrator(recover_orphans=False)
    assert [session.id for session in orchestrator.list_active()] == [foreign.id]

    # shutdown leaves sessions it does not own alone
    orchestrator.shutdown()
    assert state_store.load_session(foreign.id).status is SessionStatus.INITIALIZING


def test_second_launch_for_same_task_rejected(make_orchestrator, configured, task, state_store):
    orchestrator = make_orchestrator(SLEEPER)
    first = orchestrator.launch(task)

    with pytest.raises(ConcurrentSessionExists):
        orchestrator.launch(task)
    assert [session.id for session in orchestrator.list_for_task(task.id)] == [first]

    orchestrator.cancel(first)
    orchestrator.wait(first, timeout=30)
    second = orchestrator.launch(task)
    assert second != first
    assert len(state_store.list_sessions_for_task(task.id)) == 2


def test_concurrent_launches_only_one_wins(make_orchestrator, configured, task, state_store):
    orchestrator = make_orchestrator(SLEEPER)
    barrier = threading.Barrier(8)
    winners: list[str] = []
    rejected: list[Exception] = []
    lock = threading.Lock()

    def _attempt():
        barrier.wait()
        try:
            session_id = orchestrator.launch(task)
        except ConcurrentSessionExists as exc:
            with lock:
                rejected.append(exc)
        else:
            with lock:
                winners.append(session_id)

    threads = [threading.Thread(target=_attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(winners) == 1
    assert len(rejected) == 7
    assert len(state_store.list_sessions_for_task(task.id)) == 1


def test_concurrent_launch_across_orchestrators(make_orchestrator, configured, task, state_store):
    first = make_orchestrator(SLEEPER)
    second = make_orchestrator(SLEEPER, recover_orphans=False)
    session_id = first.launch(task)

    with pytest.raises(ConcurrentSessionExists):
        second.launch(task)
    assert [session.id for session in state_store.list_sessions_for_task(task.id)] == [session_id]


def test_launch_without_config(make_orchestrator, task, state_store):
    orchestrator = make_orchestrator()
    before = REGISTRY.get_sample_value("task_agent_sessions_rejected_total", {"reason": "config_missing"}) or 0
    with pytest.raises(ConfigMissing):
        orchestrator.launch(task)
    after = REGISTRY.get_sample_value("task_agent_sessions_rejected_total", {"reason": "config_missing"})
    assert after == before + 1
    assert state_store.list_sessions() == []


def test_cancel_unknown_session(make_orchestrator):
    orchestrator = make_orchestrator()
    with pytest.raises(SessionNotFound):
        orchestrator.cancel("does-not-exist")
    assert orchestrator.get_status("does-not-exist") is None


def test_publish_error_is_preserved(make_orchestrator, configured, task):
    publisher = FakePublisher(error=PublishError("remote: Permission to acme/widgets.git denied"))
    orchestrator = make_orchestrator(publisher=publisher)

    session = orchestrator.wait(orchestrator.launch(task), timeout=60)
    assert session.status is SessionStatus.FAILED
    assert session.error_message == "remote: Permission to acme/widgets.git denied"
    assert session.pr_url is None


def test_auto_create_pr_disabled(make_orchestrator, state_store, session_config, task, bus):
    state_store.save_config(session_config.model_copy(update={"auto_create_pr": False}))
    publisher = FakePublisher()
    orchestrator = make_orchestrator(publisher=publisher)

    session_id = orchestrator.launch(task)
    session = orchestrator.wait(session_id, timeout=60)
    assert session.status is SessionStatus.COMPLETED
    assert session.pr_url is None
    assert publisher.calls == []
    assert any("auto-create-PR disabled" in line for line in session.log)
    statuses = [entry["session_status"] for entry in bus.read_intents()[0] if entry["session_id"] == session_id]
    assert "creating_pr" in statuses


def test_template_errors_fail_session(make_orchestrator, configured, task, state_store):
    state_store.save_template(PromptTemplate.create("broken", "Work on {{task_title}} for {{customer}}"))
    orchestrator = make_orchestrator()

    session = orchestrator.wait(orchestrator.launch(task, template_name="broken"), timeout=60)
    assert session.status is SessionStatus.FAILED
    assert "customer" in session.error_message

    other = TaskSnapshot(id="b2c3d4e5-0000", title="Other task")
    session = orchestrator.wait(orchestrator.launch(other, template_name="missing"), timeout=60)
    assert session.status is SessionStatus.FAILED
    assert "Unknown prompt template 'missing'" in session.error_message


def test_workspace_failure_fails_only_that_session(make_orchestrator, state_store, session_config, task, tmp_path):
    state_store.save_config(session_config.model_copy(update={"clone_url": str(tmp_path / "missing.git")}))
    orchestrator = make_orchestrator()

    session = orchestrator.wait(orchestrator.launch(task), timeout=60)
    assert session.status is SessionStatus.FAILED
    assert "git clone failed" in session.error_message
    assert orchestrator.workspaces.in_use() == set()


def test_missing_agent_executable(make_orchestrator, configured, task, tmp_path):
    orchestrator = make_orchestrator(command=[str(tmp_path / "no-agent"), "{prompt_file}"])
    session = orchestrator.wait(orchestrator.launch(task), timeout=60)
    assert session.status is SessionStatus.FAILED
    assert "Agent executable not found" in session.error_message


def test_store_failures_are_queued_for_resync(make_orchestrator, configured, task, state_store, monkeypatch):
    orchestrator = make_orchestrator()
    real_save = state_store.save_session

    def _broken(session):
        raise StoreError("disk I/O error")

    monkeypatch.setattr(state_store, "save_session", _broken)
    session_id = orchestrator.launch(task)
    session = orchestrator.wait(session_id, timeout=60)
    assert session.status is SessionStatus.COMPLETED
    assert orchestrator.pending_sync() == {session_id}
    assert state_store.load_session(session_id).status is SessionStatus.INITIALIZING

    monkeypatch.setattr(state_store, "save_session", real_save)
    orchestrator.flush_pending()
    assert orchestrator.pending_sync() == set()
    stored = state_store.load_session(session_id)
    assert stored.status is SessionStatus.COMPLETED
    assert stored.log == session.log


def test_store_failure_on_create_propagates(make_orchestrator, configured, task, state_store, monkeypatch):
    orchestrator = make_orchestrator()

    def _broken(session):
        raise StoreError("database is locked")

    monkeypatch.setattr(state_store, "create_session", _broken)
    with pytest.raises(StoreError):
        orchestrator.launch(task)
    assert orchestrator.list_active() == []
    assert len(orchestrator.registry) == 0


def test_cleanup_old_sessions(make_orchestrator, configured, task, state_store):
    orchestrator = make_orchestrator()
    finished = orchestrator.wait(orchestrator.launch(task), timeout=60)
    assert finished.is_terminal

    assert orchestrator.cleanup_old_sessions(timedelta(days=1)) == 0
    time.sleep(0.01)
    assert orchestrator.cleanup_old_sessions(timedelta(0)) == 1
    assert orchestrator.get_status(finished.id) is None
    assert state_store.list_sessions_for_task(task.id) == []


def test_shutdown_cancels_running_sessions(make_orchestrator, configured, task, state_store):
    orchestrator = make_orchestrator(SLEEPER)
    session_id = orchestrator.launch(task)
    _wait_for(lambda: orchestrator.get_status(session_id).status is SessionStatus.WORKING)

    orchestrator.shutdown()
    assert state_store.load_session(session_id).status is SessionStatus.CANCELLED
    assert orchestrator.supervisor.running() == []


def test_registry_reserve_is_exclusive_per_task():
    registry = SessionRegistry()
    first = SessionEntry(session=Session(task_id="t1"))
    registry.reserve(first)
    with pytest.raises(ConcurrentSessionExists):
        registry.reserve(SessionEntry(session=Session(task_id="t1")))
    registry.reserve(SessionEntry(session=Session(task_id="t2")))
    assert len(registry) == 2

    registry.release_task(first)
    registry.reserve(SessionEntry(session=Session(task_id="t1")))
    assert len(registry.for_task("t1")) == 2
