"""Session orchestrator: state machine, active-session registry and composition."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Mapping
from typing import Sequence

from . import metrics
from .config import ConfigProvider
from .errors import ConcurrentSessionExists
from .errors import ProcessLaunchError
from .errors import PublishError
from .errors import SessionNotFound
from .errors import StoreError
from .errors import TaskAgentError
from .errors import TemplateError
from .local_bus import LocalBus
from .local_bus import StatusIntent
from .local_bus import TASK_STATUS_FOR_SESSION
from .models import PromptTemplate
from .models import Session
from .models import SessionConfig
from .models import SessionStatus
from .models import TaskSnapshot
from .models import utcnow
from .prompts import PromptRenderer
from .publisher import PRPublisher
from .state import StateStore
from .supervisor import OutcomeKind
from .supervisor import ProcessOutcome
from .supervisor import ProcessSupervisor
from .supervisor import SupervisedProcess
from .workspace import WorkspaceInfo
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

ORPHANED_REASON = "orphaned after restart"
CANCELLED_REASON = "Session cancelled by user"
DEFAULT_AGENT_COMMAND = (
    "claude",
    "code",
    "--file",
    "{prompt_file}",
    "--instructions",
    "{instructions_file}",
)


@dataclass
class SessionEntry:
    """In-memory state for one session; ``lock`` serialises its transitions."""

    session: Session
    task: TaskSnapshot | None = None
    lock: threading.RLock = field(default_factory=threading.RLock)
    done: threading.Event = field(default_factory=threading.Event)
    workspace: WorkspaceInfo | None = None
    process: SupervisedProcess | None = None
    setup_running: bool = False
    finished: bool = False
    tracked: bool = True
    reason: str = ""
    unsaved_lines: int = 0


class SessionRegistry:
    """Sessions known to one orchestrator, indexed by id and by active task."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, SessionEntry] = {}
        self._active_by_task: dict[str, str] = {}

    def reserve(self, entry: SessionEntry) -> None:
        task_id = entry.session.task_id
        with self._lock:
            holder = self._active_by_task.get(task_id)
            if holder is not None:
                raise ConcurrentSessionExists(task_id, holder)
            self._active_by_task[task_id] = entry.session.id
            self._entries[entry.session.id] = entry

    def add(self, entry: SessionEntry) -> None:
        with self._lock:
            self._entries[entry.session.id] = entry

    def get(self, session_id: str) -> SessionEntry | None:
        with self._lock:
            return self._entries.get(session_id)

    def release_task(self, entry: SessionEntry) -> None:
        with self._lock:
            if self._active_by_task.get(entry.session.task_id) == entry.session.id:
                del self._active_by_task[entry.session.task_id]

    def discard(self, entry: SessionEntry) -> None:
        self.release_task(entry)
        with self._lock:
            self._entries.pop(entry.session.id, None)

    def entries(self) -> list[SessionEntry]:
        with self._lock:
            return list(self._entries.values())

    def for_task(self, task_id: str) -> list[SessionEntry]:
        with self._lock:
            return [entry for entry in self._entries.values() if entry.session.task_id == task_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SessionOrchestrator:
    """Launches, supervises and records agent sessions for tasks."""

    def __init__(
        self,
        *,
        store: StateStore,
        workspaces: WorkspaceManager,
        supervisor: ProcessSupervisor,
        publisher: PRPublisher,
        config_provider: ConfigProvider | None = None,
        renderer: PromptRenderer | None = None,
        bus: LocalBus | None = None,
        registry: SessionRegistry | None = None,
        agent_command: Sequence[str] = DEFAULT_AGENT_COMMAND,
        agent_env: Mapping[str, str] | None = None,
        prompt_root: Path | None = None,
        log_flush_lines: int = 50,
        max_workers: int = 8,
        recover_orphans: bool = True,
    ) -> None:
        self.store = store
        self.workspaces = workspaces
        self.supervisor = supervisor
        self.publisher = publisher
        self.config_provider = config_provider or ConfigProvider(store)
        self.renderer = renderer or PromptRenderer()
        self.bus = bus
        self.registry = registry or SessionRegistry()
        self.agent_command = list(agent_command)
        self.agent_env = dict(agent_env or {})
        self.prompt_root = Path(prompt_root) if prompt_root else Path(workspaces.workspace_root) / ".prompts"
        self.log_flush_lines = max(1, log_flush_lines)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="session-setup")
        self._dirty_lock = threading.Lock()
        self._dirty: set[str] = set()
        if recover_orphans:
            self.rehydrate()

    # Public operations --------------------------------------------------
    def launch(self, task: TaskSnapshot, *, template_name: str | None = None) -> str:
        """Create an Initializing session for ``task`` and start it in the background."""

        try:
            config = self.config_provider.get()
        except TaskAgentError as exc:
            metrics.record_rejection(exc.kind)
            raise
        self.flush_pending()

        session = Session(task_id=task.id)
        session.append_log(f"Launching agent session for task {task.id}: {task.title}")
        session.transition(SessionStatus.INITIALIZING)
        session.append_log(f"Status: {SessionStatus.INITIALIZING.value}")
        entry = SessionEntry(session=session, task=task, setup_running=True)

        try:
            self.registry.reserve(entry)
        except ConcurrentSessionExists:
            metrics.record_rejection(ConcurrentSessionExists.kind)
            raise
        try:
            self.store.create_session(session)
        except ConcurrentSessionExists:
            self.registry.discard(entry)
            metrics.record_rejection(ConcurrentSessionExists.kind)
            raise
        except StoreError:
            self.registry.discard(entry)
            metrics.record_rejection(StoreError.kind)
            raise

        metrics.record_launch()
        logger.info("Launched session %s for task %s", session.id, task.id)
        self._emit(session)
        self._executor.submit(self._run_setup, entry, config, template_name)
        return session.id

    def cancel(self, session_id: str) -> None:
        """Cancel a session; a terminal session is left untouched."""

        entry = self.registry.get(session_id)
        if entry is None:
            self._cancel_unowned(session_id)
            return
        with entry.lock:
            if entry.session.is_terminal:
                return
            handle = entry.process
            self._end(entry, SessionStatus.CANCELLED, CANCELLED_REASON, reason="cancelled")
        if handle is not None:
            self.supervisor.cancel(session_id)
        logger.info("Cancelled session %s", session_id)

    def get_status(self, session_id: str) -> Session | None:
        entry = self.registry.get(session_id)
        if entry is not None:
            with entry.lock:
                return entry.session.snapshot()
        return self.store.load_session(session_id)

    def list_active(self) -> list[Session]:
        sessions = {session.id: session for session in self.store.list_active()}
        for entry in self.registry.entries():
            with entry.lock:
                sessions[entry.session.id] = entry.session.snapshot()
        active = (session for session in sessions.values() if not session.is_terminal)
        return sorted(active, key=lambda item: item.started_at)

    def list_for_task(self, task_id: str) -> list[Session]:
        sessions = {session.id: session for session in self.store.list_sessions_for_task(task_id)}
        for entry in self.registry.for_task(task_id):
            with entry.lock:
                sessions[entry.session.id] = entry.session.snapshot()
        return sorted(sessions.values(), key=lambda item: item.started_at)

    def wait(self, session_id: str, timeout: float | None = None) -> Session:
        """Block until the session is terminal (or ``timeout`` elapses) and return it."""

        entry = self.registry.get(session_id)
        if entry is None:
            stored = self.store.load_session(session_id)
            if stored is None:
                raise SessionNotFound(session_id)
            return stored
        entry.done.wait(timeout)
        with entry.lock:
            return entry.session.snapshot()

    def rehydrate(self) -> list[Session]:
        """Fail every stored non-terminal session that has no live process here."""

        recovered: list[Session] = []
        for stored in self.store.list_active():
            entry = self.registry.get(stored.id)
            if entry is not None and (entry.setup_running or entry.process is not None):
                continue
            if self.supervisor.is_running(stored.id):
                continue
            orphan = SessionEntry(session=stored, tracked=False, reason="orphaned")
            with orphan.lock:
                stored.fail(ORPHANED_REASON)
                self._persist(orphan)
                self._emit(stored)
                orphan.finished = True
                orphan.done.set()
            self.registry.add(orphan)
            metrics.record_finished(stored.status.value, "orphaned", None, tracked=False)
            logger.warning("Session %s for task %s was %s", stored.id, stored.task_id, ORPHANED_REASON)
            recovered.append(stored.snapshot())
        return recovered

    def pending_sync(self) -> set[str]:
        with self._dirty_lock:
            return set(self._dirty)

    def flush_pending(self) -> None:
        """Retry persisting sessions whose last write failed."""

        for session_id in sorted(self.pending_sync()):
            entry = self.registry.get(session_id)
            if entry is None:
                self._mark_clean(session_id)
                continue
            with entry.lock:
                self._persist(entry)

    def cleanup_old_sessions(self, older_than: timedelta) -> int:
        cutoff = utcnow() - older_than
        removed = self.store.delete_sessions_before(cutoff)
        for entry in self.registry.entries():
            with entry.lock:
                completed = entry.session.completed_at
                stale = entry.finished and completed is not None and completed < cutoff
            if stale:
                self.registry.discard(entry)
        logger.info("Removed %d sessions completed before %s", removed, cutoff.isoformat())
        return removed

    def shutdown(self, *, cancel_running: bool = True) -> None:
        if cancel_running:
            for entry in self.registry.entries():
                with entry.lock:
                    running = not entry.session.is_terminal
                if running:
                    self.cancel(entry.session.id)
        self._executor.shutdown(wait=True)
        self.supervisor.shutdown(wait=True)
        self.flush_pending()

    # Background setup ---------------------------------------------------
    def _run_setup(self, entry: SessionEntry, config: SessionConfig, template_name: str | None) -> None:
        try:
            self._prepare_and_spawn(entry, config, template_name)
        except TaskAgentError as exc:
            self._fail(entry, str(exc), reason=exc.kind)
        except Exception as exc:
            logger.exception("Unexpected error while starting session %s", entry.session.id)
            self._fail(entry, f"Unexpected error: {exc}", reason="unexpected")
        finally:
            with entry.lock:
                entry.setup_running = False
                self._maybe_finish(entry)

    def _prepare_and_spawn(
        self,
        entry: SessionEntry,
        config: SessionConfig,
        template_name: str | None,
    ) -> None:
        session = entry.session
        task = entry.task
        assert task is not None

        workspace = self.workspaces.prepare(task, config, log=partial(self._log, entry))
        with entry.lock:
            entry.workspace = workspace
            if session.is_terminal:
                return
            session.branch_name = workspace.branch
            session.workspace_path = str(workspace.path)
            session.append_log(f"Workspace ready at {workspace.path} on branch {workspace.branch}")
            self._persist(entry)

        template = self._resolve_template(template_name)
        prompt = self.renderer.render_task(template, task)
        prompt_dir = self.prompt_root / session.id
        prompt_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = prompt_dir / "task_prompt.md"
        instructions_file = prompt_dir / "instructions.md"
        prompt_file.write_text(prompt, encoding="utf-8")
        instructions_file.write_text(
            self.renderer.build_instructions(task, config, workspace.branch, prompt_file),
            encoding="utf-8",
        )
        self._log(entry, f"Prompt rendered from template '{template.name}'")

        command = self._agent_command(config, prompt_file, instructions_file, workspace.path)
        env = self._agent_env(config, session, workspace)
        with entry.lock:
            if session.is_terminal:
                return
            handle = self.supervisor.start(
                session.id,
                command,
                cwd=workspace.path,
                env=env,
                timeout=config.max_session_seconds,
                on_line=partial(self._on_output, entry),
            )
            entry.process = handle
            session.append_log(f"Agent process started (pid {handle.pid})")
            self._transition(entry, SessionStatus.WORKING)
        handle.future.add_done_callback(partial(self._on_process_done, entry, config))

    def _resolve_template(self, template_name: str | None) -> PromptTemplate:
        if template_name:
            template = self.store.get_template(template_name)
            if template is None:
                available = ", ".join(item.name for item in self.store.list_templates()) or "none"
                raise TemplateError(f"Unknown prompt template '{template_name}' (available: {available})")
            return template
        template = self.store.get_default_template()
        if template is None:
            raise TemplateError("No default prompt template is configured")
        return template

    def _agent_command(
        self,
        config: SessionConfig,
        prompt_file: Path,
        instructions_file: Path,
        workdir: Path,
    ) -> list[str]:
        values = {
            "prompt_file": str(prompt_file),
            "instructions_file": str(instructions_file),
            "model": config.model,
            "workdir": str(workdir),
        }
        try:
            return [part.format_map(values) for part in self.agent_command]
        except (KeyError, IndexError, ValueError) as exc:
            raise ProcessLaunchError(f"Invalid agent command template {self.agent_command!r}: {exc}") from exc

    def _agent_env(self, config: SessionConfig, session: Session, workspace: WorkspaceInfo) -> dict[str, str]:
        env = dict(self.agent_env)
        env.update(
            {
                "TASK_AGENT_SESSION_ID": session.id,
                "TASK_AGENT_TASK_ID": session.task_id,
                "TASK_AGENT_BRANCH": workspace.branch,
                "TASK_AGENT_MODEL": config.model,
            }
        )
        if config.api_key:
            env["ANTHROPIC_API_KEY"] = config.api_key
        if config.github_token:
            env["GH_TOKEN"] = config.github_token
        return env

    # Process outcome ----------------------------------------------------
    def _on_output(self, entry: SessionEntry, line: str) -> None:
        with entry.lock:
            entry.session.append_output(line)
            entry.unsaved_lines += 1
            if entry.unsaved_lines >= self.log_flush_lines:
                self._persist(entry)

    def _on_process_done(self, entry: SessionEntry, config: SessionConfig, future: Future) -> None:
        try:
            outcome: ProcessOutcome = future.result()
        except Exception as exc:
            logger.exception("Agent monitor failed for session %s", entry.session.id)
            outcome = ProcessOutcome(OutcomeKind.FAILURE, None, 0.0, TaskAgentError(f"Agent monitor failed: {exc}"))

        with entry.lock:
            entry.process = None
            session = entry.session
            if session.is_terminal:
                self._persist(entry)
                self._maybe_finish(entry)
                return
            if outcome.kind is OutcomeKind.CANCELLED:
                self._end(entry, SessionStatus.CANCELLED, outcome.message, reason="cancelled")
                return
            if not outcome.ok:
                self._end(entry, SessionStatus.FAILED, outcome.message, reason=outcome.kind.value)
                return
            session.append_log("Agent process exited with code 0")
            self._transition(entry, SessionStatus.CREATING_PR)

        try:
            self._publish(entry, config)
        except Exception as exc:
            logger.exception("Unexpected error while publishing session %s", entry.session.id)
            self._fail(entry, f"Unexpected error: {exc}", reason="unexpected")

    def _publish(self, entry: SessionEntry, config: SessionConfig) -> None:
        session = entry.session
        if not config.auto_create_pr:
            with entry.lock:
                if session.is_terminal:
                    return
                session.append_log("Completed without creating PR (auto-create-PR disabled)")
                self._end(entry, SessionStatus.COMPLETED, None, reason="completed")
            return

        task = entry.task
        title = task.title if task else session.branch_name or session.id
        body = (
            f"Automated pull request for task {session.task_id} (agent session {session.id}).\n\n"
            f"{task.description if task and task.description else ''}"
        ).strip()
        self._log(entry, f"Creating pull request for {session.branch_name}")
        try:
            pull = self.publisher.publish(
                Path(session.workspace_path or "."),
                branch=session.branch_name or "",
                base_branch=config.base_branch,
                title=title,
                body=body,
                token=config.github_token,
            )
        except PublishError as exc:
            self._fail(entry, str(exc), reason=PublishError.kind)
            return

        with entry.lock:
            if session.is_terminal:
                session.append_log(f"PR created after session ended: {pull.url}")
                self._persist(entry)
                return
            session.set_pr_info(pull.url, pull.number)
            session.append_log(f"PR created: {pull.url}")
            self._end(entry, SessionStatus.COMPLETED, None, reason="completed")

    # Transitions --------------------------------------------------------
    def _transition(self, entry: SessionEntry, status: SessionStatus) -> None:
        entry.session.transition(status)
        entry.session.append_log(f"Status: {status.value}")
        self._persist(entry)
        self._emit(entry.session)

    def _end(self, entry: SessionEntry, status: SessionStatus, message: str | None, *, reason: str) -> None:
        session = entry.session
        if status is SessionStatus.FAILED:
            session.fail(message or "Session failed")
        elif status is SessionStatus.CANCELLED:
            session.cancel(message or CANCELLED_REASON)
        else:
            session.transition(status)
            session.append_log(f"Status: {status.value}")
        entry.reason = reason
        self._persist(entry)
        self._emit(session)
        self._maybe_finish(entry)

    def _fail(self, entry: SessionEntry, message: str, *, reason: str) -> None:
        with entry.lock:
            if entry.session.is_terminal:
                return
            logger.warning("Session %s failed: %s", entry.session.id, message)
            self._end(entry, SessionStatus.FAILED, message, reason=reason)

    def _maybe_finish(self, entry: SessionEntry) -> None:
        if entry.finished or not entry.session.is_terminal:
            return
        if entry.setup_running or entry.process is not None:
            return
        entry.finished = True
        if entry.workspace is not None:
            self.workspaces.release(entry.workspace.path)
        self.registry.release_task(entry)
        duration = entry.session.duration()
        metrics.record_finished(
            entry.session.status.value,
            entry.reason or entry.session.status.value,
            duration.total_seconds() if duration else None,
            tracked=entry.tracked,
        )
        entry.done.set()

    def _cancel_unowned(self, session_id: str) -> None:
        stored = self.store.load_session(session_id)
        if stored is None:
            raise SessionNotFound(session_id)
        if stored.is_terminal:
            return
        if self.supervisor.is_running(session_id):
            self.supervisor.cancel(session_id)
        entry = SessionEntry(session=stored, tracked=False)
        with entry.lock:
            self._end(entry, SessionStatus.CANCELLED, CANCELLED_REASON, reason="cancelled")
        self.registry.add(entry)

    # Persistence & intents ----------------------------------------------
    def _log(self, entry: SessionEntry, message: str) -> None:
        with entry.lock:
            entry.session.append_log(message)

    def _persist(self, entry: SessionEntry) -> None:
        session = entry.session
        try:
            self.store.save_session(session)
        except StoreError as exc:
            logger.warning("Could not persist session %s, keeping in-memory state: %s", session.id, exc)
            metrics.record_store_failure()
            with self._dirty_lock:
                self._dirty.add(session.id)
            return
        entry.unsaved_lines = 0
        self._mark_clean(session.id)

    def _mark_clean(self, session_id: str) -> None:
        with self._dirty_lock:
            self._dirty.discard(session_id)

    def _emit(self, session: Session) -> None:
        if self.bus is None:
            return
        intent = StatusIntent(
            task_id=session.task_id,
            session_id=session.id,
            session_status=session.status.value,
            task_status=TASK_STATUS_FOR_SESSION.get(session.status),
            pr_url=session.pr_url,
            error=session.error_message if session.status.is_terminal else None,
        )
        try:
            self.bus.append_intent(intent)
        except OSError as exc:
            logger.warning("Failed to publish status intent for %s: %s", session.id, exc)


__all__ = [
    "DEFAULT_AGENT_COMMAND",
    "ORPHANED_REASON",
    "SessionEntry",
    "SessionOrchestrator",
    "SessionRegistry",
]
