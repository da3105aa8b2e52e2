"""Error taxonomy shared by the session components."""
from __future__ import annotations


class TaskAgentError(RuntimeError):
    """Base class for every error raised by task-agent."""

    kind = "unknown"

    def __init__(self, message: str, *, raw: str | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class ConfigMissing(TaskAgentError):
    kind = "config_missing"

    def __init__(self, message: str = "No session configuration has been saved") -> None:
        super().__init__(message)


class ConcurrentSessionExists(TaskAgentError):
    kind = "concurrent_session"

    def __init__(self, task_id: str, session_id: str | None = None) -> None:
        detail = f" ({session_id})" if session_id else ""
        super().__init__(f"Task {task_id} already has an active session{detail}")
        self.task_id = task_id
        self.session_id = session_id


class WorkspaceError(TaskAgentError):
    kind = "workspace"


class TemplateError(TaskAgentError):
    kind = "template"


class ProcessLaunchError(TaskAgentError):
    kind = "process_launch"


class Timeout(TaskAgentError):
    kind = "timeout"

    def __init__(self, seconds: float) -> None:
        super().__init__(f"Agent timed out after {seconds / 60:.1f} minutes")
        self.seconds = seconds


class ProcessFailure(TaskAgentError):
    kind = "process_failure"

    def __init__(self, exit_code: int, detail: str | None = None) -> None:
        message = f"Agent exited with code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.exit_code = exit_code


class PublishError(TaskAgentError):
    kind = "publish"


class StoreError(TaskAgentError):
    kind = "store"


class InvalidTransition(TaskAgentError):
    kind = "invalid_transition"


class SessionNotFound(TaskAgentError):
    kind = "not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


__all__ = [
    "ConcurrentSessionExists",
    "ConfigMissing",
    "InvalidTransition",
    "ProcessFailure",
    "ProcessLaunchError",
    "PublishError",
    "SessionNotFound",
    "StoreError",
    "TaskAgentError",
    "TemplateError",
    "Timeout",
    "WorkspaceError",
]
