"""Domain records for agent sessions, configuration and prompt templates."""
from __future__ import annotations

import dataclasses
import json
import re
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from enum import Enum
from typing import Any
from typing import Mapping
from typing import Sequence
from uuid import uuid4

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from .errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SessionStatus(str, Enum):
    PENDING = "pending"
    INITIALIZING = "initializing"
    WORKING = "working"
    CREATING_PR = "creating_pr"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return not self.is_terminal


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)

# Allowed next states. Cancellation is reachable from every non-terminal state.
TRANSITIONS: Mapping[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset(
        {SessionStatus.INITIALIZING, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.INITIALIZING: frozenset(
        {SessionStatus.WORKING, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.WORKING: frozenset(
        {SessionStatus.CREATING_PR, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.CREATING_PR: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class Session:
    """One supervised agent run against a single task."""

    task_id: str
    id: str = field(default_factory=lambda: uuid4().hex)
    status: SessionStatus = SessionStatus.PENDING
    branch_name: str | None = None
    workspace_path: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    log: list[str] = field(default_factory=list)
    error_message: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, target: SessionStatus) -> None:
        if not can_transition(self.status, target):
            raise InvalidTransition(
                f"Session {self.id}: {self.status.value} -> {target.value} is not allowed"
            )
        now = utcnow()
        self.status = target
        self.updated_at = now
        if target.is_terminal:
            self.completed_at = now

    def append_log(self, message: str) -> None:
        stamp = utcnow().strftime("%Y-%m-%d %H:%M:%S")
        self.log.append(f"[{stamp}] {message}")
        self.updated_at = utcnow()

    def append_output(self, line: str) -> None:
        self.log.append(line)

    def fail(self, message: str) -> None:
        self.error_message = message
        self.append_log(f"ERROR: {message}")
        self.transition(SessionStatus.FAILED)

    def cancel(self, reason: str = "Session cancelled by user") -> None:
        self.error_message = reason
        self.append_log(reason)
        self.transition(SessionStatus.CANCELLED)

    def set_pr_info(self, pr_url: str, pr_number: int | None) -> None:
        self.pr_url = pr_url
        self.pr_number = pr_number
        self.updated_at = utcnow()

    def duration(self) -> timedelta | None:
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def snapshot(self) -> "Session":
        return dataclasses.replace(self, log=list(self.log))

    def to_row(self) -> tuple[Any, ...]:
        return (
            self.id,
            self.task_id,
            self.status.value,
            self.branch_name,
            self.workspace_path,
            self.pr_url,
            self.pr_number,
            self.error_message,
            _format_ts(self.started_at),
            _format_ts(self.completed_at),
            _format_ts(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Sequence[Any], log: Sequence[str] = ()) -> "Session":
        (
            session_id,
            task_id,
            status,
            branch_name,
            workspace_path,
            pr_url,
            pr_number,
            error_message,
            started_at,
            completed_at,
            updated_at,
        ) = row
        return cls(
            id=session_id,
            task_id=task_id,
            status=SessionStatus(status),
            branch_name=branch_name,
            workspace_path=workspace_path,
            pr_url=pr_url,
            pr_number=pr_number,
            log=list(log),
            error_message=error_message,
            started_at=_parse_ts(started_at) or utcnow(),
            completed_at=_parse_ts(completed_at),
            updated_at=_parse_ts(updated_at) or utcnow(),
        )


class SessionConfig(BaseModel):
    """Repository and agent settings consulted on every launch."""

    repo_owner: str
    repo_name: str
    base_branch: str = "main"
    model: str = "claude-3-opus-20240229"
    max_session_duration_minutes: float = Field(default=60.0, gt=0, le=240)
    auto_create_pr: bool = True
    clone_url: str | None = None
    api_key: str | None = None
    github_token: str | None = None

    @field_validator("repo_owner", "repo_name", "base_branch")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be empty")
        return cleaned

    @property
    def repository(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    @property
    def resolved_clone_url(self) -> str:
        return self.clone_url or f"https://github.com/{self.repository}.git"

    @property
    def max_session_seconds(self) -> float:
        return self.max_session_duration_minutes * 60.0


_VARIABLE_RE = re.compile(r"\{\{(\w+)\}\}")


def extract_variables(text: str) -> list[str]:
    """Return placeholder names in first-appearance order, without duplicates."""

    names: list[str] = []
    for match in _VARIABLE_RE.finditer(text):
        name = match.group(1)
        if name not in names:
            names.append(name)
    return names


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    template: str
    variables: tuple[str, ...] = ()
    description: str | None = None
    is_default: bool = False

    @classmethod
    def create(
        cls,
        name: str,
        template: str,
        *,
        description: str | None = None,
        is_default: bool = False,
    ) -> "PromptTemplate":
        return cls(
            name=name,
            template=template,
            variables=tuple(extract_variables(template)),
            description=description,
            is_default=is_default,
        )

    def variables_json(self) -> str:
        return json.dumps(list(self.variables))


@dataclass(frozen=True)
class TaskSnapshot:
    """Read-only view of a task supplied by the surrounding application."""

    id: str
    title: str
    description: str = ""
    priority: str = "Medium"
    estimated_hours: float | None = None
    tags: tuple[str, ...] = ()
    goal_title: str | None = None

    @property
    def short_id(self) -> str:
        return self.id[:8]


__all__ = [
    "PromptTemplate",
    "Session",
    "SessionConfig",
    "SessionStatus",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "TaskSnapshot",
    "can_transition",
    "extract_variables",
    "utcnow",
]
