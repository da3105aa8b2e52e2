"""Agent session orchestration: workspaces, prompts, supervised agents and PRs."""

from .errors import TaskAgentError
from .models import PromptTemplate, Session, SessionConfig, SessionStatus, TaskSnapshot
from .orchestrator import SessionOrchestrator, SessionRegistry
from .state import StateStore

__all__ = [
    "PromptTemplate",
    "Session",
    "SessionConfig",
    "SessionOrchestrator",
    "SessionRegistry",
    "SessionStatus",
    "StateStore",
    "TaskAgentError",
    "TaskSnapshot",
]
