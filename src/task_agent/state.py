"""SQLite-backed persistence for sessions, configuration and prompt templates."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import Any
from typing import Callable
from typing import Iterable
from typing import Optional
from typing import TypeVar

from .errors import ConcurrentSessionExists
from .errors import StoreError
from .models import PromptTemplate
from .models import Session
from .models import SessionConfig
from .models import SessionStatus
from .models import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SESSION_COLUMNS = (
    "id, task_id, status, branch_name, workspace_path, pr_url, pr_number, "
    "error_message, started_at, completed_at, updated_at"
)
_ACTIVE_VALUES = tuple(
    status.value for status in SessionStatus if status not in TERMINAL_STATUSES
)
_ACTIVE_SQL = ", ".join(f"'{value}'" for value in _ACTIVE_VALUES)

DEFAULT_TEMPLATE_NAME = "default"
DEFAULT_TEMPLATE_TEXT = """You are an AI assistant helping with the following task:

Task Title: {{task_title}}
Task Description:
{{task_description}}

Additional Context:
- Parent Goal: {{goal_title}}
- Priority: {{priority}}
- Estimated Hours: {{estimated_hours}}
- Tags: {{tags}}

Instructions:
1. Analyze the task requirements
2. Implement the necessary changes
3. Write tests if applicable
4. Ensure code quality and documentation
5. Commit your work with clear messages

Branch naming convention: claude/{{task_id_short}}-{{task_title_slug}}"""


class StateStore:
    """Encapsulates SQLite operations for sessions, config and templates."""

    def __init__(
        self,
        db_path: Path,
        *,
        retries: int = 3,
        retry_delay: float = 0.05,
        seed_default_template: bool = True,
    ) -> None:
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.retries = max(0, retries)
        self.retry_delay = retry_delay
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=5.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._ensure_schema()
        if seed_default_template:
            self._seed_default_template()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY NOT NULL,
                    task_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    branch_name TEXT,
                    workspace_path TEXT,
                    pr_url TEXT,
                    pr_number INTEGER,
                    error_message TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_active_per_task
                    ON sessions(task_id) WHERE status IN ({_ACTIVE_SQL});
                CREATE INDEX IF NOT EXISTS idx_sessions_task_id ON sessions(task_id);
                CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);

                CREATE TABLE IF NOT EXISTS session_logs (
                    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                    seq INTEGER NOT NULL,
                    line TEXT NOT NULL,
                    PRIMARY KEY (session_id, seq)
                );

                CREATE TABLE IF NOT EXISTS session_config (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS prompt_templates (
                    name TEXT PRIMARY KEY NOT NULL,
                    template TEXT NOT NULL,
                    description TEXT,
                    variables TEXT NOT NULL,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def _seed_default_template(self) -> None:
        if self.get_default_template() is None:
            self.save_template(
                PromptTemplate.create(
                    DEFAULT_TEMPLATE_NAME,
                    DEFAULT_TEMPLATE_TEXT,
                    description="Default template for agent task execution",
                    is_default=True,
                )
            )

    # Retry helpers ----------------------------------------------------
    def _run(self, operation: Callable[[sqlite3.Connection], T], *, write: bool = False) -> T:
        attempt = 0
        while True:
            try:
                with self._lock:
                    if not write:
                        return operation(self._conn)
                    try:
                        result = operation(self._conn)
                        self._conn.commit()
                    except BaseException:
                        self._conn.rollback()
                        raise
                    return result
            except sqlite3.IntegrityError:
                raise
            except (sqlite3.OperationalError, sqlite3.DatabaseError) as exc:
                if attempt >= self.retries:
                    raise StoreError(f"SQLite operation failed after {attempt + 1} attempts: {exc}") from exc
                delay = self.retry_delay * (2 ** attempt)
                logger.warning("SQLite operation failed (%s), retrying in %.2fs", exc, delay)
                attempt += 1
                time.sleep(delay)

    # Sessions ---------------------------------------------------------
    def create_session(self, session: Session) -> None:
        """Insert a new session; the partial unique index rejects a second active one per task."""

        def _insert(conn: sqlite3.Connection) -> None:
            existing = conn.execute(
                f"SELECT id FROM sessions WHERE task_id = ? AND status IN ({_ACTIVE_SQL})",
                (session.task_id,),
            ).fetchone()
            if existing and session.status.is_active:
                raise ConcurrentSessionExists(session.task_id, existing["id"])
            conn.execute(
                f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                session.to_row(),
            )
            self._insert_log_lines(conn, session.id, session.log, start=0)

        try:
            self._run(_insert, write=True)
        except sqlite3.IntegrityError as exc:
            if "idx_sessions_one_active_per_task" in str(exc) or "sessions.task_id" in str(exc):
                raise ConcurrentSessionExists(session.task_id) from exc
            raise StoreError(f"Failed to insert session {session.id}: {exc}") from exc

    def save_session(self, session: Session) -> None:
        """Persist status, timestamps and any new log lines in one transaction."""

        def _update(conn: sqlite3.Connection) -> None:
            row = session.to_row()
            cur = conn.execute(
                """
                UPDATE sessions SET
                    task_id = ?,
                    status = ?,
                    branch_name = ?,
                    workspace_path = ?,
                    pr_url = ?,
                    pr_number = ?,
                    error_message = ?,
                    started_at = ?,
                    completed_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (*row[1:], session.id),
            )
            if cur.rowcount == 0:
                conn.execute(
                    f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    row,
                )
            stored = conn.execute(
                "SELECT COUNT(*) FROM session_logs WHERE session_id = ?",
                (session.id,),
            ).fetchone()[0]
            self._insert_log_lines(conn, session.id, session.log[stored:], start=stored)

        try:
            self._run(_update, write=True)
        except sqlite3.IntegrityError as exc:
            raise StoreError(f"Failed to save session {session.id}: {exc}") from exc

    def load_session(self, session_id: str) -> Optional[Session]:
        def _load(conn: sqlite3.Connection) -> Optional[Session]:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            if not row:
                return None
            return Session.from_row(tuple(row), self._load_log(conn, session_id))

        return self._run(_load)

    def list_sessions_for_task(self, task_id: str) -> list[Session]:
        return self._select_sessions("WHERE task_id = ? ORDER BY started_at", (task_id,))

    def list_active(self) -> list[Session]:
        return self._select_sessions(f"WHERE status IN ({_ACTIVE_SQL}) ORDER BY started_at", ())

    def list_sessions(self, limit: int | None = None) -> list[Session]:
        clause = "ORDER BY started_at DESC"
        params: tuple[Any, ...] = ()
        if limit:
            clause += " LIMIT ?"
            params = (limit,)
        return self._select_sessions(clause, params)

    def delete_sessions_before(self, cutoff: datetime) -> int:
        """Delete terminal sessions completed before ``cutoff``; returns the count removed."""

        terminal = ", ".join(f"'{status.value}'" for status in TERMINAL_STATUSES)

        def _delete(conn: sqlite3.Connection) -> int:
            ids = [
                row["id"]
                for row in conn.execute(
                    f"SELECT id FROM sessions WHERE status IN ({terminal}) "
                    "AND completed_at IS NOT NULL AND completed_at < ?",
                    (cutoff.astimezone(timezone.utc).isoformat(),),
                )
            ]
            for session_id in ids:
                conn.execute("DELETE FROM session_logs WHERE session_id = ?", (session_id,))
                conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return len(ids)

        return self._run(_delete, write=True)

    def _select_sessions(self, clause: str, params: tuple[Any, ...]) -> list[Session]:
        def _select(conn: sqlite3.Connection) -> list[Session]:
            rows = conn.execute(f"SELECT {_SESSION_COLUMNS} FROM sessions {clause}", params).fetchall()
            return [Session.from_row(tuple(row), self._load_log(conn, row["id"])) for row in rows]

        return self._run(_select)

    @staticmethod
    def _load_log(conn: sqlite3.Connection, session_id: str) -> list[str]:
        rows = conn.execute(
            "SELECT line FROM session_logs WHERE session_id = ? ORDER BY seq",
            (session_id,),
        )
        return [row["line"] for row in rows]

    @staticmethod
    def _insert_log_lines(
        conn: sqlite3.Connection,
        session_id: str,
        lines: Iterable[str],
        *,
        start: int,
    ) -> None:
        conn.executemany(
            "INSERT INTO session_logs (session_id, seq, line) VALUES (?, ?, ?)",
            [(session_id, start + idx, line) for idx, line in enumerate(lines)],
        )

    # Config -----------------------------------------------------------
    def get_config(self) -> Optional[SessionConfig]:
        row = self._run(
            lambda conn: conn.execute("SELECT payload FROM session_config WHERE id = 1").fetchone()
        )
        if not row:
            return None
        return SessionConfig.model_validate(json.loads(row["payload"]))

    def save_config(self, config: SessionConfig) -> None:
        payload = config.model_dump_json()
        now = datetime.now().astimezone().isoformat()
        self._run(
            lambda conn: conn.execute(
                """
                INSERT INTO session_config (id, payload, updated_at)
                VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (payload, now),
            ),
            write=True,
        )

    # Prompt templates -------------------------------------------------
    def save_template(self, template: PromptTemplate) -> None:
        now = datetime.now().astimezone().isoformat()

        def _upsert(conn: sqlite3.Connection) -> None:
            if template.is_default:
                conn.execute("UPDATE prompt_templates SET is_default = 0 WHERE name != ?", (template.name,))
            conn.execute(
                """
                INSERT INTO prompt_templates (name, template, description, variables, is_default, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    template = excluded.template,
                    description = excluded.description,
                    variables = excluded.variables,
                    is_default = excluded.is_default,
                    updated_at = excluded.updated_at
                """,
                (
                    template.name,
                    template.template,
                    template.description,
                    template.variables_json(),
                    int(template.is_default),
                    now,
                ),
            )

        self._run(_upsert, write=True)

    def get_template(self, name: str) -> Optional[PromptTemplate]:
        row = self._run(
            lambda conn: conn.execute(
                "SELECT name, template, description, variables, is_default FROM prompt_templates WHERE name = ?",
                (name,),
            ).fetchone()
        )
        return self._template_from_row(row) if row else None

    def get_default_template(self) -> Optional[PromptTemplate]:
        row = self._run(
            lambda conn: conn.execute(
                "SELECT name, template, description, variables, is_default FROM prompt_templates "
                "WHERE is_default = 1 ORDER BY updated_at DESC LIMIT 1"
            ).fetchone()
        )
        return self._template_from_row(row) if row else None

    def list_templates(self) -> list[PromptTemplate]:
        rows = self._run(
            lambda conn: conn.execute(
                "SELECT name, template, description, variables, is_default FROM prompt_templates ORDER BY name"
            ).fetchall()
        )
        return [self._template_from_row(row) for row in rows]

    @staticmethod
    def _template_from_row(row: sqlite3.Row) -> PromptTemplate:
        variables_raw = row["variables"]
        try:
            variables = json.loads(variables_raw) if variables_raw else []
        except json.JSONDecodeError:
            variables = []
        return PromptTemplate(
            name=row["name"],
            template=row["template"],
            variables=tuple(variables),
            description=row["description"],
            is_default=bool(row["is_default"]),
        )


__all__ = ["DEFAULT_TEMPLATE_NAME", "DEFAULT_TEMPLATE_TEXT", "StateStore"]
