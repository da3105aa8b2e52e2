"""Append-only JSONL bus carrying task status-change intents."""
from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .models import SessionStatus

# Task status the surrounding application should apply when a session enters a state.
TASK_STATUS_FOR_SESSION = {
    SessionStatus.WORKING: "in_progress",
    SessionStatus.COMPLETED: "review",
}


@dataclass
class StatusIntent:
    task_id: str
    session_id: str
    session_status: str
    task_status: str | None = None
    pr_url: str | None = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": "session_status",
            "task_id": self.task_id,
            "session_id": self.session_id,
            "session_status": self.session_status,
        }
        for key in ("task_status", "pr_url", "error"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


class LocalBus:
    """Intents are appended as JSON lines; consumers track their own byte offset."""

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.intents_path = self.base_dir / "intents.jsonl"
        if not self.intents_path.exists():
            self.intents_path.touch()
        self._write_lock = threading.Lock()

    def append_intent(self, intent: StatusIntent | dict[str, Any]) -> dict[str, Any]:
        payload = intent.to_payload() if isinstance(intent, StatusIntent) else dict(intent)
        payload.setdefault("ts", time.time())
        data = json.dumps(payload, ensure_ascii=False)
        with self._write_lock:
            with self.intents_path.open("a", encoding="utf-8") as handle:
                handle.write(data)
                handle.write("\n")
        return payload

    def read_intents(self, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
        size = os.path.getsize(self.intents_path)
        if offset > size:
            offset = 0
        entries: list[dict[str, Any]] = []
        with self.intents_path.open("r", encoding="utf-8") as handle:
            handle.seek(offset)
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
            new_offset = handle.tell()
        return entries, new_offset


__all__ = ["LocalBus", "StatusIntent", "TASK_STATUS_FOR_SESSION"]
