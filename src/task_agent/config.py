"""Configuration loading for task-agent."""
from __future__ import annotations

import os
import textwrap
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError

from .errors import ConfigMissing
from .models import SessionConfig
from .state import StateStore

DEFAULT_SETTINGS_PATH = Path("~/.task_agent/settings.yaml")


class ServiceSettings(BaseModel):
    """Process-level settings: where things live and how external tools are invoked."""

    sqlite_path: Path = Path("~/.task_agent/state.db")
    workspace_root: Path = Path("~/.task_agent/workspaces")
    bus_dir: Path = Path("~/.task_agent/bus")
    templates_dir: Path | None = None
    agent_command: list[str] = Field(
        default_factory=lambda: [
            "claude",
            "code",
            "--file",
            "{prompt_file}",
            "--instructions",
            "{instructions_file}",
        ]
    )
    agent_env: dict[str, str] = Field(default_factory=dict)
    git_bin: str = "git"
    gh_bin: str = "gh"
    kill_grace_seconds: float = 5.0
    clone_timeout: float = 600.0
    publish_timeout: float = 300.0
    max_workers: int = 8
    store_retries: int = 3
    store_retry_delay: float = 0.05
    log_flush_lines: int = 50
    max_branch_suffix: int = 20
    metrics_port: int | None = None
    metrics_host: str = "0.0.0.0"

    model_config = {"arbitrary_types_allowed": True}

    def expanded_sqlite_path(self) -> Path:
        return self.sqlite_path.expanduser()

    def expanded_workspace_root(self) -> Path:
        return self.workspace_root.expanduser()

    def expanded_bus_dir(self) -> Path:
        return self.bus_dir.expanduser()

    def expanded_templates_dir(self) -> Path | None:
        return self.templates_dir.expanduser() if self.templates_dir else None


def load_yaml(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def load_settings(path: Path | None = None) -> ServiceSettings:
    """Load settings from YAML, falling back to defaults when the file is absent."""

    settings_path = (path or Path(os.getenv("TASK_AGENT_SETTINGS", str(DEFAULT_SETTINGS_PATH)))).expanduser()
    raw = load_yaml(settings_path) if settings_path.exists() else {}
    try:
        return ServiceSettings.model_validate(raw or {})
    except ValidationError as exc:
        raise ValueError(f"Invalid settings at {settings_path}: {exc}") from exc


def write_default_settings(path: Path | None = None) -> Path:
    settings_path = (path or DEFAULT_SETTINGS_PATH).expanduser()
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    if not settings_path.exists():
        payload = textwrap.dedent(
            """
            # task-agent service settings
            sqlite_path: ~/.task_agent/state.db
            workspace_root: ~/.task_agent/workspaces
            bus_dir: ~/.task_agent/bus
            # templates_dir: ~/.task_agent/templates
            agent_command: [claude, code, --file, "{prompt_file}", --instructions, "{instructions_file}"]
            git_bin: git
            gh_bin: gh
            kill_grace_seconds: 5
            max_workers: 8
            # metrics_port: 9108
            """
        ).strip()
        settings_path.write_text(payload + "\n", encoding="utf-8")
    return settings_path


class ConfigProvider:
    """Caches the current SessionConfig; reloads only when a new one is saved."""

    def __init__(self, store: StateStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._cached: SessionConfig | None = None
        self._loaded = False

    def get(self) -> SessionConfig:
        with self._lock:
            if not self._loaded:
                self._cached = self._store.get_config()
                self._loaded = True
            config = self._cached
        if config is None:
            raise ConfigMissing()
        return config

    def save(self, config: SessionConfig) -> SessionConfig:
        with self._lock:
            self._store.save_config(config)
            self._cached = self._store.get_config()
            self._loaded = True
            return self._cached or config

    def reload(self) -> SessionConfig | None:
        with self._lock:
            self._cached = self._store.get_config()
            self._loaded = True
            return self._cached


__all__ = [
    "ConfigProvider",
    "DEFAULT_SETTINGS_PATH",
    "ServiceSettings",
    "load_settings",
    "write_default_settings",
]
