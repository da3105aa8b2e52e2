"""Isolated clone + branch per agent session."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from typing import Iterable
from typing import Mapping
from typing import Optional

from .errors import WorkspaceError
from .models import SessionConfig
from .models import TaskSnapshot
from .prompts import slugify

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "claude"


@dataclass(frozen=True)
class WorkspaceInfo:
    path: Path
    branch: str


def branch_name_for(task: TaskSnapshot) -> str:
    return f"{BRANCH_PREFIX}/{task.short_id}-{slugify(task.title)}"


def directory_name_for(task: TaskSnapshot) -> str:
    return f"task-{task.short_id}-{slugify(task.title)}"


class WorkspaceManager:
    """Clone the target repository into a per-task directory and cut a fresh branch.

    Branch collisions with the remote are resolved by appending ``-2``, ``-3``
    and so on up to ``max_branch_suffix``; the first free name wins.
    """

    def __init__(
        self,
        workspace_root: Path,
        *,
        git_bin: str = "git",
        clone_timeout: float = 600.0,
        max_branch_suffix: int = 20,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.workspace_root = Path(workspace_root).expanduser().resolve()
        self.workspace_root.mkdir(parents=True, exist_ok=True)
        self.git_bin = git_bin
        self.clone_timeout = clone_timeout
        self.max_branch_suffix = max(1, max_branch_suffix)
        self._env = dict(env or {})
        self._lock = threading.Lock()
        self._claimed: set[Path] = set()

    # ------------------------------------------------------------------
    def prepare(
        self,
        task: TaskSnapshot,
        config: SessionConfig,
        *,
        log: Optional[Callable[[str], None]] = None,
    ) -> WorkspaceInfo:
        emit = log or (lambda _message: None)
        path = self.workspace_root / directory_name_for(task)
        self._claim(path)
        try:
            if path.exists():
                logger.info("Removing stale workspace %s", path)
                emit(f"Removing stale workspace {path}")
                shutil.rmtree(path)
            emit(f"Cloning {config.repository} into {path}")
            self._run_git(
                ["clone", "--branch", config.base_branch, config.resolved_clone_url, str(path)],
                cwd=self.workspace_root,
                timeout=self.clone_timeout,
                env=self._git_env(config),
            )
            branch = self._choose_branch(path, branch_name_for(task), config)
            self._run_git(["checkout", "-b", branch], cwd=path)
            emit(f"Created branch {branch}")
        except BaseException:
            self.release(path)
            raise
        return WorkspaceInfo(path=path, branch=branch)

    def release(self, path: Path) -> None:
        with self._lock:
            self._claimed.discard(Path(path))

    def remove(self, path: Path) -> None:
        target = Path(path)
        try:
            if target.exists():
                shutil.rmtree(target)
        finally:
            self.release(target)

    def in_use(self) -> set[Path]:
        with self._lock:
            return set(self._claimed)

    def remote_branches(self, path: Path, prefix: str, config: SessionConfig | None = None) -> set[str]:
        output = self._run_git(
            ["ls-remote", "--heads", "origin"],
            cwd=path,
            capture_output=True,
            env=self._git_env(config),
        )
        branches: set[str] = set()
        for raw in output.splitlines():
            parts = raw.split("\t", 1)
            if len(parts) != 2 or not parts[1].startswith("refs/heads/"):
                continue
            name = parts[1][len("refs/heads/") :]
            if name.startswith(prefix):
                branches.add(name)
        return branches

    # ------------------------------------------------------------------
    def _claim(self, path: Path) -> None:
        with self._lock:
            if path in self._claimed:
                raise WorkspaceError(f"Workspace {path} is already in use by another session")
            self._claimed.add(path)

    def _choose_branch(self, path: Path, wanted: str, config: SessionConfig) -> str:
        taken = self.remote_branches(path, wanted, config)
        if wanted not in taken:
            return wanted
        for suffix in range(2, self.max_branch_suffix + 1):
            candidate = f"{wanted}-{suffix}"
            if candidate not in taken:
                logger.info("Branch %s exists on remote, using %s", wanted, candidate)
                return candidate
        raise WorkspaceError(
            f"Branch {wanted} and suffixes up to -{self.max_branch_suffix} already exist on the remote"
        )

    def _git_env(self, config: SessionConfig | None) -> dict[str, str]:
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", **self._env}
        if config is not None and config.github_token:
            env["GH_TOKEN"] = config.github_token
        return env

    def _run_git(
        self,
        args: Iterable[str],
        *,
        cwd: Path,
        capture_output: bool = False,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> str:
        cmd = [self.git_bin, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                check=True,
                text=True,
                capture_output=True,
                timeout=timeout,
                env=dict(env) if env is not None else None,
            )
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip()
            raise WorkspaceError(f"git {cmd[1]} failed: {detail}", raw=exc.stderr) from exc
        except subprocess.TimeoutExpired as exc:
            raise WorkspaceError(f"git {cmd[1]} timed out after {timeout:.0f}s") from exc
        except FileNotFoundError as exc:
            raise WorkspaceError(f"git executable not found: {self.git_bin}") from exc
        return result.stdout if capture_output else ""


__all__ = [
    "BRANCH_PREFIX",
    "WorkspaceInfo",
    "WorkspaceManager",
    "branch_name_for",
    "directory_name_for",
]
