"""Push a session branch and open a pull request through the gh CLI."""
from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
from typing import Sequence

from .errors import PublishError

logger = logging.getLogger(__name__)

_PR_URL_RE = re.compile(r"(https?://\S+/pull/(\d+))")


@dataclass(frozen=True)
class PullRequest:
    url: str
    number: int


def parse_pr_url(output: str) -> PullRequest:
    """Extract the last ``.../pull/<n>`` URL printed by the VCS CLI."""

    matches = _PR_URL_RE.findall(output or "")
    if not matches:
        snippet = " ".join((output or "").split())[:200]
        raise PublishError(f"Could not find a pull request URL in output: {snippet!r}", raw=output)
    url, number = matches[-1]
    return PullRequest(url=url, number=int(number))


class PRPublisher:
    """Wrapper around ``git push`` and ``gh pr create``."""

    def __init__(
        self,
        *,
        git_bin: str = "git",
        gh_bin: str = "gh",
        timeout: float = 300.0,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.git_bin = git_bin
        self.gh_bin = gh_bin
        self.timeout = timeout
        self._env = dict(env or {})

    def publish(
        self,
        workdir: Path,
        *,
        branch: str,
        base_branch: str,
        title: str,
        body: str,
        token: str | None = None,
    ) -> PullRequest:
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", **self._env}
        if token:
            env["GH_TOKEN"] = token
        self._run([self.git_bin, "push", "-u", "origin", branch], workdir, env)
        stdout = self._run(
            [
                self.gh_bin,
                "pr",
                "create",
                "--title",
                title,
                "--body",
                body,
                "--base",
                base_branch,
                "--head",
                branch,
            ],
            workdir,
            env,
        )
        pull = parse_pr_url(stdout)
        logger.info("Opened pull request %s for %s", pull.url, branch)
        return pull

    def _run(self, command: Sequence[str], workdir: Path, env: Mapping[str, str]) -> str:
        try:
            proc = subprocess.run(
                list(command),
                cwd=str(workdir),
                env=dict(env),
                text=True,
                encoding="utf-8",
                errors="replace",
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise PublishError(f"{command[0]} timed out after {self.timeout:.0f}s") from exc
        except FileNotFoundError as exc:
            raise PublishError(f"{command[0]} executable not found") from exc
        if proc.returncode != 0:
            message = (proc.stderr or proc.stdout).strip()
            raise PublishError(message or f"{command[0]} exited with code {proc.returncode}", raw=proc.stdout)
        return proc.stdout


__all__ = ["PRPublisher", "PullRequest", "parse_pr_url"]
