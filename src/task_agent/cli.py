"""Command line entrypoint for launching and inspecting agent sessions."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Sequence

from . import metrics
from .config import ConfigProvider
from .config import ServiceSettings
from .config import load_settings
from .config import write_default_settings
from .errors import ConfigMissing
from .errors import TaskAgentError
from .local_bus import LocalBus
from .models import PromptTemplate
from .models import Session
from .models import SessionConfig
from .models import SessionStatus
from .models import TaskSnapshot
from .models import utcnow
from .orchestrator import SessionOrchestrator
from .prompts import load_templates
from .prompts import parse_template
from .publisher import PRPublisher
from .state import StateStore
from .supervisor import ProcessSupervisor
from .workspace import WorkspaceManager


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="task-agent", description="Run coding agents against tasks and open PRs")
    parser.add_argument("--settings", type=Path, default=None, help="Settings YAML (default: ~/.task_agent/settings.yaml)")
    parser.add_argument("--log-level", type=str, default=os.getenv("LOG_LEVEL", "INFO"))
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Write a default settings file")

    config_cmd = sub.add_parser("config", help="Show or update the session configuration")
    config_sub = config_cmd.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the current configuration")
    set_cmd = config_sub.add_parser("set", help="Create or update the configuration")
    set_cmd.add_argument("--owner", dest="repo_owner")
    set_cmd.add_argument("--repo", dest="repo_name")
    set_cmd.add_argument("--base-branch")
    set_cmd.add_argument("--model")
    set_cmd.add_argument("--max-minutes", type=float, dest="max_session_duration_minutes")
    set_cmd.add_argument("--auto-create-pr", dest="auto_create_pr", action="store_true", default=None)
    set_cmd.add_argument("--no-auto-create-pr", dest="auto_create_pr", action="store_false")
    set_cmd.add_argument("--clone-url")
    set_cmd.add_argument("--api-key")
    set_cmd.add_argument("--github-token")

    templates_cmd = sub.add_parser("templates", help="Manage prompt templates")
    templates_sub = templates_cmd.add_subparsers(dest="templates_command", required=True)
    templates_sub.add_parser("list", help="List stored templates")
    add_cmd = templates_sub.add_parser("add", help="Store a template from a Markdown file")
    add_cmd.add_argument("file", type=Path)
    add_cmd.add_argument("--name", help="Template name (default: front matter or file stem)")
    add_cmd.add_argument("--description")
    add_cmd.add_argument("--default", action="store_true", help="Make this the default template")

    launch_cmd = sub.add_parser("launch", help="Launch an agent session for a task and wait for it")
    launch_cmd.add_argument("--task-id", required=True)
    launch_cmd.add_argument("--title", required=True)
    launch_cmd.add_argument("--description", default="")
    launch_cmd.add_argument("--priority", default="Medium")
    launch_cmd.add_argument("--estimated-hours", type=float, default=None)
    launch_cmd.add_argument("--tag", action="append", default=[], dest="tags")
    launch_cmd.add_argument("--goal", dest="goal_title", default=None)
    launch_cmd.add_argument("--template", default=None)

    status_cmd = sub.add_parser("status", help="Show one session with its log")
    status_cmd.add_argument("session_id")

    sessions_cmd = sub.add_parser("sessions", help="List sessions")
    sessions_cmd.add_argument("--task", dest="task_id", default=None)
    sessions_cmd.add_argument("--active", action="store_true")
    sessions_cmd.add_argument("--limit", type=int, default=50)

    sub.add_parser("recover", help="Mark sessions orphaned by a previous run as failed")

    cleanup_cmd = sub.add_parser("cleanup", help="Delete finished sessions older than N days")
    cleanup_cmd.add_argument("--days", type=int, default=30)

    return parser


def open_store(settings: ServiceSettings) -> StateStore:
    store = StateStore(
        settings.expanded_sqlite_path(),
        retries=settings.store_retries,
        retry_delay=settings.store_retry_delay,
    )
    templates_dir = settings.expanded_templates_dir()
    if templates_dir is not None:
        for template in load_templates(templates_dir).values():
            store.save_template(template)
    return store


def build_orchestrator(
    settings: ServiceSettings,
    store: StateStore,
    *,
    recover_orphans: bool = False,
) -> SessionOrchestrator:
    workspaces = WorkspaceManager(
        settings.expanded_workspace_root(),
        git_bin=settings.git_bin,
        clone_timeout=settings.clone_timeout,
        max_branch_suffix=settings.max_branch_suffix,
    )
    return SessionOrchestrator(
        store=store,
        workspaces=workspaces,
        supervisor=ProcessSupervisor(kill_grace_seconds=settings.kill_grace_seconds),
        publisher=PRPublisher(
            git_bin=settings.git_bin,
            gh_bin=settings.gh_bin,
            timeout=settings.publish_timeout,
        ),
        config_provider=ConfigProvider(store),
        bus=LocalBus(settings.expanded_bus_dir()),
        agent_command=settings.agent_command,
        agent_env=settings.agent_env,
        log_flush_lines=settings.log_flush_lines,
        max_workers=settings.max_workers,
        recover_orphans=recover_orphans,
    )


def cmd_init(args: argparse.Namespace) -> None:
    path = write_default_settings(args.settings)
    print(f"Settings written to {path}")


def cmd_config(args: argparse.Namespace, store: StateStore) -> None:
    provider = ConfigProvider(store)
    if args.config_command == "show":
        try:
            config = provider.get()
        except ConfigMissing:
            print("No configuration saved; run `task-agent config set`")
            return
        payload = config.model_dump()
        for secret in ("api_key", "github_token"):
            if payload.get(secret):
                payload[secret] = "***"
        for key, value in payload.items():
            print(f"{key}: {value}")
        return

    current = provider.reload()
    updates = {
        key: getattr(args, key)
        for key in (
            "repo_owner",
            "repo_name",
            "base_branch",
            "model",
            "max_session_duration_minutes",
            "auto_create_pr",
            "clone_url",
            "api_key",
            "github_token",
        )
        if getattr(args, key) is not None
    }
    data = current.model_dump() if current else {}
    data.update(updates)
    config = provider.save(SessionConfig.model_validate(data))
    print(f"Configuration saved for {config.repository}")


def cmd_templates(args: argparse.Namespace, store: StateStore) -> None:
    if args.templates_command == "list":
        templates = store.list_templates()
        if not templates:
            print("No templates stored")
            return
        for template in templates:
            marker = " (default)" if template.is_default else ""
            variables = ", ".join(template.variables) or "none"
            print(f"- {template.name}{marker}: {template.description or 'no description'}\n  variables: {variables}")
        return

    parsed = parse_template(args.file)
    template = PromptTemplate.create(
        args.name or parsed.name,
        parsed.template,
        description=args.description or parsed.description,
        is_default=args.default or parsed.is_default,
    )
    store.save_template(template)
    print(f"Stored template {template.name}")


def cmd_launch(args: argparse.Namespace, settings: ServiceSettings, store: StateStore) -> int:
    task = TaskSnapshot(
        id=args.task_id,
        title=args.title,
        description=args.description,
        priority=args.priority,
        estimated_hours=args.estimated_hours,
        tags=tuple(args.tags),
        goal_title=args.goal_title,
    )
    orchestrator = build_orchestrator(settings, store)
    try:
        session_id = orchestrator.launch(task, template_name=args.template)
        print(f"Launched session {session_id}")
        try:
            session = orchestrator.wait(session_id)
        except KeyboardInterrupt:
            print("Interrupted, cancelling session", file=sys.stderr)
            orchestrator.cancel(session_id)
            session = orchestrator.wait(session_id, timeout=settings.kill_grace_seconds * 2 + 5)
    finally:
        orchestrator.shutdown()
    _print_session(session)
    return 0 if session.status is SessionStatus.COMPLETED else 1


def cmd_status(args: argparse.Namespace, store: StateStore) -> int:
    session = store.load_session(args.session_id)
    if session is None:
        print(f"Unknown session {args.session_id}", file=sys.stderr)
        return 1
    _print_session(session)
    if session.log:
        print("log:")
        for line in session.log:
            print(f"  {line}")
    return 0


def cmd_sessions(args: argparse.Namespace, store: StateStore) -> None:
    if args.task_id:
        sessions = store.list_sessions_for_task(args.task_id)
    elif args.active:
        sessions = store.list_active()
    else:
        sessions = store.list_sessions(limit=args.limit)
    if args.active:
        sessions = [session for session in sessions if not session.is_terminal]
    if not sessions:
        print("No sessions")
        return
    for session in sessions:
        _print_session(session)


def cmd_recover(settings: ServiceSettings, store: StateStore) -> None:
    orchestrator = build_orchestrator(settings, store)
    try:
        recovered = orchestrator.rehydrate()
    finally:
        orchestrator.shutdown(cancel_running=False)
    print(f"Recovered {len(recovered)} orphaned session(s)")
    for session in recovered:
        _print_session(session)


def cmd_cleanup(args: argparse.Namespace, store: StateStore) -> None:
    removed = store.delete_sessions_before(utcnow() - timedelta(days=args.days))
    print(f"Removed {removed} session(s) older than {args.days} day(s)")


def _print_session(session: Session) -> None:
    extras = [f"task={session.task_id}", f"status={session.status.value}"]
    if session.branch_name:
        extras.append(f"branch={session.branch_name}")
    if session.pr_url:
        extras.append(f"pr={session.pr_url}")
    if session.error_message:
        extras.append(f"error={session.error_message}")
    extras.append(f"started={session.started_at.isoformat(timespec='seconds')}")
    print(f"{session.id} [" + ", ".join(extras) + "]")


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "init":
        cmd_init(args)
        return 0

    try:
        settings = load_settings(args.settings)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    if settings.metrics_port is not None and args.command == "launch":
        metrics.start_server(settings.metrics_port, settings.metrics_host)

    store = open_store(settings)
    try:
        if args.command == "config":
            cmd_config(args, store)
        elif args.command == "templates":
            cmd_templates(args, store)
        elif args.command == "launch":
            return cmd_launch(args, settings, store)
        elif args.command == "status":
            return cmd_status(args, store)
        elif args.command == "sessions":
            cmd_sessions(args, store)
        elif args.command == "recover":
            cmd_recover(settings, store)
        elif args.command == "cleanup":
            cmd_cleanup(args, store)
        else:  # pragma: no cover - argparse restricts commands
            parser.print_help()
            return 1
        return 0
    except (TaskAgentError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
