"""Prompt templates: loading, variable extraction and strict rendering."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Mapping
from typing import Optional

import yaml

from .errors import TemplateError
from .models import PromptTemplate
from .models import SessionConfig
from .models import TaskSnapshot
from .models import extract_variables

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")
_SLUG_INVALID_RE = re.compile(r"[\W_]+")

REQUIRED_TASK_VARIABLES = (
    "task_title",
    "task_description",
    "goal_title",
    "priority",
    "estimated_hours",
    "tags",
    "task_id_short",
    "task_title_slug",
)


def slugify(text: str) -> str:
    slug = _SLUG_INVALID_RE.sub("-", text.lower()).strip("-")
    return slug or "task"


def render(template: PromptTemplate | str, values: Mapping[str, str]) -> str:
    """Substitute every ``{{name}}`` placeholder in a single pass.

    A placeholder without a value is a hard failure; substituted text is never
    scanned again, so values containing ``{{...}}`` are emitted verbatim.
    """

    text = template.template if isinstance(template, PromptTemplate) else template
    missing = [name for name in extract_variables(text) if name not in values]
    if missing:
        raise TemplateError(f"Template references unresolved variables: {', '.join(missing)}")
    return _PLACEHOLDER_RE.sub(lambda match: str(values[match.group(1)]), text)


def task_variables(task: TaskSnapshot) -> dict[str, str]:
    if task.estimated_hours is None:
        hours = "Not estimated"
    else:
        hours = f"{task.estimated_hours:g}"
    return {
        "task_id": task.id,
        "task_id_short": task.short_id,
        "task_title": task.title,
        "task_title_slug": slugify(task.title),
        "task_description": task.description or "",
        "goal_title": task.goal_title or "N/A",
        "priority": task.priority,
        "estimated_hours": hours,
        "tags": ", ".join(task.tags),
    }


class PromptRenderer:
    """Renders task prompts and the fixed instructions document for the agent."""

    def render(self, template: PromptTemplate | str, values: Mapping[str, str]) -> str:
        return render(template, values)

    def render_task(self, template: PromptTemplate, task: TaskSnapshot) -> str:
        return render(template, task_variables(task))

    def build_instructions(self, task: TaskSnapshot, config: SessionConfig, branch: str, prompt_file: Path) -> str:
        if config.auto_create_pr:
            pr_note = "A pull request will be automatically created when you complete the task."
        else:
            pr_note = "No automatic PR will be created. Manual review and PR creation required."
        return INSTRUCTIONS_TEMPLATE.format(
            title=task.title,
            prompt_file=prompt_file,
            repository=config.repository,
            branch=branch,
            base_branch=config.base_branch,
            pr_note=pr_note,
        )


INSTRUCTIONS_TEMPLATE = """# Agent Instructions

## Task Context
You are working on the task "{title}".
The full task prompt is in {prompt_file}.

## Git Configuration
- Repository: {repository}
- Branch: {branch}
- Base Branch: {base_branch}

## Task Requirements
1. Read and understand the task requirements
2. Implement the necessary changes
3. Write appropriate tests
4. Ensure code quality and documentation
5. Commit your changes with clear messages

## Pull Request
{pr_note}

## Completion
When you're done:
1. Ensure all changes are committed on {branch}
2. Include a summary of changes in your final output
"""


# Template files -----------------------------------------------------------
def load_templates(directory: Path) -> dict[str, PromptTemplate]:
    templates: dict[str, PromptTemplate] = {}
    if not directory.exists():
        return templates
    for path in sorted(directory.glob("*.md")):
        template = parse_template(path)
        templates[template.name] = template
    return templates


def parse_template(path: Path) -> PromptTemplate:
    text = path.read_text(encoding="utf-8")
    meta, body = _split_front_matter(text)
    name = meta.get("name") or path.stem
    description = meta.get("description")
    return PromptTemplate.create(
        str(name),
        body.strip(),
        description=str(description) if description else None,
        is_default=bool(meta.get("default", False)),
    )


def _split_front_matter(text: str) -> tuple[dict[str, object], str]:
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, text
    end_index: Optional[int] = None
    for idx, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            end_index = idx
            break
    if end_index is None:
        return {}, text
    front = "\n".join(lines[1:end_index])
    body = "\n".join(lines[end_index + 1 :])
    meta = yaml.safe_load(front) or {}
    if not isinstance(meta, dict):
        meta = {}
    return meta, body


__all__ = [
    "INSTRUCTIONS_TEMPLATE",
    "PromptRenderer",
    "REQUIRED_TASK_VARIABLES",
    "load_templates",
    "parse_template",
    "render",
    "slugify",
    "task_variables",
]
