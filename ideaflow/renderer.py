"""
renderer.py

Responsibility: render PR and issue bodies from the Jinja2 templates shipped in
`ideaflow/templates/`.

Rules:
- StrictUndefined: a template referencing a missing key is a bug, not an empty string.
- Output is right-trimmed and newline-normalized so repeated renders compare equal
  (PR updates are skipped when the body has not changed).

This module does not know about GitHub, git, or CLI parsing.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from ideaflow.ideas import Idea, extract_checklist_items, extract_sub_issues

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


class RenderError(RuntimeError):
    pass


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=False,
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render(template_name: str, context: dict[str, Any]) -> str:
    try:
        out = _environment().get_template(template_name).render(**context)
    except TemplateError as e:
        raise RenderError(f"Failed rendering template: {template_name}") from e
    return out.replace("\r\n", "\n").rstrip()


def render_pr_body(
    *,
    idea_id: str,
    branch: str,
    idea: Idea | None = None,
    status: str | None = None,
    source: str | None = None,
) -> str:
    """
    Body layout: issue link, Purpose/Problem/Proposal, checklist, then a reference footer.
    """
    context = {
        "id": idea_id,
        "branch": branch,
        "issue_number": idea.issue_number if idea else None,
        "purpose": idea.purpose if idea else None,
        "problem": idea.problem if idea else None,
        "proposal": idea.proposal if idea else None,
        "checklist": extract_checklist_items(idea.content) if idea else [],
        "title": idea.title if idea else None,
        "source": source,
        "status": status,
    }
    return render("pr_body.md.j2", context)


def render_issue_body(idea: Idea, *, source: str) -> str:
    sections = [(heading, body) for heading, body in idea.sections.items() if heading not in ("Sub-issues", "Status")]
    context = {
        "lane": idea.lane,
        "kind": idea.type or "unknown",
        "source": source,
        "sections": sections,
        "sub_issues": extract_sub_issues(idea.content),
    }
    return render("issue_body.md.j2", context)


def body_preview(body: str, max_lines: int = 12, max_chars: int = 1200) -> str:
    if not body:
        return ""
    truncated = "\n".join(body.split("\n")[:max_lines])
    return truncated[:max_chars] + "…" if len(truncated) > max_chars else truncated
