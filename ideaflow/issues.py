"""
issues.py

Responsibility: move ideas onto and off the issue tracker.

- ideas-to-issues: one GitHub issue per valid idea file (plus its sub-issues),
  skipped when an open issue with the same title already exists.
- archive-idea: when an issue closes as completed, move its idea file to
  `<archive_directory>/<year>/` and mark it Archived.
- setup-labels: create or update the `lane-<L>` and `type:<type>` labels the
  other two commands apply.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from ideaflow.context import ExecutionError, PreconditionError, RunContext
from ideaflow.github_client import GitHubClient, GitHubError, Issue
from ideaflow.ideas import (
    TYPE_LABELS,
    apply_status_line,
    extract_sub_issues,
    find_idea_files,
    labels_for,
    locate_idea,
    validate_idea_file,
)
from ideaflow.lifecycle import LifecycleConfig
from ideaflow.project_board import ProjectBoardError, add_issue_to_project, load_project_cache
from ideaflow.renderer import render_issue_body
from ideaflow.workspace import atomic_write

log = logging.getLogger("ideaflow.issues")

KEEP_LABEL = "keep-idea"
MIN_OPEN_HOURS = 1.0

LANE_LABEL_STYLE = {
    "A": ("0E8A16", "Lane A - Discovery & Design"),
    "B": ("1D76DB", "Lane B - Active Development"),
    "C": ("FBCA04", "Lane C - Review & QA"),
    "D": ("D93F0B", "Lane D - Done"),
}
TYPE_LABEL_COLOR = "5319E7"
DEFAULT_LABEL_COLOR = "BFD4F2"

_SUB_ISSUES_RE = re.compile(r"^## Sub-Issues[ \t]*\n([\s\S]*?)(?=\n## |\n---|\Z)", re.MULTILINE)
_TASK_RE = re.compile(r"- \[(x|\s)\]\s+#(\d+)", re.IGNORECASE)


def _project_id(ctx: RunContext) -> str | None:
    try:
        return load_project_cache(ctx.root).project_id
    except ProjectBoardError:
        return None


def update_parent_body(existing: str, children: list[dict[str, Any]]) -> str:
    """
    Rewrite (or append) the `## Sub-Issues` task list, keeping checked boxes.
    """
    done: dict[int, bool] = {}
    section = _SUB_ISSUES_RE.search(existing or "")
    if section:
        for m in _TASK_RE.finditer(section.group(1)):
            done[int(m.group(2))] = m.group(1).strip().lower() == "x"

    tasks = "\n".join(f"- [{'x' if done.get(int(c['number'])) else ' '}] #{c['number']} {c['title']}" for c in children)
    block = f"## Sub-Issues\n\n{tasks}\n" if tasks else "## Sub-Issues\n"
    if section:
        body = existing[: section.start()] + block + existing[section.end() :]
    else:
        trimmed = (existing or "").rstrip()
        body = f"{trimmed}\n\n{block}" if trimmed else block
    return body if body.endswith("\n") else body + "\n"


class _IssueSync:
    def __init__(self, ctx: RunContext, client: GitHubClient | None, open_titles: dict[str, int]) -> None:
        self.ctx = ctx
        self.client = client
        self.open_titles = open_titles
        self.project_id = _project_id(ctx) if client else None
        self.ideas_dir = ctx.root / ctx.config.ideas.directory

    def process(self, filename: str, *, skip_existing: bool = True) -> dict[str, Any]:
        path = self.ideas_dir / filename
        validation = validate_idea_file(path)
        if not validation.valid or validation.idea is None:
            for error in validation.errors:
                log.error("Invalid idea file", extra={"meta": {"file": filename, "error": error}})
            return {"status": "invalid", "filename": filename, "errors": validation.errors}

        idea = validation.idea
        if not idea.title:
            return {"status": "skipped", "filename": filename, "reason": "no title"}
        if not idea.lane:
            return {"status": "skipped", "filename": filename, "reason": "no lane"}

        if skip_existing and idea.title in self.open_titles:
            number = self.open_titles[idea.title]
            log.info("Issue already exists", extra={"meta": {"file": filename, "issue": number}})
            return {"status": "skipped", "filename": filename, "reason": "exists", "issueNumber": number, "title": idea.title}

        labels = labels_for(validation.type, idea.lane)
        client = self.client
        if self.ctx.dry_run or client is None:
            return {"status": "dry-run", "filename": filename, "title": idea.title, "labels": labels}

        body = render_issue_body(idea, source=f"{self.ctx.config.ideas.directory}/{filename}")
        try:
            issue = client.create_issue(idea.title, body, labels=labels)
        except GitHubError as e:
            log.error("Failed to create issue", extra={"meta": {"file": filename, "error": e}})
            return {"status": "failed", "filename": filename, "reason": str(e)}

        self.open_titles[idea.title] = issue.number
        log.info("Created issue", extra={"meta": {"issue": issue.number, "title": idea.title}})
        result: dict[str, Any] = {"status": "created", "filename": filename, "issueNumber": issue.number, "title": idea.title}

        if self.project_id:
            try:
                add_issue_to_project(client, self.project_id, issue.number)
                result["addedToProject"] = True
            except (GitHubError, ProjectBoardError) as e:
                log.warning("Could not add issue to project", extra={"meta": {"issue": issue.number, "error": e}})
                result["addedToProject"] = False

        children = []
        for sub in extract_sub_issues(idea.content):
            child = self._process_sub_issue(sub.id)
            if child and child.get("issueNumber"):
                children.append({"number": child["issueNumber"], "title": child["title"]})
        if children:
            self._update_parent(client, issue.number, children)
        result["childCount"] = len(children)
        return result

    def _process_sub_issue(self, sub_id: str) -> dict[str, Any] | None:
        path = locate_idea(self.ideas_dir, sub_id)
        if path is None:
            log.warning("No idea file found for sub-issue", extra={"meta": {"id": sub_id}})
            return None
        result = self.process(path.name)
        return result if result["status"] in ("created", "skipped") else None

    def _update_parent(self, client: GitHubClient, number: int, children: list[dict[str, Any]]) -> None:
        try:
            parent = client.get_issue(number)
            client.update_issue(number, body=update_parent_body(parent.body, children))
            log.info("Updated parent issue", extra={"meta": {"issue": number, "children": len(children)}})
        except GitHubError as e:
            log.warning("Failed to update parent issue", extra={"meta": {"issue": number, "error": e}})


def ideas_to_issues(ctx: RunContext, *, name_filter: str | None = None, skip_existing: bool = True) -> dict[str, Any]:
    client = ctx.github(required=not ctx.dry_run)
    open_titles: dict[str, int] = {}
    if client is not None and skip_existing:
        open_titles = {issue.title: issue.number for issue in client.list_issues(state="open")}

    sync = _IssueSync(ctx, client, open_titles)
    names = [n for n in find_idea_files(sync.ideas_dir, name_filter) if not n.startswith("_")]
    results = [sync.process(name, skip_existing=skip_existing) for name in names]

    counts: dict[str, int] = {}
    for r in results:
        counts[r["status"]] = counts.get(r["status"], 0) + 1
    return {"dryRun": ctx.dry_run, "processed": len(results), "counts": counts, "results": results}


# ---------------------------------------------------------------------------
# setup-labels
# ---------------------------------------------------------------------------


def label_catalog(config: LifecycleConfig) -> list[dict[str, str]]:
    labels = []
    for lane in config.project.lanes:
        color, description = LANE_LABEL_STYLE.get(lane.upper(), (DEFAULT_LABEL_COLOR, f"Lane {lane.upper()}"))
        labels.append({"name": labels_for(None, lane)[0], "color": color, "description": description})
    for kind, name in TYPE_LABELS.items():
        labels.append({"name": name, "color": TYPE_LABEL_COLOR, "description": f"Idea type: {kind}"})
    return labels


def setup_labels(ctx: RunContext) -> dict[str, Any]:
    catalog = label_catalog(ctx.config)
    if ctx.dry_run:
        return {"dryRun": True, "plan": {"labels": catalog}}

    client = ctx.require_github()
    applied: list[str] = []
    failed: list[dict[str, str]] = []
    for label in catalog:
        try:
            client.create_label(label["name"], label["color"], label["description"])
            applied.append(label["name"])
        except GitHubError as e:
            log.warning("Failed to create label", extra={"meta": {"label": label["name"], "error": e}})
            failed.append({"label": label["name"], "error": str(e)})

    data = {"applied": applied, "failed": failed}
    if failed and not applied:
        raise ExecutionError("No labels could be created", data=data)
    log.info("Labels synced", extra={"meta": {"applied": len(applied), "failed": len(failed)}})
    return {"message": f"Processed {len(applied)} label(s)", "data": data}


# ---------------------------------------------------------------------------
# archive-idea
# ---------------------------------------------------------------------------


def find_idea_for_issue(ideas_dir: Path, issue: Issue) -> Path | None:
    """
    Source reference in the body first, then the title as a filename, then a tag in the title.
    """
    source = re.search(r"Source\*?\*?:\s*`/?(?:[\w-]+/)*?([^`/]+\.md)`", issue.body or "")
    if source and (ideas_dir / source.group(1)).is_file():
        return ideas_dir / source.group(1)

    title = issue.title or ""
    if re.match(r"^(U|C|B|ARCH|PB)-", title) and (ideas_dir / f"{title}.md").is_file():
        return ideas_dir / f"{title}.md"

    tag = re.match(r"^\[?([A-Z]+-[A-Za-z0-9-]+?)\]?(?:\s|$)", title)
    if tag:
        return locate_idea(ideas_dir, tag.group(1))
    return None


def _skip_reason(issue: Issue) -> str | None:
    if KEEP_LABEL in issue.labels:
        return "keep-idea-label"
    if issue.state == "CLOSED" and issue.state_reason not in (None, "completed"):
        return "not-completed"
    if issue.created_at and issue.closed_at:
        created = datetime.fromisoformat(issue.created_at.replace("Z", "+00:00"))
        closed = datetime.fromisoformat(issue.closed_at.replace("Z", "+00:00"))
        if (closed - created).total_seconds() / 3600 < MIN_OPEN_HOURS:
            return "too-short"
    return None


def archive_idea(
    ctx: RunContext,
    *,
    issue_number: int,
    skip_checks: bool = False,
    commit: bool = False,
    year: int | None = None,
) -> dict[str, Any]:
    client = ctx.require_github()
    try:
        issue = client.get_issue(issue_number)
    except GitHubError as e:
        raise PreconditionError(f"Issue #{issue_number} not found: {e}") from e

    if not skip_checks:
        reason = _skip_reason(issue)
        if reason:
            log.info("Archive skipped", extra={"meta": {"issue": issue_number, "reason": reason}})
            return {"status": "skipped", "reason": reason, "issueNumber": issue_number}

    ideas_dir = ctx.root / ctx.config.ideas.directory
    source = find_idea_for_issue(ideas_dir, issue)
    if source is None:
        return {"status": "skipped", "reason": "idea-not-found", "issueNumber": issue_number}

    archive_dir = ctx.root / ctx.config.ideas.archive_directory / str(year or datetime.now().year)
    target = archive_dir / source.name
    payload = {
        "status": "dry-run" if ctx.dry_run else "archived",
        "issueNumber": issue_number,
        "filename": source.name,
        "originalPath": ctx.relative(source),
        "archivePath": ctx.relative(target),
    }
    if ctx.dry_run:
        return payload

    if target.exists():
        raise PreconditionError(f"Archive target already exists: {ctx.relative(target)}")
    content = source.read_text(encoding="utf-8")
    atomic_write(target, apply_status_line(content, "Archived"))
    source.unlink()
    log.info("Idea archived", extra={"meta": {"issue": issue_number, "path": payload["archivePath"]}})

    if commit:
        git = ctx.git
        git.add(payload["archivePath"], payload["originalPath"])
        git.commit(
            f"chore: archive idea for closed issue #{issue_number} [skip ci]\n\n"
            f"Archived: {source.name}\nIssue: #{issue_number} - {issue.title}\n"
            f"Reason: {issue.state_reason or 'completed'}\nArchive: {payload['archivePath']}"
        )
        payload["committed"] = True
    return payload
