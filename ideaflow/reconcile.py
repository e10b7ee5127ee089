"""
reconcile.py

Responsibility: compare an idea file's status with its project board item and
bring both to the same lifecycle status.

When no status is requested, the Project wins: a known lifecycle status on the
board becomes the target for the idea file. Otherwise the target falls back to
`Ticketed`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from ideaflow.github_client import GitHubClient
from ideaflow.ideas import apply_status_line, load_idea, locate_idea
from ideaflow.lifecycle import LifecycleConfig
from ideaflow.project_board import ProjectCache, ProjectItem, StatusResult, ensure_project_status, lookup_item
from ideaflow.workspace import atomic_write, now_iso, resolve_in_repo

log = logging.getLogger("ideaflow.reconcile")

DEFAULT_TARGET = "Ticketed"
UNKNOWN = "Unknown"


class ReconcileError(ValueError):
    pass


@dataclass
class ReconcilePlan:
    id: str
    idea_path: Path
    idea_status: str
    project_status: str
    target: str
    idea_action: str
    project_action: str
    notes: dict[str, str] = field(default_factory=dict)
    generated_at: str = ""
    cache: ProjectCache | None = None
    item: ProjectItem | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ideaPath": str(self.idea_path),
            "status": {
                "idea": self.idea_status,
                "project": self.project_status,
                "target": self.target,
                "ideaAction": self.idea_action,
                "projectAction": self.project_action,
            },
            "notes": dict(self.notes),
            "generatedAt": self.generated_at,
        }


@dataclass(frozen=True)
class ReconcileResult:
    plan: ReconcilePlan
    idea_updated: bool
    project: StatusResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan.to_dict(),
            "result": {
                "idea": {"updated": self.idea_updated, "path": str(self.plan.idea_path)},
                "project": self.project.to_dict(),
            },
        }


def resolve_idea_path(root: Path, config: LifecycleConfig, idea_id: str, file: str | None = None) -> Path:
    if file:
        return resolve_in_repo(root, file)
    ideas_dir = root / config.ideas.directory
    return locate_idea(ideas_dir, idea_id) or ideas_dir / f"{idea_id}.md"


def plan_reconciliation(
    root: str | Path,
    config: LifecycleConfig,
    idea_id: str,
    *,
    file: str | None = None,
    status: str | None = None,
    client: GitHubClient | None = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconcilePlan:
    root_path = Path(root)
    idea_path = resolve_idea_path(root_path, config, idea_id, file)
    idea = load_idea(idea_path)
    idea_status = idea.status or UNKNOWN

    if status and status not in config.project.status_set:
        raise ReconcileError(f'Status "{status}" not allowed. Expected one of {", ".join(config.project.statuses)}.')

    lookup = lookup_item(root_path, client, idea_id, retries=retries, retry_delay=retry_delay, sleep=sleep)
    current = lookup.status

    if status:
        target = status
    elif current in config.project.status_set:
        target = current
    else:
        target = DEFAULT_TARGET

    return ReconcilePlan(
        id=idea_id,
        idea_path=idea_path,
        idea_status=idea_status,
        project_status=current or UNKNOWN,
        target=target,
        idea_action="noop" if idea_status == target else f"update idea status to {target}",
        project_action="noop" if current == target else f"set project status to {target}",
        notes={"project": lookup.note},
        generated_at=now_iso(),
        cache=lookup.cache,
        item=lookup.item,
    )


def apply_reconciliation(
    plan: ReconcilePlan,
    *,
    client: GitHubClient | None = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconcileResult:
    """
    Write the Status line (when it differs) and align the board item.
    """
    original = plan.idea_path.read_text(encoding="utf-8")
    updated = apply_status_line(original, plan.target)
    idea_changed = updated != original
    if idea_changed:
        atomic_write(plan.idea_path, updated)
        log.info("Idea status updated", extra={"meta": {"id": plan.id, "status": plan.target}})

    if plan.cache is None:
        project = StatusResult(False, None, plan.notes.get("project") or "Project cache unavailable.")
    else:
        project = ensure_project_status(
            client,
            plan.id,
            plan.target,
            cache=plan.cache,
            item=plan.item,
            retries=retries,
            retry_delay=retry_delay,
            sleep=sleep,
        )
    if not project.updated and plan.project_action != "noop":
        log.warning("Project status not updated", extra={"meta": {"id": plan.id, "reason": project.message}})

    plan.idea_status = plan.target
    plan.idea_action = f"updated idea status to {plan.target}" if idea_changed else "noop"
    if project.updated:
        plan.project_status = plan.target
        plan.project_action = f"updated project status to {plan.target}"
    plan.notes["project"] = project.message
    return ReconcileResult(plan=plan, idea_updated=idea_changed, project=project)
