"""
workflows.py

Responsibility: branch, worktree and pull-request lifecycle commands.

Each workflow takes a `RunContext`, returns a plain dict payload for the CLI,
and only writes (git, GitHub, files) when `ctx.dry_run` is False. Board status
updates never fail a workflow; their outcome is reported and logged.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from ideaflow.context import ExecutionError, PreconditionError, RunContext, ValidationError
from ideaflow.conventions import (
    ConventionError,
    branch_matches_id,
    build_branch_name,
    derive_pr_title,
    validate_branch_name,
    validate_pr_title,
)
from ideaflow.git import Git, GitError, Worktree
from ideaflow.github_client import GitHubClient, GitHubError, PullRequest
from ideaflow.ideas import Idea, IdeaError, extract_labels, load_idea, locate_idea
from ideaflow.logs import step
from ideaflow.project_board import StatusResult, ensure_project_status, lookup_item
from ideaflow.project_board import refresh_project_cache as fetch_project_cache
from ideaflow.reconcile import ReconcileError, apply_reconciliation, plan_reconciliation
from ideaflow.renderer import body_preview, render_pr_body
from ideaflow.workspace import now_iso

log = logging.getLogger("ideaflow.workflows")

PROJECT_SCOPES = ["read:project", "project"]


def _safe_current_branch(ctx: RunContext) -> str | None:
    try:
        return ctx.git.current_branch()
    except GitError:
        return None


def _move_board_item(ctx: RunContext, client: GitHubClient | None, idea_id: str, status: str, **kwargs: Any) -> StatusResult:
    if client is None:
        result = StatusResult(False, None, "Skipped - no GitHub token available")
    else:
        result = ensure_project_status(client, idea_id, status, root=ctx.root, **kwargs)
    if result.updated:
        log.info("Project status updated", extra={"meta": {"id": idea_id, "from": result.previous or "none", "to": status}})
    else:
        log.warning("Project status not updated", extra={"meta": {"id": idea_id, "reason": result.message}})
    return result


# ---------------------------------------------------------------------------
# create-branch
# ---------------------------------------------------------------------------


def create_branch(ctx: RunContext, *, idea_id: str, slug: str, prefix: str | None = None, base: str = "main") -> dict[str, Any]:
    try:
        branch = build_branch_name(idea_id, slug, ctx.config, prefix)
    except ConventionError as e:
        raise ValidationError(str(e)) from e

    plan = {
        "branch": branch,
        "base": base,
        "currentBranch": _safe_current_branch(ctx),
        "projectStatus": {"from": "Ticketed", "to": "Branched"},
        "generatedAt": now_iso(),
    }
    if ctx.dry_run:
        return {"dryRun": True, "plan": plan}

    git = ctx.git
    if git.branch_exists(branch):
        raise PreconditionError(f'Branch "{branch}" already exists.')

    with step(log, "Branch created", branch=branch, base=base):
        git.fetch(prune=True)
        git.switch(base)
        git.pull_ff_only()
        git.switch(branch, create=True)

    client = ctx.github(required=False)
    if client is None:
        project = StatusResult(False, None, "Skipped - no GitHub token available")
        log.warning(project.message)
    else:
        scopes = client.verify_scopes(PROJECT_SCOPES)
        if scopes.valid:
            project = _move_board_item(ctx, client, idea_id, "Branched")
        else:
            project = StatusResult(False, None, f"Skipped - {scopes.message}")
            log.warning(scopes.message)

    return {
        "message": f"Branch created: {branch}",
        "data": {"branch": branch, "base": base, "created": now_iso(), "projectStatus": project.to_dict()},
    }


# ---------------------------------------------------------------------------
# open-or-update-pr
# ---------------------------------------------------------------------------


def _resolve_branch(ctx: RunContext, explicit: str | None, idea_id: str) -> str:
    branch = explicit or _safe_current_branch(ctx)
    if not branch:
        raise PreconditionError("Unable to detect current branch. Pass --branch to specify the target branch.")
    try:
        validate_branch_name(branch, ctx.config)
    except ConventionError as e:
        raise ValidationError(f"{e}. Branch is not lifecycle compliant.") from e
    if not branch_matches_id(branch, idea_id):
        raise ValidationError(f'Branch "{branch}" does not match ID {idea_id}. Expected prefix {idea_id}-')
    return branch


def _load_idea_details(ctx: RunContext, idea_id: str) -> tuple[Path, Idea] | None:
    path = locate_idea(ctx.root / ctx.config.ideas.directory, idea_id)
    if path is None:
        return None
    try:
        return path, load_idea(path)
    except IdeaError as e:
        log.warning("Idea file unreadable", extra={"meta": {"path": str(path), "error": e}})
        return None


def _pr_summary(pr: PullRequest | None, action: str, lookup_error: str | None = None) -> dict[str, Any]:
    return {
        "exists": pr is not None,
        "number": pr.number if pr else None,
        "url": pr.url if pr else None,
        "action": action,
        "lookupError": lookup_error,
    }


def open_or_update_pr(
    ctx: RunContext,
    *,
    idea_id: str,
    branch: str | None = None,
    title: str | None = None,
    draft: bool = True,
    base: str = "main",
) -> dict[str, Any]:
    branch = _resolve_branch(ctx, branch, idea_id)
    pr_title = title or derive_pr_title(branch, idea_id)
    try:
        validate_pr_title(pr_title, ctx.config)
    except ConventionError as e:
        raise ValidationError(str(e)) from e

    details = _load_idea_details(ctx, idea_id)
    idea = details[1] if details else None
    labels = extract_labels(idea) if idea else []
    body = render_pr_body(
        idea_id=idea_id,
        branch=branch,
        idea=idea,
        status=idea.status if idea else None,
        source=ctx.relative(details[0]) if details else None,
    )

    client = ctx.github(required=not ctx.dry_run)
    existing: PullRequest | None = None
    lookup_error = None
    if client is not None:
        try:
            existing = client.find_pr_by_branch(branch)
        except GitHubError as e:
            lookup_error = str(e)

    board = lookup_item(ctx.root, client, idea_id)
    plan = {
        "id": idea_id,
        "branch": branch,
        "title": pr_title,
        "draft": draft,
        "labels": labels,
        "idea": {"path": ctx.relative(details[0]), "status": idea.status, "issue": idea.issue_number} if details else None,
        "pr": _pr_summary(existing, "update" if existing else "create", lookup_error),
        "projectStatus": {
            "from": board.status or (idea.status if idea else None) or "Branched",
            "to": "PR Open",
            "note": board.note,
        },
        "prBodyPreview": body_preview(body),
        "generatedAt": now_iso(),
    }
    if ctx.dry_run:
        return {"dryRun": True, "plan": plan}

    client = ctx.require_github()
    if existing is None:
        existing = client.find_pr_by_branch(branch)

    if existing is not None:
        current = client.get_pr(existing.number)
        updates = {}
        if current.title != pr_title:
            updates["title"] = pr_title
        if current.body.rstrip() != body:
            updates["body"] = body
        if updates:
            client.update_pr(existing.number, **updates)
        client.sync_pr_labels(existing.number, labels, mode="merge")
        if draft and not current.draft:
            client.convert_pr_to_draft(current.node_id)
        elif not draft and current.draft:
            client.mark_pr_ready(current.node_id)
        number, url, action = existing.number, current.url or existing.url, "updated" if updates else "unchanged"
    else:
        created = client.create_pr(title=pr_title, body=body, head=branch, base=base, draft=draft)
        number = created.number
        if not number:
            found = client.find_pr_by_branch(branch)
            if found is None:
                raise PreconditionError("PR created but unable to determine PR number from branch lookup.")
            number = found.number
        client.sync_pr_labels(number, labels, mode="merge")
        url, action = created.url, "created"

    log.info("Pull request synced", extra={"meta": {"number": number, "action": action, "branch": branch}})
    project = _move_board_item(ctx, client, idea_id, "PR Open", cache=board.cache, item=board.item) if board.cache else StatusResult(False, None, board.note)

    plan["projectStatus"]["note"] = project.message
    plan["pr"] = {"exists": True, "number": number, "url": url, "action": action, "lookupError": None}
    return {
        "plan": plan,
        "result": {
            "pr": {"number": number, "url": url, "action": action, "draft": draft},
            "project": project.to_dict(),
            "labels": labels,
        },
    }


# ---------------------------------------------------------------------------
# create-worktree / remove-worktree
# ---------------------------------------------------------------------------


def default_worktree_path(root: Path, branch: str) -> Path:
    """Sibling of the repository: `<parent>/<repo>-<branch with slashes as dashes>`."""
    return root.resolve().parent / f"{root.resolve().name}-{branch.replace('/', '-')}"


def create_worktree(
    ctx: RunContext,
    *,
    idea_id: str,
    slug: str,
    prefix: str | None = None,
    base: str = "main",
    path: str | None = None,
) -> dict[str, Any]:
    try:
        branch = build_branch_name(idea_id, slug, ctx.config, prefix)
    except ConventionError as e:
        raise ValidationError(str(e)) from e

    target = (ctx.root / path).resolve() if path else default_worktree_path(ctx.root, branch)
    plan = {"branch": branch, "base": base, "path": str(target), "generatedAt": now_iso()}
    if ctx.dry_run:
        return {"dryRun": True, "plan": plan}

    git = ctx.git
    if git.branch_exists(branch):
        raise PreconditionError(f'Branch "{branch}" already exists.')
    if target.exists():
        raise PreconditionError(f"Worktree path already exists: {target}")

    try:
        with step(log, "Worktree created", branch=branch, path=target):
            git.worktree_add(str(target), branch, base)
    except GitError as e:
        raise ExecutionError(f"Failed to create worktree for {branch}: {e}") from e
    return {"message": f"Worktree created: {target}", "data": plan}


def _find_worktree(managed: list[Worktree], branch: str | None, path: Path | None) -> Worktree | None:
    if path is not None:
        for wt in managed:
            if Path(wt.path).resolve() == path:
                return wt
    if branch:
        for wt in managed:
            if wt.branch == branch:
                return wt
    return None


def remove_worktree(
    ctx: RunContext,
    *,
    branch: str | None = None,
    path: str | None = None,
    keep_branch: bool = False,
    force: bool = False,
    prune: bool = True,
) -> dict[str, Any]:
    """
    Remove a linked worktree and, unless `keep_branch`, its local branch.
    The main worktree is never a candidate.
    """
    if not branch and not path:
        raise ValidationError("Pass a branch or a worktree path to remove.")

    git = ctx.git
    root = ctx.root.resolve()
    managed = [wt for wt in git.worktrees() if Path(wt.path).resolve() != root]
    target = _find_worktree(managed, branch, (ctx.root / path).resolve() if path else None)
    if target is None:
        raise PreconditionError(
            f"No worktree found for {path or branch}",
            data={"worktrees": [{"path": wt.path, "branch": wt.branch} for wt in managed]},
        )

    target_branch = branch or target.branch
    plan = {
        "path": target.path,
        "branch": target_branch,
        "deleteBranch": bool(target_branch) and not keep_branch,
        "prune": prune,
        "force": force,
    }
    if ctx.dry_run:
        return {"dryRun": True, "plan": plan}

    if not force and not Git(target.path).is_clean():
        raise PreconditionError(f"Worktree has uncommitted changes: {target.path}. Commit them or pass --force.")

    try:
        with step(log, "Worktree removed", path=target.path, branch=target_branch or "none"):
            git.worktree_remove(target.path, force=force)
            if prune:
                git.worktree_prune()
            if plan["deleteBranch"] and target_branch and git.branch_exists(target_branch):
                git.delete_branch(target_branch, force=force)
    except GitError as e:
        raise ExecutionError(f"Failed to remove worktree {target.path}: {e}") from e
    return {"message": f"Worktree removed: {target.path}", "data": plan}


# ---------------------------------------------------------------------------
# reconcile-status / refresh-project-cache
# ---------------------------------------------------------------------------


def reconcile_status(ctx: RunContext, *, idea_id: str, file: str | None = None, status: str | None = None) -> dict[str, Any]:
    client = ctx.github(required=False)
    try:
        plan = plan_reconciliation(ctx.root, ctx.config, idea_id, file=file, status=status, client=client)
    except ReconcileError as e:
        raise ValidationError(str(e)) from e
    except IdeaError as e:
        raise PreconditionError(f"Unable to read idea file for {idea_id}: {e}") from e

    if ctx.dry_run:
        return {"dryRun": True, "plan": plan.to_dict()}
    return apply_reconciliation(plan, client=client).to_dict()


def refresh_project_cache(ctx: RunContext, *, number: int = 1, owner: str | None = None) -> dict[str, Any]:
    client = ctx.require_github()
    cache = fetch_project_cache(client, ctx.root, number=number, owner=owner, write=not ctx.dry_run)
    fields = cache.project.get("fields") or {}
    status_options = [o.get("name") for o in (fields.get("Status") or {}).get("options") or []]
    return {
        "dryRun": ctx.dry_run,
        "message": "Project cache refreshed" if not ctx.dry_run else "Project metadata fetched (not written)",
        "cachePath": ctx.relative(cache.path),
        "project": {
            "id": cache.project_id,
            "name": cache.project.get("name"),
            "fieldCount": len(fields),
            "statusOptions": status_options,
        },
    }
