"""
guards.py

Responsibility: read-only checks run from git hooks and CI.

None of these write anything except `prepare_commit_msg_hook`, which rewrites
the commit message file git hands it.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

from ideaflow.context import PreconditionError, RunContext, ValidationError, WorkflowError
from ideaflow.conventions import (
    extract_header_line,
    extract_ticket_id,
    is_protected_branch,
    prepare_commit_header,
    validate_header,
    validate_pr_body,
)
from ideaflow.git import Git, GitError
from ideaflow.ideas import find_idea_files, validate_idea_file
from ideaflow.workspace import now_iso

log = logging.getLogger("ideaflow.guards")

BRANCH_EXAMPLES = ["feat/ARCH-123-add-guardrails", "fix/U-456-button-state", "refactor/C-789-cleanup-tests"]
SKIP_COMMIT_SOURCES = frozenset({"merge", "squash"})
DEFAULT_RANGE_MAX = 50


def _branch_ticket(ctx: RunContext) -> str | None:
    try:
        return extract_ticket_id(ctx.git.current_branch())
    except GitError as e:
        log.warning("Unable to resolve branch name", extra={"meta": {"error": e}})
        return None


def validate_ideas(ctx: RunContext, *, name_filter: str | None = None) -> dict[str, Any]:
    ideas_dir = ctx.root / ctx.config.ideas.directory
    names = find_idea_files(ideas_dir, name_filter)
    results = [validate_idea_file(ideas_dir / name) for name in names]

    for result in results:
        for error in result.errors:
            log.error("Idea invalid", extra={"meta": {"file": result.filename, "error": error}})
        for warning in result.warnings:
            log.warning("Idea warning", extra={"meta": {"file": result.filename, "warning": warning}})

    invalid = [r for r in results if not r.valid]
    data = {
        "checked": len(results),
        "valid": len(results) - len(invalid),
        "invalid": len(invalid),
        "warnings": sum(len(r.warnings) for r in results),
        "results": [r.to_dict() for r in results],
    }
    if invalid:
        raise ValidationError(f"{len(invalid)} idea file(s) failed validation", data=data)
    return {"message": f"All {len(results)} idea file(s) valid", "data": data}


def validate_commit_headers(
    ctx: RunContext, lines: Iterable[str], *, branch_id: str | None = None
) -> dict[str, Any]:
    """
    Validate one commit header per non-blank line.
    """
    messages = [line.strip() for line in lines if line.strip()]
    if not messages:
        return {"message": "No commit headers provided", "data": {"checked": 0, "invalid": []}}

    invalid = []
    for header in messages:
        result = validate_header(header, branch_id, ctx.config)
        if not result.valid:
            invalid.append({"header": header, "error": result.error, "details": result.details})
    data = {"checked": len(messages), "invalid": invalid}
    if invalid:
        for entry in invalid:
            log.error("Invalid commit header", extra={"meta": entry})
        raise WorkflowError("Invalid commit headers", data=data)
    return {"message": "All commit headers valid", "data": data}


def _resolve_range(git: Git, rev_range: str | None) -> tuple[str, str | None]:
    if rev_range:
        return rev_range, None
    try:
        upstream = git.upstream()
        return f"{git.merge_base(upstream)}..HEAD", upstream
    except GitError:
        return "HEAD", "fallback"


def validate_commit_range(
    ctx: RunContext, rev_range: str | None = None, *, max_count: int = DEFAULT_RANGE_MAX
) -> dict[str, Any]:
    """
    Validate the subjects of commits in a git range (default: upstream merge base..HEAD).

    Violations exit with the validation code, unlike header lists fed on stdin.
    """
    if max_count <= 0:
        raise ValidationError("--max must be a positive integer")
    git = ctx.git
    resolved, source = _resolve_range(git, rev_range)
    log.info("Validating commit range", extra={"meta": {"range": resolved, "source": source or "manual", "max": max_count}})
    try:
        commits = list(git.commit_range(resolved, max_count=max_count))
    except GitError as e:
        if "unknown revision" in str(e) or "bad revision" in str(e):
            raise PreconditionError(f"Git range '{resolved}' not found.") from e
        raise

    invalid = []
    for commit in commits:
        result = validate_header(commit.subject, None, ctx.config)
        if not result.valid:
            invalid.append({"hash": commit.hash, "header": commit.subject, "error": result.error, "details": result.details})
    data = {"range": resolved, "autoRangeSource": source, "checked": len(commits), "invalid": invalid}
    if invalid:
        for entry in invalid:
            log.error("Invalid commit header", extra={"meta": entry})
        raise ValidationError("Commit guard detected invalid headers", data=data)
    return {"message": f"All {len(commits)} commit header(s) valid", "data": data}


def commit_msg_hook(ctx: RunContext, message_file: str | Path) -> dict[str, Any]:
    try:
        message = Path(message_file).read_text(encoding="utf-8")
    except OSError as e:
        raise WorkflowError(f"Error reading commit message: {e}") from e

    header = extract_header_line(message)
    if header.startswith("Automated"):
        return {"message": "Skipped (automated commit)", "data": {"skipped": True}}

    result = validate_header(header, _branch_ticket(ctx), ctx.config)
    if not result.valid:
        raise ValidationError(
            f"{result.error}: {result.details}",
            data={"header": header, "error": result.error, "details": result.details},
        )
    if result.skipped:
        return {"message": "Skipped (merge or revert commit)", "data": {"skipped": True, "header": header}}
    return {"message": "Commit header valid", "data": {"header": header, **result.data}}


def prepare_commit_msg_hook(ctx: RunContext, message_file: str | Path, source: str | None = None) -> dict[str, Any]:
    if source and source.lower() in SKIP_COMMIT_SOURCES:
        return {"message": f"Skipped ({source} commit)", "data": {"skipped": True, "reason": source}}

    ticket = _branch_ticket(ctx)
    if not ticket:
        return {"message": "Skipped (no ticket id on branch)", "data": {"skipped": True, "reason": "missing-branch-id"}}

    path = Path(message_file)
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Failed to read commit message file: {e}") from e

    lines = contents.replace("\r\n", "\n").split("\n")
    updated, modified = prepare_commit_header(lines, ticket)
    if modified:
        path.write_text("\n".join(updated), encoding="utf-8")
    return {
        "message": "Commit header prepared" if modified else "Commit header already valid",
        "data": {"ticketId": ticket, "modified": modified},
    }


def guard_branch(ctx: RunContext, *, branch: str | None = None) -> dict[str, Any]:
    name = branch or ctx.git.current_branch()
    payload: dict[str, Any] = {"generatedAt": now_iso(), "branch": name}
    if is_protected_branch(name):
        return {**payload, "valid": True, "skipped": True, "reason": "protected branch"}

    if not ctx.config.branches.regex.search(name):
        raise ValidationError(
            "Branch name does not match required pattern: type/ID-slug",
            data={**payload, "valid": False, "pattern": ctx.config.branches.pattern, "examples": BRANCH_EXAMPLES},
        )
    return {**payload, "valid": True}


def check_pr_body(body: str) -> dict[str, Any]:
    report = validate_pr_body(body)
    if not report["valid"]:
        missing = [s["name"] for s in report["required"] if not s["found"]]
        raise ValidationError(f"PR body missing required sections: {', '.join(missing)}", data=report)
    return {"message": "PR body valid", "data": report}
