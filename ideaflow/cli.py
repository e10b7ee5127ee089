"""
cli.py

Responsibility: CLI entrypoint for ideaflow.

Every subcommand shares one contract:
- `--dry-run` is the default; `--yes/-y` executes writes (an explicit --dry-run still wins)
- `--output text|json` controls the result printed to stdout
- logs go to stderr (`--log-level`, `--verbose`, `--quiet`, or LOG_LEVEL)
- exit codes: 0 ok, 1 failure, 10 precondition, 11 validation, 12 no changelog, 13 execution

This module only parses arguments and formats results. Behavior lives in:
- Branch / worktree / PR / board: `workflows.py`
- Release bookkeeping: `release.py`
- Hooks and checks: `guards.py`
- Issue tracker sync and labels: `issues.py`
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable

from ideaflow import guards, issues, release, workflows
from ideaflow.context import (
    EXIT_EXECUTION,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_PRECONDITION,
    EXIT_VALIDATION,
    RunContext,
    WorkflowError,
)
from ideaflow.conventions import ConventionError
from ideaflow.git import GitError
from ideaflow.github_client import GitHubError
from ideaflow.ideas import IdeaError
from ideaflow.lifecycle import LifecycleError
from ideaflow.logs import configure_logging, resolve_log_level
from ideaflow.project_board import ProjectBoardError
from ideaflow.reconcile import ReconcileError
from ideaflow.renderer import RenderError
from ideaflow.workspace import WorkspaceError

log = logging.getLogger("ideaflow.cli")

Handler = Callable[[RunContext, argparse.Namespace], dict[str, Any]]


def _error_exit_code(error: Exception) -> int:
    if isinstance(error, WorkflowError):
        return error.exit_code
    if isinstance(error, (ConventionError, LifecycleError, IdeaError, ReconcileError)):
        return EXIT_VALIDATION
    if isinstance(error, WorkspaceError):
        return EXIT_PRECONDITION
    if isinstance(error, (GitError, GitHubError, ProjectBoardError, RenderError)):
        return EXIT_EXECUTION
    return EXIT_FAILURE


def _text_value(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str, sort_keys=True)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def format_result(payload: dict[str, Any], output: str) -> str:
    if output == "json":
        return json.dumps(payload, indent=2, default=str)
    return "\n".join(f"{key}: {_text_value(value)}" for key, value in payload.items())


def _emit(payload: dict[str, Any], output: str) -> None:
    sys.stdout.write(format_result(payload, output) + "\n")
    sys.stdout.flush()


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def create_branch_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return workflows.create_branch(ctx, idea_id=args.id, slug=args.slug, prefix=args.prefix, base=args.base)


def open_or_update_pr_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return workflows.open_or_update_pr(
        ctx, idea_id=args.id, branch=args.branch, title=args.title, draft=args.draft, base=args.base
    )


def create_worktree_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return workflows.create_worktree(
        ctx, idea_id=args.id, slug=args.slug, prefix=args.prefix, base=args.base, path=args.path
    )


def remove_worktree_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return workflows.remove_worktree(
        ctx, branch=args.branch, path=args.path, keep_branch=args.keep_branch, force=args.force, prune=args.prune
    )


def reconcile_status_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return workflows.reconcile_status(ctx, idea_id=args.id, file=args.file, status=args.status)


def refresh_project_cache_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return workflows.refresh_project_cache(ctx, number=args.project_number, owner=args.owner)


def extract_pr_changelog_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return release.extract_pr_changelog(ctx, pr_number=args.pr_number, tmp_dir=args.tmp_dir)


def consolidate_changelog_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return release.consolidate_changelog(
        ctx,
        version=args.version,
        date=args.date,
        keep_temp=args.keep_temp,
        changelog=args.changelog,
        tmp_dir=args.tmp_dir,
        package_json=args.package_json,
    )


def bump_version_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return release.bump_package_version(
        ctx, bump_type=args.bump_type, commit_count=args.commit_count, package_json=args.package_json
    )


def validate_ideas_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return guards.validate_ideas(ctx, name_filter=args.filter)


def _read_input(path: str | None) -> str:
    if path:
        return Path(path).read_text(encoding="utf-8")
    if sys.stdin is None or sys.stdin.isatty():
        return ""
    return sys.stdin.read()


def validate_commit_headers_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    if args.range is not None:
        return guards.validate_commit_range(ctx, None if args.range == "auto" else args.range, max_count=args.max)
    lines = _read_input(args.commit_list_file).splitlines()
    return guards.validate_commit_headers(ctx, lines, branch_id=args.branch_id)


def validate_pr_body_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return guards.check_pr_body(_read_input(args.body_file))


def commit_msg_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return guards.commit_msg_hook(ctx, args.message_file)


def prepare_commit_msg_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return guards.prepare_commit_msg_hook(ctx, args.message_file, args.source)


def branch_guard_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return guards.guard_branch(ctx, branch=args.branch)


def ideas_to_issues_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return issues.ideas_to_issues(ctx, name_filter=args.filter, skip_existing=not args.include_existing)


def setup_labels_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return issues.setup_labels(ctx)


def archive_idea_cmd(ctx: RunContext, args: argparse.Namespace) -> dict[str, Any]:
    return issues.archive_idea(ctx, issue_number=args.issue_number, skip_checks=args.skip_checks, commit=args.commit)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _contract_flags() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--dry-run", action="store_true", help="Preview actions without writes (default)")
    common.add_argument("--yes", "-y", action="store_true", help="Execute writes (disables dry-run)")
    common.add_argument("--output", choices=["text", "json"], default="text", help="Result format (default: text)")
    common.add_argument("--log-level", default=None, help="trace|debug|info|warn|error (default: LOG_LEVEL or info)")
    common.add_argument("--verbose", "-v", action="store_true", help="Shorthand for --log-level debug")
    common.add_argument("--quiet", "-q", action="store_true", help="Shorthand for --log-level error")
    common.add_argument("--cwd", default=None, help="Working directory used to find the repository root")
    common.add_argument("--github-token", default=None, help="GitHub token (or set env GITHUB_TOKEN / GH_TOKEN)")
    return common


def _build_parser() -> argparse.ArgumentParser:
    common = _contract_flags()
    p = argparse.ArgumentParser(prog="ideaflow", description="ideaflow - idea lifecycle automation for git and GitHub")
    sub = p.add_subparsers(dest="command", required=True)

    def add(name: str, handler: Handler, help_text: str) -> argparse.ArgumentParser:
        sp = sub.add_parser(name, parents=[common], help=help_text, description=help_text)
        sp.set_defaults(func=handler)
        return sp

    b = add("create-branch", create_branch_cmd, "Create a lifecycle-compliant branch and move the item to Branched")
    b.add_argument("--id", required=True, help="Idea identifier (e.g. ARCH-123)")
    b.add_argument("--slug", required=True, help="Lowercase hyphenated slug")
    b.add_argument("--prefix", default=None, help="Branch type prefix (default: feat)")
    b.add_argument("--base", default="main", help="Base branch (default: main)")

    pr = add("open-or-update-pr", open_or_update_pr_cmd, "Open or update the pull request for an idea branch")
    pr.add_argument("--id", required=True, help="Idea identifier (e.g. ARCH-123)")
    pr.add_argument("--branch", default=None, help="Branch to open or update (default: current)")
    pr.add_argument("--title", default=None, help="Explicit PR title override")
    pr.add_argument("--base", default="main", help="Base branch (default: main)")
    pr.add_argument("--draft", dest="draft", action="store_true", default=True, help="Keep PR as draft (default)")
    pr.add_argument("--ready", dest="draft", action="store_false", help="Mark PR ready for review")

    wt = add("create-worktree", create_worktree_cmd, "Create a linked worktree on a new lifecycle branch")
    wt.add_argument("--id", required=True, help="Idea identifier (e.g. ARCH-123)")
    wt.add_argument("--slug", required=True, help="Lowercase hyphenated slug")
    wt.add_argument("--prefix", default=None, help="Branch type prefix (default: feat)")
    wt.add_argument("--base", default="main", help="Base branch (default: main)")
    wt.add_argument("--path", default=None, help="Worktree directory (default: sibling <repo>-<branch>)")

    rw = add("remove-worktree", remove_worktree_cmd, "Remove a linked worktree and its local branch")
    rw.add_argument("--branch", default=None, help="Branch checked out in the worktree")
    rw.add_argument("--path", default=None, help="Worktree directory")
    rw.add_argument("--keep-branch", action="store_true", help="Keep the local branch")
    rw.add_argument("--no-prune", dest="prune", action="store_false", help="Skip git worktree prune")
    rw.add_argument("--force", action="store_true", help="Remove dirty worktrees and unmerged branches")

    r = add("reconcile-status", reconcile_status_cmd, "Align idea file status with the project board")
    r.add_argument("--id", required=True, help="Idea identifier (e.g. ARCH-123)")
    r.add_argument("--file", default=None, help="Idea markdown path (default: located by id)")
    r.add_argument("--status", default=None, help="Target status (default: project status, else Ticketed)")

    c = add("refresh-project-cache", refresh_project_cache_cmd, "Refresh .repo/projects.json from the GitHub project")
    c.add_argument("--project-number", type=int, default=1, help="Project number (default: 1)")
    c.add_argument("--owner", default=None, help="Project owner login (default: repository owner)")

    e = add("extract-pr-changelog", extract_pr_changelog_cmd, "Write a merged PR's changelog section to the temp directory")
    e.add_argument("--pr-number", type=int, required=True, help="Merged PR number")
    e.add_argument("--tmp-dir", default=None, help="Summary directory (default: from lifecycle config)")

    cc = add("consolidate-changelog", consolidate_changelog_cmd, "Fold PR summaries into CHANGELOG.md")
    cc.add_argument("--version", default=None, help="Release version (default: package.json version)")
    cc.add_argument("--date", default=None, help="Release date YYYY-MM-DD (default: today)")
    cc.add_argument("--keep-temp", action="store_true", help="Keep summary files after consolidation")
    cc.add_argument("--changelog", default=None, help="Changelog path (default: from lifecycle config)")
    cc.add_argument("--tmp-dir", default=None, help="Summary directory (default: from lifecycle config)")
    cc.add_argument("--package-json", default="package.json", help="package.json path")

    bv = add("bump-version", bump_version_cmd, "Bump package.json version from recent commits")
    bv.add_argument("bump_type", nargs="?", choices=list(release.BUMP_TYPES), default=None, help="Force bump type")
    bv.add_argument("--commit-count", type=int, default=10, help="Commits to analyze (default: 10)")
    bv.add_argument("--package-json", default="package.json", help="package.json path")

    vi = add("validate-ideas", validate_ideas_cmd, "Validate idea files")
    vi.add_argument("--filter", default=None, help="Only validate files matching this name")

    vc = add("validate-commit-headers", validate_commit_headers_cmd, "Validate commit headers, one per line")
    vc.add_argument("--commit-list-file", default=None, help="File with one header per line (default: stdin)")
    vc.add_argument("--branch-id", default=None, help="Require headers to reference this ticket id")
    vc.add_argument(
        "--range",
        nargs="?",
        const="auto",
        default=None,
        help="Validate commits in a git range instead (bare --range: upstream merge base..HEAD)",
    )
    vc.add_argument("--max", type=int, default=guards.DEFAULT_RANGE_MAX, help="Commits to check with --range (default: 50)")

    vp = add("validate-pr-body", validate_pr_body_cmd, "Check a PR body for required sections")
    vp.add_argument("--body-file", default=None, help="File containing the PR body (default: stdin)")

    cm = add("commit-msg", commit_msg_cmd, "commit-msg git hook")
    cm.add_argument("message_file", help="Commit message file passed by git")

    pc = add("prepare-commit-msg", prepare_commit_msg_cmd, "prepare-commit-msg git hook")
    pc.add_argument("message_file", help="Commit message file passed by git")
    pc.add_argument("source", nargs="?", default=None, help="Commit source passed by git")
    pc.add_argument("sha", nargs="?", default=None, help="Commit sha passed by git")

    bg = add("branch-guard", branch_guard_cmd, "Check a branch name against the lifecycle pattern")
    bg.add_argument("--branch", default=None, help="Branch to validate (default: current)")

    it = add("ideas-to-issues", ideas_to_issues_cmd, "Create GitHub issues for idea files")
    it.add_argument("--filter", default=None, help="Only process files matching this name")
    it.add_argument("--include-existing", action="store_true", help="Do not skip ideas whose issue already exists")

    add("setup-labels", setup_labels_cmd, "Create or update the lane and type labels")

    a = add("archive-idea", archive_idea_cmd, "Archive the idea file for a closed issue")
    a.add_argument("--issue-number", type=int, required=True, help="Closed issue number")
    a.add_argument("--skip-checks", action="store_true", help="Ignore keep-idea label, close reason and age checks")
    a.add_argument("--commit", action="store_true", help="Commit the move")

    return p


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(resolve_log_level(log_level=args.log_level, verbose=args.verbose, quiet=args.quiet))

    dry_run = bool(args.dry_run) or not bool(args.yes)
    try:
        ctx = RunContext.discover(args.cwd, dry_run=dry_run, token=args.github_token)
        payload = args.func(ctx, args)
    except Exception as e:
        code = _error_exit_code(e)
        if code == EXIT_FAILURE and not isinstance(e, WorkflowError):
            log.debug("Unhandled error", exc_info=True)
        log.error(f"{args.command} failed", extra={"meta": {"error": e, "exitCode": code}})
        data = e.data if isinstance(e, WorkflowError) else {}
        _emit({"ok": False, "script": args.command, "error": str(e), "exitCode": code, **data}, args.output)
        return code

    _emit({"ok": True, "script": args.command, **payload}, args.output)
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
