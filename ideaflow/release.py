"""
release.py

Responsibility: release bookkeeping commands.

- extract-pr-changelog: merged PR body -> `_tmp/pr-<n>-<slug>.md`
- consolidate-changelog: `_tmp/*.md` -> one `## [version] - date` block in CHANGELOG.md
- bump-version: conventional-commit driven semver bump of package.json
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Mapping

from ideaflow.changelog import (
    deduplicate_changelog,
    extract_changelog_section,
    generate_version_entry,
    get_summary_files,
    insert_version_entry,
    parse_summary_files,
    render_summary,
    summary_filename,
)
from ideaflow.context import NoChangelogError, PreconditionError, RunContext, ValidationError
from ideaflow.conventions import ConventionError, bump_version, detect_bump_type
from ideaflow.github_client import GitHubError
from ideaflow.workspace import atomic_write, resolve_in_repo, today

log = logging.getLogger("ideaflow.release")

BUMP_TYPES = ("major", "minor", "patch")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _read_package_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PreconditionError(f"{path.name} not found or invalid: {e}") from e
    if not isinstance(data, dict):
        raise PreconditionError(f"{path.name} must contain a JSON object")
    return data


def extract_pr_changelog(ctx: RunContext, *, pr_number: int, tmp_dir: str | None = None) -> dict[str, Any]:
    client = ctx.require_github()
    try:
        pr = client.get_pr(pr_number)
    except GitHubError as e:
        if e.status_code == 404:
            raise PreconditionError(f"PR #{pr_number} not found") from e
        raise
    if not pr.merged:
        raise PreconditionError(f"PR #{pr_number} is not merged")

    content = extract_changelog_section(pr.body)
    if not content:
        raise NoChangelogError("No changelog section found in PR body")
    log.info("Found changelog content", extra={"meta": {"pr": pr_number, "chars": len(content)}})

    tmp_path = resolve_in_repo(ctx.root, tmp_dir or ctx.config.changelog.tmp_dir)
    summary_path = tmp_path / summary_filename(pr_number, pr.title)
    summary = render_summary(pr.title, content)
    payload = {
        "dryRun": ctx.dry_run,
        "prNumber": pr_number,
        "prTitle": pr.title,
        "summaryPath": ctx.relative(summary_path),
        "contentLength": len(content),
    }
    if ctx.dry_run:
        payload["preview"] = summary[:200]
        return payload

    atomic_write(summary_path, summary)
    log.info("Summary written", extra={"meta": {"path": ctx.relative(summary_path)}})
    return payload


def consolidate_changelog(
    ctx: RunContext,
    *,
    version: str | None = None,
    date: str | None = None,
    keep_temp: bool = False,
    changelog: str | None = None,
    tmp_dir: str | None = None,
    package_json: str = "package.json",
) -> dict[str, Any]:
    if date and not _DATE_RE.match(date):
        raise ValidationError("date must be YYYY-MM-DD")

    changelog_path = resolve_in_repo(ctx.root, changelog or ctx.config.changelog.path)
    files = get_summary_files(ctx.root, tmp_dir or ctx.config.changelog.tmp_dir)
    if not files:
        log.warning("No summary files detected; nothing to consolidate")
        return {
            "noop": True,
            "dryRun": ctx.dry_run,
            "message": "No summary files found",
            "changelogPath": ctx.relative(changelog_path),
        }

    summaries = parse_summary_files(files)
    for path in files:
        log.info("Found summary", extra={"meta": {"path": ctx.relative(path)}})

    if not version:
        version = _read_package_json(resolve_in_repo(ctx.root, package_json)).get("version")
        if not version:
            raise PreconditionError("version missing in package.json")
    release_date = date or today()

    existing = changelog_path.read_text(encoding="utf-8") if changelog_path.exists() else ""
    entry = generate_version_entry(version, release_date, summaries)
    updated = insert_version_entry(deduplicate_changelog(existing), entry, version)

    payload: dict[str, Any] = {
        "dryRun": ctx.dry_run,
        "version": version,
        "releaseDate": release_date,
        "summaries": len(summaries),
        "summaryTitles": [s.title for s in summaries],
        "changelogPath": ctx.relative(changelog_path),
    }
    if ctx.dry_run:
        payload["wouldDeleteTempFiles"] = not keep_temp
        payload["tempFiles"] = [ctx.relative(p) for p in files]
        return payload

    atomic_write(changelog_path, updated)
    log.info("Updated changelog", extra={"meta": {"path": ctx.relative(changelog_path), "version": version}})

    deleted: list[str] = []
    if not keep_temp:
        for path in files:
            try:
                path.unlink()
                deleted.append(ctx.relative(path))
            except OSError as e:
                log.warning("Could not delete summary", extra={"meta": {"path": str(path), "error": e}})
    payload["tempFilesDeleted"] = deleted
    payload["tempFilesRetained"] = [ctx.relative(p) for p in files] if keep_temp else []
    return payload


def _write_github_output(env: Mapping[str, str], values: dict[str, str]) -> None:
    target = env.get("GITHUB_OUTPUT")
    if not target:
        return
    try:
        with open(target, "a", encoding="utf-8") as fh:
            for key, value in values.items():
                fh.write(f"{key}={value}\n")
    except OSError as e:
        log.warning("Could not write GITHUB_OUTPUT", extra={"meta": {"error": e}})


def bump_package_version(
    ctx: RunContext,
    *,
    bump_type: str | None = None,
    commit_count: int = 10,
    package_json: str = "package.json",
    env: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    if bump_type is not None and bump_type not in BUMP_TYPES:
        raise ValidationError(f"bump type must be one of {', '.join(BUMP_TYPES)}")

    path = resolve_in_repo(ctx.root, package_json)
    data = _read_package_json(path)
    current = str(data.get("version") or "")

    reason = "forced"
    if bump_type is None:
        commits = ctx.git.recent_commits(commit_count)
        bump_type = detect_bump_type(commits)
        reason = "auto-detected"
        log.debug("Analyzed commits", extra={"meta": {"count": len(commits), "sample": " | ".join(commits[:3])}})

    try:
        new_version = bump_version(current, bump_type)
    except ConventionError as e:
        raise ValidationError(str(e)) from e

    plan = {
        "action": "bump_version",
        "currentVersion": current,
        "newVersion": new_version,
        "bumpType": bump_type,
        "detectionReason": reason,
        "file": ctx.relative(path),
    }
    if ctx.dry_run:
        return {"dryRun": True, "plan": plan}

    data["version"] = new_version
    atomic_write(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")
    log.info("Version bumped", extra={"meta": {"from": current, "to": new_version}})
    _write_github_output(os.environ if env is None else env, {"version": new_version, "old_version": current})
    return plan
