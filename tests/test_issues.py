from __future__ import annotations

from pathlib import Path

import pytest

from conftest import ARCH_FILENAME, FakeGitHub
from ideaflow.context import ExecutionError, PreconditionError, RunContext
from ideaflow.github_client import Issue
from ideaflow.ideas import load_idea
from ideaflow.issues import archive_idea, find_idea_for_issue, ideas_to_issues, label_catalog, setup_labels, update_parent_body
from ideaflow.lifecycle import load_lifecycle_config

COMPOSITION = """# C-1 Checkout flow

Lane: B

## Lane

Lane: B

## Metric Hypothesis

Fewer drop-offs.

## Units In Scope

- U-3

## Acceptance Checklist

- [ ] a
- [ ] b
- [ ] c

## Sub-issues

1. **U-3** - Button states
"""

UNIT = """# U-3 Button

Lane: A

## Lane

Lane: A

## Contracts

x

## Props + Shape

x

## Behaviors

x

## Acceptance Checklist

- [ ] a
- [ ] b
- [ ] c
"""

SOURCE_BODY = "**Source**: `/ideas/ARCH-12-split-ci.md`"


def closed_issue(number: int = 42, **kwargs) -> Issue:
    defaults = {
        "title": "ARCH-12 Split CI tracks",
        "body": SOURCE_BODY,
        "state": "CLOSED",
        "url": "u",
        "node_id": "I_42",
        "state_reason": "completed",
        "created_at": "2025-11-01T09:00:00Z",
        "closed_at": "2025-11-03T09:00:00Z",
    }
    defaults.update(kwargs)
    return Issue(number=number, **defaults)


def test_update_parent_body_keeps_checked_boxes() -> None:
    existing = "Intro\n\n## Sub-Issues\n\n- [x] #5 Old\n- [ ] #6 Other\n\n## Notes\n\nn"
    children = [{"number": 5, "title": "Old"}, {"number": 7, "title": "New"}]
    assert update_parent_body(existing, children) == "Intro\n\n## Sub-Issues\n\n- [x] #5 Old\n- [ ] #7 New\n\n## Notes\n\nn\n"


def test_update_parent_body_appends_and_is_stable() -> None:
    once = update_parent_body("Body\n\n---\n\nfooter", [{"number": 7, "title": "New"}])
    assert once == "Body\n\n---\n\nfooter\n\n## Sub-Issues\n\n- [ ] #7 New\n"
    assert update_parent_body(once, [{"number": 7, "title": "New"}]) == once


def test_dry_run_skips_existing_titles(ctx: RunContext, fake_github: FakeGitHub) -> None:
    fake_github.issues[42] = Issue(42, "ARCH-12 Split CI tracks", "", "OPEN", "u", "I_42")
    (ctx.root / "ideas" / "U-3-button.md").write_text(UNIT, encoding="utf-8")
    (ctx.root / "ideas" / "_template.md").write_text("# template\n", encoding="utf-8")

    out = ideas_to_issues(ctx)
    assert out["processed"] == 2
    assert out["counts"] == {"skipped": 1, "dry-run": 1}
    assert out["results"][1] == {"status": "dry-run", "filename": "U-3-button.md", "title": "U-3 Button", "labels": ["type:unit", "lane-A"]}
    assert "create_issue" not in fake_github.names()


def test_creates_issues_with_sub_issues(ctx: RunContext, fake_github: FakeGitHub) -> None:
    (ctx.root / "ideas" / "C-1-flow.md").write_text(COMPOSITION, encoding="utf-8")
    (ctx.root / "ideas" / "U-3-button.md").write_text(UNIT, encoding="utf-8")
    ctx.dry_run = False

    out = ideas_to_issues(ctx)
    assert out["counts"] == {"created": 2, "skipped": 1}
    arch, flow, unit = out["results"]
    assert arch["issueNumber"] == 100
    assert flow["childCount"] == 1
    assert unit == {"status": "skipped", "filename": "U-3-button.md", "reason": "exists", "issueNumber": 102, "title": "U-3 Button"}

    created = [v for name, v in fake_github.calls if name == "create_issue"]
    assert created[0] == {"title": "ARCH-12 Split CI tracks", "labels": ["type:architecture", "lane-C"]}
    assert fake_github.issues[100].body.startswith("**Lane**: C\n**Type**: architecture\n**Source**: `/ideas/ARCH-12-split-ci.md`")

    parent_update = [v for name, v in fake_github.calls if name == "update_issue"][0]
    assert parent_update["number"] == 101
    assert "## Sub-Issues\n\n- [ ] #102 U-3 Button\n" in parent_update["body"]
    assert "_Generated from `/ideas/C-1-flow.md`" in parent_update["body"]


def test_invalid_ideas_are_reported(ctx: RunContext) -> None:
    (ctx.root / "ideas" / "U-9.md").write_text("# U-9\n", encoding="utf-8")
    out = ideas_to_issues(ctx, name_filter="U-9")
    assert out["results"][0]["status"] == "invalid"


def test_find_idea_for_issue(repo: Path) -> None:
    ideas = repo / "ideas"
    assert find_idea_for_issue(ideas, closed_issue()) == ideas / ARCH_FILENAME
    assert find_idea_for_issue(ideas, closed_issue(body="", title="ARCH-12-split-ci")) == ideas / ARCH_FILENAME
    assert find_idea_for_issue(ideas, closed_issue(body="", title="[ARCH-12] Split")) == ideas / ARCH_FILENAME
    assert find_idea_for_issue(ideas, closed_issue(body="", title="Something else")) is None


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"labels": ("keep-idea",)}, "keep-idea-label"),
        ({"state_reason": "not_planned"}, "not-completed"),
        ({"closed_at": "2025-11-01T09:30:00Z"}, "too-short"),
        ({"body": "", "title": "Unrelated"}, "idea-not-found"),
    ],
)
def test_archive_skips(ctx: RunContext, fake_github: FakeGitHub, overrides: dict, reason: str) -> None:
    fake_github.issues[42] = closed_issue(**overrides)
    out = archive_idea(ctx, issue_number=42)
    assert out == {"status": "skipped", "reason": reason, "issueNumber": 42}


def test_archive_dry_run_and_execute(ctx: RunContext, fake_github: FakeGitHub) -> None:
    fake_github.issues[42] = closed_issue()
    plan = archive_idea(ctx, issue_number=42, year=2025)
    assert plan["status"] == "dry-run"
    assert plan["archivePath"] == "ideas/_archive/2025/ARCH-12-split-ci.md"
    assert (ctx.root / "ideas" / ARCH_FILENAME).exists()

    ctx.dry_run = False
    done = archive_idea(ctx, issue_number=42, year=2025)
    assert done["status"] == "archived"
    assert not (ctx.root / "ideas" / ARCH_FILENAME).exists()
    assert load_idea(ctx.root / done["archivePath"]).status == "Archived"


def test_archive_skip_checks_and_existing_target(ctx: RunContext, fake_github: FakeGitHub) -> None:
    fake_github.issues[42] = closed_issue(labels=("keep-idea",))
    target = ctx.root / "ideas" / "_archive" / "2025" / ARCH_FILENAME
    target.parent.mkdir(parents=True)
    target.write_text("old", encoding="utf-8")
    ctx.dry_run = False
    with pytest.raises(PreconditionError, match="already exists"):
        archive_idea(ctx, issue_number=42, skip_checks=True, year=2025)


def test_archive_missing_issue(ctx: RunContext) -> None:
    with pytest.raises(PreconditionError, match="Issue #5 not found"):
        archive_idea(ctx, issue_number=5)


def test_archive_commits(git_repo: Path, git, fake_github: FakeGitHub) -> None:
    fake_github.issues[42] = closed_issue()
    ctx = RunContext(root=git_repo, config=load_lifecycle_config(git_repo), dry_run=False, client=fake_github)
    out = archive_idea(ctx, issue_number=42, commit=True, year=2025)
    assert out["committed"] is True
    assert ctx.git.recent_commits(1) == ["chore: archive idea for closed issue #42 [skip ci]"]
    assert ctx.git.is_clean()


def test_archive_ignores_files_of_longer_ids(ctx: RunContext, fake_github: FakeGitHub) -> None:
    ideas = ctx.root / "ideas"
    (ideas / ARCH_FILENAME).unlink()
    other = ideas / "ARCH-123-other.md"
    other.write_text("# ARCH-123 Other\n\nLane: A\n", encoding="utf-8")
    fake_github.issues[7] = closed_issue(7, title="[ARCH-12] Split CI tracks", body="")
    ctx.dry_run = False

    out = archive_idea(ctx, issue_number=7, year=2025)
    assert out == {"status": "skipped", "reason": "idea-not-found", "issueNumber": 7}
    assert other.read_text(encoding="utf-8") == "# ARCH-123 Other\n\nLane: A\n"


def test_sub_issue_ids_match_exactly(ctx: RunContext, fake_github: FakeGitHub) -> None:
    (ctx.root / "ideas" / "C-1-flow.md").write_text(COMPOSITION, encoding="utf-8")
    (ctx.root / "ideas" / "U-30-wide.md").write_text(UNIT.replace("U-3", "U-30"), encoding="utf-8")
    ctx.dry_run = False

    out = ideas_to_issues(ctx)
    flow = next(r for r in out["results"] if r["filename"] == "C-1-flow.md")
    assert flow["childCount"] == 0
    assert "update_issue" not in fake_github.names()


def test_archive_without_github_access(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("ideaflow.context.resolve_token", lambda explicit=None: "")
    ctx = RunContext(root=repo, config=load_lifecycle_config(repo), dry_run=False)
    with pytest.raises(PreconditionError, match="GitHub token not found"):
        archive_idea(ctx, issue_number=42)


def test_label_catalog_matches_issue_labels(ctx: RunContext) -> None:
    names = [label["name"] for label in label_catalog(ctx.config)]
    assert names[:4] == ["lane-A", "lane-B", "lane-C", "lane-D"]
    assert "type:architecture" in names and "type:unit" in names
    lane_a = label_catalog(ctx.config)[0]
    assert lane_a == {"name": "lane-A", "color": "0E8A16", "description": "Lane A - Discovery & Design"}


def test_setup_labels_dry_run_and_execute(ctx: RunContext, fake_github: FakeGitHub) -> None:
    plan = setup_labels(ctx)
    assert plan["dryRun"] is True
    assert "create_label" not in fake_github.names()

    ctx.dry_run = False
    fake_github.label_failures.add("type:brief")
    out = setup_labels(ctx)
    assert len(out["data"]["applied"]) == len(plan["plan"]["labels"]) - 1
    assert out["data"]["failed"][0]["label"] == "type:brief"


def test_setup_labels_fails_when_nothing_applies(ctx: RunContext, fake_github: FakeGitHub) -> None:
    fake_github.label_failures.update(label["name"] for label in label_catalog(ctx.config))
    ctx.dry_run = False
    with pytest.raises(ExecutionError) as info:
        setup_labels(ctx)
    assert info.value.exit_code == 13
