from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest

from ideaflow.context import RunContext
from ideaflow.github_client import GitHubError, Issue, PullRequest, RepoRef, ScopeCheck
from ideaflow.lifecycle import LifecycleConfig, clear_lifecycle_cache, load_lifecycle_config

ARCH_IDEA = """# ARCH-12 Split CI tracks

Lane: C
Status: Ticketed
Issue: #42

## Lane

- **Lane:** C
- **Labels:** ci, infra

## Purpose

Keep CI fast.

## Problem

One job runs everything.

## Proposal

Split into tracks.

## Acceptance Checklist

- [ ] Track A runs lint
- [ ] Track B runs tests
- [ ] Track C runs build
"""

ARCH_FILENAME = "ARCH-12-split-ci.md"

STATUS_OPTIONS = [
    {"id": "opt-ticketed", "name": "Ticketed"},
    {"id": "opt-branched", "name": "Branched"},
    {"id": "opt-pr-open", "name": "PR Open"},
    {"id": "opt-review", "name": "In Review"},
]

PROJECT_CACHE = {
    "cachedAt": "2025-11-03T00:00:00.000Z",
    "version": 3,
    "project": {
        "id": "PVT_1",
        "number": 1,
        "name": "Lifecycle",
        "url": "https://github.com/users/acme/projects/1",
        "fields": {
            "ID": {"id": "F_ID", "type": "TEXT"},
            "Status": {"id": "F_STATUS", "type": "SINGLE_SELECT", "options": STATUS_OPTIONS},
        },
    },
}


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    clear_lifecycle_cache()
    yield
    clear_lifecycle_cache()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A directory that looks like a repository root, with one architecture idea."""
    (tmp_path / ".git").mkdir()
    ideas = tmp_path / "ideas"
    ideas.mkdir()
    (ideas / ARCH_FILENAME).write_text(ARCH_IDEA, encoding="utf-8")
    return tmp_path


@pytest.fixture
def config(repo: Path) -> LifecycleConfig:
    return load_lifecycle_config(repo)


@pytest.fixture
def with_cache(repo: Path) -> Path:
    path = repo / ".repo" / "projects.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(PROJECT_CACHE), encoding="utf-8")
    return path


def item_page(items: list[dict[str, Any]], *, has_next: bool = False, cursor: str | None = None) -> dict[str, Any]:
    return {"node": {"items": {"nodes": items, "pageInfo": {"hasNextPage": has_next, "endCursor": cursor}}}}


def board_item(item_id: str, idea_id: str, status: str | None) -> dict[str, Any]:
    values: list[dict[str, Any]] = [
        {"__typename": "ProjectV2ItemFieldTextValue", "text": idea_id, "field": {"id": "F_ID", "name": "ID"}},
    ]
    if status:
        values.append(
            {
                "__typename": "ProjectV2ItemFieldSingleSelectValue",
                "name": status,
                "optionId": f"opt-{status.lower()}",
                "field": {"id": "F_STATUS", "name": "Status"},
            }
        )
    return {"id": item_id, "content": {"__typename": "Issue", "number": 42}, "fieldValues": {"nodes": values}}


class FakeGitHub:
    """In-memory stand-in for GitHubClient; records every call."""

    def __init__(self) -> None:
        self.repo = RepoRef("acme", "widgets")
        self.calls: list[tuple[str, Any]] = []
        self.graphql_responses: list[Any] = []
        self.prs: dict[int, PullRequest] = {}
        self.issues: dict[int, Issue] = {}
        self.scopes = ScopeCheck(valid=True, message="ok")
        self.next_number = 100
        self.label_failures: set[str] = set()

    def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append(("graphql", variables))
        if query.lstrip().startswith("mutation"):
            return {"updateProjectV2ItemFieldValue": {"projectV2Item": {"id": "x"}}, "addProjectV2ItemById": {"item": {"id": "ITEM_NEW"}}}
        if not self.graphql_responses:
            return item_page([])
        response = self.graphql_responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def viewer_login(self) -> str:
        return "octocat"

    def verify_scopes(self, required: list[str]) -> ScopeCheck:
        return self.scopes

    def find_pr_by_branch(self, branch: str) -> PullRequest | None:
        self.calls.append(("find_pr_by_branch", branch))
        return next((pr for pr in self.prs.values() if pr.head == branch), None)

    def get_pr(self, number: int) -> PullRequest:
        self.calls.append(("get_pr", number))
        if number not in self.prs:
            raise GitHubError("GitHub API error 404 GET /pulls: Not Found", status_code=404)
        return self.prs[number]

    def create_pr(self, *, title: str, body: str, head: str, base: str = "main", draft: bool = True) -> PullRequest:
        self.calls.append(("create_pr", {"title": title, "head": head, "base": base, "draft": draft}))
        number = self.next_number
        self.next_number += 1
        pr = PullRequest(number, title, body, "OPEN", f"https://github.com/acme/widgets/pull/{number}", f"PR_{number}", draft, False, head=head)
        self.prs[number] = pr
        return pr

    def update_pr(self, number: int, *, title: str | None = None, body: str | None = None) -> None:
        self.calls.append(("update_pr", {"number": number, "title": title, "body": body is not None}))

    def sync_pr_labels(self, number: int, labels: list[str], *, mode: str = "replace") -> tuple[list[str], list[str]]:
        self.calls.append(("sync_pr_labels", {"number": number, "labels": list(labels), "mode": mode}))
        return list(labels), []

    def convert_pr_to_draft(self, node_id: str) -> None:
        self.calls.append(("convert_pr_to_draft", node_id))

    def mark_pr_ready(self, node_id: str) -> None:
        self.calls.append(("mark_pr_ready", node_id))

    def get_issue(self, number: int) -> Issue:
        if number not in self.issues:
            raise GitHubError("GitHub API error 404", status_code=404)
        return self.issues[number]

    def get_issue_node_id(self, number: int) -> str:
        return f"I_{number}"

    def list_issues(self, *, state: str = "open", label: str | None = None) -> list[Issue]:
        return [i for i in self.issues.values() if i.state == state.upper()]

    def create_issue(self, title: str, body: str, *, labels: list[str] | None = None, assignees: list[str] | None = None) -> Issue:
        number = self.next_number
        self.next_number += 1
        issue = Issue(number, title, body, "OPEN", f"https://github.com/acme/widgets/issues/{number}", f"I_{number}", tuple(labels or ()))
        self.issues[number] = issue
        self.calls.append(("create_issue", {"title": title, "labels": list(labels or [])}))
        return issue

    def update_issue(self, number: int, **kwargs: Any) -> None:
        self.calls.append(("update_issue", {"number": number, **kwargs}))

    def create_label(self, name: str, color: str, description: str = "") -> None:
        self.calls.append(("create_label", {"name": name, "color": color}))
        if name in self.label_failures:
            raise GitHubError(f"GitHub API error 403 POST /labels: {name}", status_code=403)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def ctx(repo: Path, config: LifecycleConfig, fake_github: FakeGitHub) -> RunContext:
    return RunContext(root=repo, config=config, dry_run=True, client=fake_github)


def _git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=str(cwd), check=True, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
    return proc.stdout


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A real git repository on `main` with one commit. Skipped when git is unavailable."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    root = tmp_path / "work"
    root.mkdir()
    _git(root, "init", "-q")
    _git(root, "checkout", "-q", "-b", "main")
    _git(root, "config", "user.email", "dev@example.invalid")
    _git(root, "config", "user.name", "Dev")
    _git(root, "config", "commit.gpgsign", "false")
    (root / "ideas").mkdir()
    (root / "ideas" / ARCH_FILENAME).write_text(ARCH_IDEA, encoding="utf-8")
    (root / "package.json").write_text(json.dumps({"name": "widgets", "version": "1.2.3"}, indent=2) + "\n", encoding="utf-8")
    _git(root, "add", "-A")
    _git(root, "commit", "-q", "-m", "[ARCH-12] chore: initial layout")
    return root


@pytest.fixture
def git():
    return _git
