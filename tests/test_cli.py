from __future__ import annotations

import json
from pathlib import Path

import pytest

from ideaflow.cli import _error_exit_code, format_result, main
from ideaflow.context import ExecutionError, NoChangelogError
from ideaflow.conventions import ConventionError
from ideaflow.github_client import GitHubError
from ideaflow.workspace import WorkspaceError


def run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict, str]:
    code = main(list(argv))
    captured = capsys.readouterr()
    return code, json.loads(captured.out), captured.err


def test_branch_guard_ok(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, _ = run(capsys, "branch-guard", "--branch", "feat/ARCH-12-split-ci", "--cwd", str(repo), "--output", "json")
    assert code == 0
    assert out["ok"] is True
    assert out["script"] == "branch-guard"
    assert out["valid"] is True


def test_branch_guard_failure_exit_code(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, err = run(capsys, "branch-guard", "--branch", "feature/x", "--cwd", str(repo), "--output", "json")
    assert code == 11
    assert out["ok"] is False
    assert out["exitCode"] == 11
    assert out["error"] == "Branch name does not match required pattern: type/ID-slug"
    assert "pattern" in out
    assert "[ERROR] branch-guard failed" in err


def test_validate_commit_headers_from_file(repo: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    headers = tmp_path / "headers.txt"
    headers.write_text("[ARCH-12] feat: a\nfix: missing ticket\n", encoding="utf-8")
    code, out, _ = run(
        capsys, "validate-commit-headers", "--commit-list-file", str(headers), "--cwd", str(repo), "--output", "json"
    )
    assert code == 1
    assert out["checked"] == 2
    assert [i["header"] for i in out["invalid"]] == ["fix: missing ticket"]


def test_validate_pr_body_from_file(repo: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    body = tmp_path / "body.md"
    body.write_text("Linked ticket: ARCH-12\n\n## Changes\n\n- a\n", encoding="utf-8")
    code, out, _ = run(capsys, "validate-pr-body", "--body-file", str(body), "--cwd", str(repo), "--output", "json")
    assert code == 0
    assert out["data"]["valid"] is True


def test_outside_repository_is_precondition_failure(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, _ = run(capsys, "validate-ideas", "--cwd", str(tmp_path / "nowhere"), "--output", "json")
    assert code == 10
    assert out["error"].startswith("Not in a git repository")


def test_dry_run_is_default_and_wins_over_yes(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    package = repo / "package.json"
    package.write_text('{"version": "1.2.3"}\n', encoding="utf-8")

    code, out, _ = run(capsys, "bump-version", "minor", "--cwd", str(repo), "--output", "json")
    assert code == 0 and out["dryRun"] is True
    assert out["plan"]["newVersion"] == "1.3.0"

    run(capsys, "bump-version", "minor", "--yes", "--dry-run", "--cwd", str(repo), "--output", "json")
    assert json.loads(package.read_text(encoding="utf-8"))["version"] == "1.2.3"

    code, out, _ = run(capsys, "bump-version", "minor", "-y", "--cwd", str(repo), "--output", "json", "--quiet")
    assert code == 0
    assert out["newVersion"] == "1.3.0"
    assert json.loads(package.read_text(encoding="utf-8"))["version"] == "1.3.0"


def test_text_output(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["validate-ideas", "--cwd", str(repo)])
    out = capsys.readouterr().out
    assert code == 0
    assert out.splitlines()[:3] == ["ok: true", "script: validate-ideas", "message: All 1 idea file(s) valid"]


def test_format_result_text() -> None:
    assert format_result({"ok": True, "data": {"b": 2, "a": 1}, "x": None}, "text") == 'ok: true\ndata: {"a": 1, "b": 2}\nx: null'


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (NoChangelogError("none"), 12),
        (ExecutionError("failed"), 13),
        (ConventionError("bad"), 11),
        (WorkspaceError("outside"), 10),
        (GitHubError("down"), 13),
        (ValueError("other"), 1),
    ],
)
def test_error_exit_codes(error: Exception, code: int) -> None:
    assert _error_exit_code(error) == code


def test_validate_commit_headers_over_a_range(git_repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, _ = run(capsys, "validate-commit-headers", "--range", "HEAD", "--max", "5", "--cwd", str(git_repo), "--output", "json")
    assert code == 0
    assert out["data"]["checked"] == 1
    assert out["data"]["range"] == "HEAD"


def test_setup_labels_previews_by_default(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, _ = run(capsys, "setup-labels", "--cwd", str(repo), "--output", "json")
    assert code == 0
    assert out["dryRun"] is True
    assert out["plan"]["labels"][0]["name"] == "lane-A"


def test_worktree_commands_preview(git_repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, _ = run(
        capsys, "create-worktree", "--id", "ARCH-12", "--slug", "split-ci", "--path", "../wt", "--cwd", str(git_repo), "--output", "json"
    )
    assert code == 0
    assert out["plan"]["path"] == str((git_repo.parent / "wt").resolve())

    code, out, _ = run(capsys, "remove-worktree", "--branch", "feat/ARCH-12-split-ci", "--cwd", str(git_repo), "--output", "json")
    assert code == 10
    assert out["error"] == "No worktree found for feat/ARCH-12-split-ci"
