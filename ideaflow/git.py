"""
git.py

Responsibility: the only place that shells out to `git`.

Every call goes through `Git._run`, which raises `GitError` carrying the command
and its combined output. Read-only checks (`is_clean`, `branch_exists`) translate
failures into booleans instead of raising.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator


class GitError(RuntimeError):
    pass


@dataclass(frozen=True)
class Worktree:
    path: str
    branch: str | None = None
    head: str | None = None


@dataclass(frozen=True)
class Commit:
    hash: str
    subject: str


class Git:
    def __init__(self, cwd: str | Path) -> None:
        self.cwd = Path(cwd)

    def _run(self, *args: str) -> str:
        cmd = ["git", *args]
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(self.cwd),
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as e:
            raise GitError("git executable not found on PATH") from e
        except subprocess.CalledProcessError as e:
            raise GitError(f"Command failed: {' '.join(cmd)}\n\n{e.stdout}") from e
        return proc.stdout

    def is_clean(self) -> bool:
        try:
            return self._run("status", "--porcelain").strip() == ""
        except GitError:
            return False

    def current_branch(self) -> str:
        return self._run("rev-parse", "--abbrev-ref", "HEAD").strip()

    def branch_exists(self, name: str) -> bool:
        try:
            self._run("rev-parse", "--verify", "--quiet", f"refs/heads/{name}")
            return True
        except GitError:
            return False

    def recent_commits(self, count: int = 10) -> list[str]:
        out = self._run("log", f"-{int(count)}", "--pretty=format:%s")
        return [line for line in out.split("\n") if line]

    def commit_range(self, rev_range: str, max_count: int = 200) -> Iterator[Commit]:
        out = self._run("log", f"--max-count={int(max_count)}", "--pretty=format:%H%x09%s", rev_range)
        for line in out.split("\n"):
            if "\t" in line:
                sha, subject = line.split("\t", 1)
                yield Commit(hash=sha, subject=subject)

    def upstream(self) -> str:
        return self._run("rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}").strip()

    def merge_base(self, a: str, b: str = "HEAD") -> str:
        return self._run("merge-base", a, b).strip()

    def fetch(self, prune: bool = True) -> None:
        if prune:
            self._run("fetch", "--prune")
        else:
            self._run("fetch")

    def switch(self, branch: str, *, create: bool = False) -> None:
        if create:
            self._run("switch", "-c", branch)
        else:
            self._run("switch", branch)

    def pull_ff_only(self) -> None:
        self._run("pull", "--ff-only")

    def remote_url(self, remote: str = "origin") -> str | None:
        try:
            return self._run("remote", "get-url", remote).strip() or None
        except GitError:
            return None

    def add(self, *paths: str) -> None:
        self._run("add", "--", *paths)

    def commit(self, message: str) -> None:
        self._run("commit", "-m", message)

    def worktree_add(self, path: str, branch: str, base: str = "main") -> None:
        self._run("worktree", "add", "-b", branch, path, base)

    def worktree_remove(self, path: str, *, force: bool = False) -> None:
        if force:
            self._run("worktree", "remove", "--force", path)
        else:
            self._run("worktree", "remove", path)

    def worktree_prune(self) -> None:
        self._run("worktree", "prune")

    def delete_branch(self, name: str, *, force: bool = False) -> None:
        self._run("branch", "-D" if force else "-d", name)

    def worktrees(self) -> list[Worktree]:
        return parse_worktree_porcelain(self._run("worktree", "list", "--porcelain"))


def parse_worktree_porcelain(output: str) -> list[Worktree]:
    found: list[Worktree] = []
    current: dict[str, str] = {}
    for line in [*output.split("\n"), ""]:
        if line.startswith("worktree "):
            current["path"] = line[len("worktree ") :]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch ") :].replace("refs/heads/", "", 1)
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD ") :]
        elif line == "":
            if "path" in current:
                found.append(Worktree(path=current["path"], branch=current.get("branch"), head=current.get("head")))
            current = {}
    return found
