"""
context.py

Responsibility: shared state for a single workflow run, plus the exit-code
carrying errors the CLI translates into process status.

Exit codes:
  0  ok
  1  general failure
  10 precondition failed
  11 validation error
  12 no changelog content
  13 execution error
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ideaflow.git import Git
from ideaflow.github_client import GitHubClient, resolve_repo, resolve_token
from ideaflow.lifecycle import LifecycleConfig, load_lifecycle_config
from ideaflow.workspace import repo_root

log = logging.getLogger("ideaflow.context")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PRECONDITION = 10
EXIT_VALIDATION = 11
EXIT_NO_CHANGELOG = 12
EXIT_EXECUTION = 13


class WorkflowError(RuntimeError):
    exit_code = EXIT_FAILURE

    def __init__(self, message: str, *, data: dict[str, Any] | None = None, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.data = data or {}
        if exit_code is not None:
            self.exit_code = exit_code


class PreconditionError(WorkflowError):
    exit_code = EXIT_PRECONDITION


class ValidationError(WorkflowError):
    exit_code = EXIT_VALIDATION


class NoChangelogError(WorkflowError):
    exit_code = EXIT_NO_CHANGELOG


class ExecutionError(WorkflowError):
    exit_code = EXIT_EXECUTION


@dataclass
class RunContext:
    """
    `dry_run` defaults to True; commands only write when it is False.
    A pre-built `client` (tests, scripts) bypasses token resolution.
    """

    root: Path
    config: LifecycleConfig
    dry_run: bool = True
    token: str | None = None
    client: GitHubClient | None = None

    @classmethod
    def discover(cls, cwd: str | Path | None = None, *, dry_run: bool = True, token: str | None = None) -> RunContext:
        root = repo_root(cwd)
        return cls(root=root, config=load_lifecycle_config(root), dry_run=dry_run, token=token)

    @property
    def git(self) -> Git:
        return Git(self.root)

    def github(self, *, required: bool = True) -> GitHubClient | None:
        if self.client is not None:
            return self.client
        token = resolve_token(self.token)
        if not token:
            if required:
                raise PreconditionError("GitHub token not found. Pass --github-token, set GITHUB_TOKEN, or run gh auth login.")
            log.debug("No GitHub token; continuing without GitHub access")
            return None
        repo = resolve_repo(remote_url=self.git.remote_url())
        self.client = GitHubClient(token, repo=repo)
        return self.client

    def require_github(self) -> GitHubClient:
        client = self.github(required=True)
        if client is None:
            raise PreconditionError("GitHub access is required for this command.")
        return client

    def relative(self, path: str | Path) -> str:
        p = Path(path)
        try:
            return p.resolve().relative_to(self.root.resolve()).as_posix()
        except ValueError:
            return str(p)
