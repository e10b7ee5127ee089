from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeGitHub
from ideaflow.context import PreconditionError, RunContext
from ideaflow.lifecycle import load_lifecycle_config


def test_require_github_returns_the_client(repo: Path, fake_github: FakeGitHub) -> None:
    ctx = RunContext(root=repo, config=load_lifecycle_config(repo), client=fake_github)
    assert ctx.require_github() is fake_github


def test_require_github_without_token(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("ideaflow.context.resolve_token", lambda explicit=None: "")
    ctx = RunContext(root=repo, config=load_lifecycle_config(repo))
    assert ctx.github(required=False) is None
    with pytest.raises(PreconditionError) as info:
        ctx.require_github()
    assert info.value.exit_code == 10
