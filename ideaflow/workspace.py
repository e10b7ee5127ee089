"""
workspace.py

Responsibility: locate the repository root and write files safely inside it.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path


class WorkspaceError(RuntimeError):
    pass


def repo_root(start: str | Path | None = None) -> Path:
    """
    Walk up from `start` (default: cwd) until a directory containing `.git` is found.
    """
    current = Path(start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    raise WorkspaceError(f"Not in a git repository: {current}")


def is_inside_repo(target: str | Path, root: str | Path) -> bool:
    resolved = Path(target).resolve()
    root_path = Path(root).resolve()
    return resolved == root_path or root_path in resolved.parents


def resolve_in_repo(root: str | Path, candidate: str | Path) -> Path:
    path = Path(candidate)
    if not path.is_absolute():
        path = Path(root) / path
    if not is_inside_repo(path, root):
        raise WorkspaceError(f"Path must reside within repository. Received {path}")
    return path.resolve()


def atomic_write(target: str | Path, content: str) -> None:
    """
    Write `content` to a temp file beside `target`, then rename it into place.
    """
    path = Path(target)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def today() -> str:
    return datetime.now(timezone.utc).date().isoformat()
