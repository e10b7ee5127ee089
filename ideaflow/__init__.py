"""
ideaflow package

This package implements ideaflow: idea-file lifecycle automation for a git
repository and its GitHub Projects v2 board, as a CLI-first utility.

Key responsibilities are split across modules:
- `lifecycle.py`: load `.repo/lifecycle.yaml` into a typed configuration
- `ideas.py`: parse and validate idea markdown files
- `conventions.py`: branch, commit header, PR title/body and version rules
- `changelog.py`: merge PR summaries into CHANGELOG.md
- `renderer.py`: Jinja2 rendering of PR and issue bodies
- `git.py` / `github_client.py`: isolated git and GitHub API interactions
- `project_board.py` / `reconcile.py`: board lookups, status updates, reconciliation
- `workflows.py`, `release.py`, `guards.py`, `issues.py`: the commands
- `cli.py`: CLI entrypoint (`ideaflow <command>`)
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
