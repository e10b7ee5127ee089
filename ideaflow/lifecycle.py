"""
lifecycle.py

Responsibility: load and validate the lifecycle configuration into a typed model.

The configuration lives at `<repo>/.repo/lifecycle.yaml` (JSON is accepted as well,
since it is parsed with PyYAML). When the file is absent, `DEFAULT_CONFIG`
describes the standard Draft -> Archived lifecycle.

Every other module reads conventions (statuses, branch/commit/PR patterns, idea
directories) from the returned `LifecycleConfig` rather than hardcoding them.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

CONFIG_RELATIVE_PATH = Path(".repo") / "lifecycle.yaml"

STATUSES = ["Draft", "Ticketed", "Branched", "PR Open", "In Review", "Merged", "Archived"]
COMMIT_TYPES = ["feat", "fix", "docs", "style", "refactor", "perf", "test", "build", "ci", "chore", "revert"]

DEFAULT_CONFIG: dict[str, Any] = {
    "version": "1.0.0",
    "project": {
        "id": "1",
        "fields": {
            "id": "ID",
            "type": "Type",
            "lane": "Lane",
            "status": "Status",
            "owner": "Owner",
            "priority": "Priority",
            "release": "Release",
        },
        "statuses": STATUSES,
        "types": ["Unit", "Composition", "Architecture", "Playbook", "Bug"],
        "lanes": ["A", "B", "C", "D"],
        "priorities": ["P0", "P1", "P2", "P3"],
    },
    "branches": {
        "allowed_prefixes": ["feat", "fix", "refactor", "docs", "chore", "test", "perf", "build", "ci"],
        "pattern": r"^(feat|fix|refactor|docs|chore|test|perf|build|ci)/([A-Z]+-\d+)-[a-z0-9]+(?:-[a-z0-9]+)*$",
    },
    "commits": {
        "pattern": r"^\[([A-Z]+-\d+)\]\s+[a-z]+(\([^)]+\))?!?:\s+.+$",
        "types": COMMIT_TYPES,
        "max_subject_length": 72,
    },
    "pull_requests": {
        "title_pattern": r"^\[([A-Z]+-\d+)\]\s+.+$",
    },
    "ideas": {
        "directory": "ideas",
        "archive_directory": "ideas/_archive",
        "required_fields": ["Lane", "Acceptance Checklist"],
    },
    "changelog": {
        "path": "CHANGELOG.md",
        "tmp_dir": "_tmp",
    },
}

_PREFIX_RE = re.compile(r"^[a-z0-9-]+$")


class LifecycleError(ValueError):
    pass


@dataclass(frozen=True)
class ProjectSettings:
    id: str
    fields: dict[str, str]
    statuses: tuple[str, ...]
    types: tuple[str, ...]
    lanes: tuple[str, ...]
    priorities: tuple[str, ...]

    @property
    def status_set(self) -> frozenset[str]:
        return frozenset(self.statuses)

    @property
    def lane_set(self) -> frozenset[str]:
        return frozenset(self.lanes)


@dataclass(frozen=True)
class BranchSettings:
    allowed_prefixes: tuple[str, ...]
    pattern: str
    regex: re.Pattern[str]

    @property
    def prefix_set(self) -> frozenset[str]:
        return frozenset(self.allowed_prefixes)


@dataclass(frozen=True)
class CommitSettings:
    pattern: str
    regex: re.Pattern[str]
    types: tuple[str, ...]
    max_subject_length: int


@dataclass(frozen=True)
class PullRequestSettings:
    title_pattern: str
    regex: re.Pattern[str]


@dataclass(frozen=True)
class IdeaSettings:
    directory: str
    archive_directory: str
    required_fields: tuple[str, ...]


@dataclass(frozen=True)
class ChangelogSettings:
    path: str
    tmp_dir: str


@dataclass(frozen=True)
class LifecycleConfig:
    """Normalized lifecycle configuration with compiled patterns."""

    version: str
    project: ProjectSettings
    branches: BranchSettings
    commits: CommitSettings
    pull_requests: PullRequestSettings
    ideas: IdeaSettings
    changelog: ChangelogSettings
    root: Path
    config_path: Path | None = None


_cache: dict[Path, LifecycleConfig] = {}


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _normalize_keys(value: Any) -> Any:
    """
    Accept camelCase keys (`allowedPrefixes`) alongside snake_case ones.
    Field-name mappings under `project.fields` keep their values untouched.
    """
    if isinstance(value, dict):
        return {_snake(str(k)): _normalize_keys(v) for k, v in value.items()}
    return value


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise LifecycleError(f"`{key}` must be a mapping in lifecycle config.")
    return value


def _string(data: dict[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise LifecycleError(f"`{where}.{key}` must be a non-empty string.")
    return value.strip()


def _string_list(data: dict[str, Any], key: str, where: str) -> tuple[str, ...]:
    value = data.get(key)
    if not isinstance(value, list) or not value:
        raise LifecycleError(f"`{where}.{key}` must be a non-empty list.")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise LifecycleError(f"`{where}.{key}` entries must be non-empty strings.")
        out.append(item.strip())
    return tuple(out)


def _compile(pattern: str, what: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise LifecycleError(f"Invalid {what} pattern in lifecycle config: {e}") from e


def parse_lifecycle_config(raw: Any, *, root: str | Path, config_path: Path | None = None) -> LifecycleConfig:
    """
    Validate a raw mapping (as read from YAML/JSON) and build a `LifecycleConfig`.
    """
    if not isinstance(raw, dict):
        raise LifecycleError("Lifecycle config must be a mapping at the top level.")
    data = _normalize_keys(raw)

    version = _string(data, "version", "lifecycle")

    project_raw = _section(data, "project")
    fields_raw = _section(project_raw, "fields")
    fields = {}
    for key in ("id", "type", "lane", "status", "owner", "priority", "release"):
        fields[key] = _string(fields_raw, key, "project.fields")
    project = ProjectSettings(
        id=_string(project_raw, "id", "project"),
        fields=fields,
        statuses=_string_list(project_raw, "statuses", "project"),
        types=_string_list(project_raw, "types", "project"),
        lanes=_string_list(project_raw, "lanes", "project"),
        priorities=_string_list(project_raw, "priorities", "project"),
    )

    branches_raw = _section(data, "branches")
    prefixes = _string_list(branches_raw, "allowed_prefixes", "branches")
    for prefix in prefixes:
        if not _PREFIX_RE.match(prefix):
            raise LifecycleError(f"Branch prefix {prefix!r} must match {_PREFIX_RE.pattern}.")
    branch_pattern = _string(branches_raw, "pattern", "branches")
    branches = BranchSettings(
        allowed_prefixes=prefixes,
        pattern=branch_pattern,
        regex=_compile(branch_pattern, "branch"),
    )

    commits_raw = _section(data, "commits")
    commit_pattern = _string(commits_raw, "pattern", "commits")
    commit_types = tuple(commits_raw.get("types") or COMMIT_TYPES)
    max_subject = commits_raw.get("max_subject_length", 72)
    if not isinstance(max_subject, int) or isinstance(max_subject, bool) or max_subject <= 0:
        raise LifecycleError("`commits.max_subject_length` must be a positive integer.")
    commits = CommitSettings(
        pattern=commit_pattern,
        regex=_compile(commit_pattern, "commit"),
        types=commit_types,
        max_subject_length=max_subject,
    )

    pr_raw = _section(data, "pull_requests")
    title_pattern = _string(pr_raw, "title_pattern", "pull_requests")
    pull_requests = PullRequestSettings(
        title_pattern=title_pattern,
        regex=_compile(title_pattern, "pull request title"),
    )

    ideas_raw = _section(data, "ideas")
    directory = _string(ideas_raw, "directory", "ideas")
    ideas = IdeaSettings(
        directory=directory,
        archive_directory=str(ideas_raw.get("archive_directory") or f"{directory}/_archive"),
        required_fields=_string_list(ideas_raw, "required_fields", "ideas"),
    )

    changelog_raw = data.get("changelog") or {}
    if not isinstance(changelog_raw, dict):
        raise LifecycleError("`changelog` must be a mapping when provided.")
    changelog = ChangelogSettings(
        path=str(changelog_raw.get("path") or "CHANGELOG.md"),
        tmp_dir=str(changelog_raw.get("tmp_dir") or "_tmp"),
    )

    return LifecycleConfig(
        version=version,
        project=project,
        branches=branches,
        commits=commits,
        pull_requests=pull_requests,
        ideas=ideas,
        changelog=changelog,
        root=Path(root),
        config_path=config_path,
    )


def load_lifecycle_config(root: str | Path, *, force_reload: bool = False) -> LifecycleConfig:
    """
    Load `<root>/.repo/lifecycle.yaml`, falling back to `DEFAULT_CONFIG`.
    Results are cached per config path.
    """
    root_path = Path(root).resolve()
    config_path = root_path / CONFIG_RELATIVE_PATH
    if not force_reload and config_path in _cache:
        return _cache[config_path]

    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise LifecycleError(f"Failed to parse {config_path}: {e}") from e
        config = parse_lifecycle_config(raw, root=root_path, config_path=config_path)
    else:
        config = parse_lifecycle_config(copy.deepcopy(DEFAULT_CONFIG), root=root_path)

    _cache[config_path] = config
    return config


def clear_lifecycle_cache() -> None:
    _cache.clear()
