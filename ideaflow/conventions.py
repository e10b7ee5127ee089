"""
conventions.py

Responsibility: naming and formatting guardrails shared by hooks, checks, and workflows.

- Branches:       <prefix>/<ID>-<slug>            e.g. feat/ARCH-123-add-guardrails
- Commit headers: [<ID>] <type>(<scope>): <subject>
- PR titles:      [<ID>] Title Words
- PR bodies:      must link an issue (`Closes #N`) or a ticket (`Linked ticket: ID`)

Patterns and allowed values come from `LifecycleConfig`; `DEFAULT_CONFIG` applies
when no config is passed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from ideaflow.lifecycle import COMMIT_TYPES, LifecycleConfig

ID_RE = re.compile(r"^[A-Z]+-[A-Za-z0-9]+$")
SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
PROTECTED_BRANCHES = frozenset({"main", "master", "develop", "HEAD"})

_TICKET_RE = re.compile(r"(?<![A-Za-z0-9])([A-Za-z]+)-(\d+)(?![A-Za-z0-9])")
_BRACKET_RE = re.compile(r"^\[([^\]]*)\]\s*(.*)$")
_CONVENTIONAL_RE = re.compile(r"^([a-z]+)(?:\(([^)]+)\))?(!)?:\s(.+)$")
_STRICT_TICKET_RE = re.compile(r"^[A-Z]+-\d+$")
_SLUG_TICKET_RE = re.compile(r"^[A-Za-z]+-[\w-]+$")

DEFAULT_MAX_SUBJECT = 72


class ConventionError(ValueError):
    pass


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------


def resolve_prefix(prefix: str | None, config: LifecycleConfig) -> str:
    candidate = (prefix or "feat").lower()
    if candidate not in config.branches.prefix_set:
        allowed = ", ".join(config.branches.allowed_prefixes)
        raise ConventionError(f'Branch prefix "{candidate}" not allowed. Must be one of {allowed}')
    return candidate


def build_branch_name(idea_id: str, slug: str, config: LifecycleConfig, prefix: str | None = None) -> str:
    if not ID_RE.match(idea_id or ""):
        raise ConventionError(f"ID must follow pattern ARCH-123 (got {idea_id!r}).")
    if not SLUG_RE.match(slug or ""):
        raise ConventionError("Slug must be lowercase with hyphens (e.g. branch-workflow-refresh).")
    branch = f"{resolve_prefix(prefix, config)}/{idea_id}-{slug}"
    validate_branch_name(branch, config)
    return branch


def validate_branch_name(branch: str, config: LifecycleConfig) -> None:
    if not config.branches.regex.search(branch):
        raise ConventionError(f'Branch "{branch}" does not match lifecycle pattern {config.branches.pattern}')


def branch_matches_id(branch: str, idea_id: str) -> bool:
    _, _, rest = branch.partition("/")
    return bool(rest) and rest.startswith(f"{idea_id}-")


def is_protected_branch(branch: str) -> bool:
    return branch in PROTECTED_BRANCHES


# ---------------------------------------------------------------------------
# Commit headers
# ---------------------------------------------------------------------------


@dataclass
class HeaderResult:
    valid: bool
    error: str | None = None
    details: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False


def extract_header_line(message: str) -> str:
    """
    First non-blank line that is not a git comment.
    """
    for line in message.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            return stripped
    return ""


def extract_ticket_id(text: str | None) -> str | None:
    if not text:
        return None
    m = _TICKET_RE.search(text)
    if not m:
        return None
    return f"{m.group(1).upper()}-{m.group(2)}"


def _fail(error: str, details: str) -> HeaderResult:
    return HeaderResult(valid=False, error=error, details=details)


def validate_header(header: str, branch_id: str | None = None, config: LifecycleConfig | None = None) -> HeaderResult:
    header = (header or "").strip()
    if not header:
        return _fail("Empty commit header", "Commit header cannot be empty")
    if header.startswith("Merge") or header.startswith("Revert"):
        return HeaderResult(valid=True, skipped=True)

    bracket = _BRACKET_RE.match(header)
    if not bracket:
        return _fail("Missing ticket id", "Header must start with [TICKET-ID], e.g. [ARCH-123] feat(scope): subject")

    ticket, rest = bracket.group(1).strip(), bracket.group(2)
    if not _STRICT_TICKET_RE.match(ticket):
        if _SLUG_TICKET_RE.match(ticket):
            return _fail("Slug detected in commit header", f"Use a numeric ticket id instead of [{ticket}]")
        return _fail("Invalid ticket id", f"[{ticket}] is not a ticket id like ARCH-123")

    conventional = _CONVENTIONAL_RE.match(rest)
    if not conventional:
        return _fail("Header must follow Conventional Commit format", "Expected: [ID] type(scope): subject")

    commit_type, scope, bang, subject = conventional.groups()
    allowed = config.commits.types if config else COMMIT_TYPES
    if commit_type not in allowed:
        return _fail("Invalid commit type", f'"{commit_type}" is not one of {", ".join(allowed)}')

    if branch_id and ticket != branch_id.upper():
        return _fail("Ticket id does not match branch", f"Header uses {ticket}, branch is {branch_id}")

    max_len = config.commits.max_subject_length if config else DEFAULT_MAX_SUBJECT
    if len(subject) > max_len:
        return _fail("Subject too long", f"Subject is {len(subject)} characters (max {max_len})")

    if config and not config.commits.regex.search(header):
        return _fail("Header does not match configured pattern", config.commits.pattern)

    return HeaderResult(
        valid=True,
        data={
            "ticketId": ticket,
            "type": commit_type,
            "scope": scope,
            "breaking": bool(bang),
            "subject": subject,
        },
    )


def _build_header(ticket_id: str, subject: str) -> str:
    subject = subject.strip()
    return f"[{ticket_id}] type(scope): {subject}" if subject else f"[{ticket_id}] type(scope): "


def prepare_commit_header(lines: list[str], ticket_id: str) -> tuple[list[str], bool]:
    """
    Prefill or correct the header line of a commit message with the branch ticket id.
    Returns (lines, modified).
    """
    original = list(lines)
    updated = list(lines)

    index = next((i for i, ln in enumerate(updated) if ln.strip() and not ln.lstrip().startswith("#")), -1)
    header = updated[index].strip() if index >= 0 else ""

    if header.startswith("Merge"):
        return original, False
    if index == -1:
        return [f"[{ticket_id}] type(scope): ", *original], True

    existing = extract_ticket_id(header) if header.startswith("[") else None
    if not header.startswith("["):
        updated[index] = _build_header(ticket_id, header)
    elif not existing:
        updated[index] = _build_header(ticket_id, re.sub(r"^\[[^\]]+\]\s*", "", header))
    elif existing != ticket_id:
        updated[index] = re.sub(r"^\[[^\]]+\]", f"[{ticket_id}]", header)
    elif not re.match(r"^\[[^\]]+\]\s+[a-z]+", header):
        updated[index] = _build_header(ticket_id, re.sub(r"^\[[^\]]+\]\s*", "", header))

    modified = updated != original
    return (updated if modified else original), modified


# ---------------------------------------------------------------------------
# Pull requests
# ---------------------------------------------------------------------------


def derive_pr_title(branch: str, idea_id: str) -> str:
    _, _, rest = branch.partition("/")
    slug = rest.replace(f"{idea_id}-", "", 1)
    words = [w[:1].upper() + w[1:] for w in slug.split("-") if w]
    return f"[{idea_id}] {' '.join(words)}"


def validate_pr_title(title: str, config: LifecycleConfig) -> None:
    if not config.pull_requests.regex.search(title):
        raise ConventionError(f'PR title "{title}" does not satisfy {config.pull_requests.title_pattern}.')


_PR_REQUIRED = (("Issue Link", re.compile(r"^(Closes #\d+|Linked ticket: [A-Z]+-\w+)", re.MULTILINE)),)
_PR_OPTIONAL = tuple(
    (name, re.compile(rf"^## {re.escape(name)}[ \t]*$", re.MULTILINE))
    for name in ("Purpose", "Problem", "Proposal", "Changes", "Acceptance Checklist")
)


def validate_pr_body(body: str) -> dict[str, Any]:
    body = body or ""
    required = [{"name": name, "found": bool(rx.search(body)), "critical": True} for name, rx in _PR_REQUIRED]
    optional = [{"name": name, "found": bool(rx.search(body))} for name, rx in _PR_OPTIONAL]
    has_bullets = bool(re.search(r"^## Changes\s*\n[^#]*?^[-*]\s+", body, re.MULTILINE | re.DOTALL))
    return {
        "valid": all(s["found"] for s in required),
        "required": required,
        "optional": optional,
        "metadata": {
            "hasIdeaReference": "**Idea**:" in body,
            "hasSourceReference": "**Source**:" in body,
            "hasBranchReference": "**Branch**:" in body,
            "hasChangesBullets": has_bullets,
            "bodyLength": len(body),
        },
        "summary": {
            "requiredPassed": sum(s["found"] for s in required),
            "requiredTotal": len(required),
            "optionalPassed": sum(s["found"] for s in optional),
            "optionalTotal": len(optional),
        },
    }


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


def detect_bump_type(commits: list[str]) -> str:
    if any("[MAJOR]" in m or "BREAKING CHANGE" in m or "breaking:" in m.lower() or re.search(r"\w!:", m) for m in commits):
        return "major"
    if any("[MINOR]" in m or re.search(r"\bfeat(\([^)]*\))?:", m) or "feature:" in m for m in commits):
        return "minor"
    return "patch"


def bump_version(current: str, kind: str) -> str:
    m = re.match(r"^(\d+)\.(\d+)\.(\d+)", current or "")
    if not m:
        raise ConventionError(f"Version {current!r} is not semantic (MAJOR.MINOR.PATCH).")
    major, minor, patch = (int(x) for x in m.groups())
    if kind == "major":
        return f"{major + 1}.0.0"
    if kind == "minor":
        return f"{major}.{minor + 1}.0"
    if kind == "patch":
        return f"{major}.{minor}.{patch + 1}"
    raise ConventionError(f"Unknown bump type {kind!r} (expected major, minor, or patch).")
