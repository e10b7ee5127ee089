"""
ideas.py

Responsibility: parse and validate idea markdown files.

Idea files are loosely structured markdown:

    # ARCH-12 Split CI tracks
    Lane: C
    Status: Ticketed
    Issue: #42

    ## Purpose
    ...
    ## Acceptance Checklist
    - [ ] first item

The filename prefix encodes the idea type (U-, C-, ARCH-, PB-, B-; lowercase = brief).
Optional YAML front matter between `---` fences is read with `yaml.safe_load`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class IdeaError(ValueError):
    pass


@dataclass(frozen=True)
class IdeaRules:
    required_sections: tuple[str, ...]
    filename_pattern: re.Pattern[str]


VALIDATION_RULES: dict[str, IdeaRules] = {
    "unit": IdeaRules(
        ("Lane", "Contracts", "Props + Shape", "Behaviors", "Acceptance Checklist"),
        re.compile(r"^U-[\w-]+\.md$"),
    ),
    "composition": IdeaRules(
        ("Lane", "Metric Hypothesis", "Units In Scope", "Acceptance Checklist"),
        re.compile(r"^C-[\w-]+\.md$"),
    ),
    "architecture": IdeaRules(
        ("Lane", "Purpose", "Problem", "Proposal", "Acceptance Checklist"),
        re.compile(r"^ARCH-[\w-]+\.md$"),
    ),
    "playbook": IdeaRules(
        ("Lane", "Purpose", "Process", "Acceptance Checklist"),
        re.compile(r"^PB-[\w-]+\.md$"),
    ),
    "bug": IdeaRules(
        ("Lane", "Expected Behavior", "Actual Behavior", "Steps"),
        re.compile(r"^B-[\w-]+\.md$"),
    ),
    "brief": IdeaRules(
        ("Problem", "Signal", "Hunch"),
        re.compile(r"^[a-z][\w-]*\.md$"),
    ),
}

# Ordered: ARCH- must be tested before single-letter prefixes.
_TYPE_PREFIXES = (
    ("ARCH-", "architecture"),
    ("PB-", "playbook"),
    ("U-", "unit"),
    ("C-", "composition"),
    ("B-", "bug"),
)

TYPE_LABELS = {
    "unit": "type:unit",
    "composition": "type:composition",
    "architecture": "type:architecture",
    "playbook": "type:playbook",
    "bug": "type:bug",
    "brief": "type:brief",
}

_SECTION_RE = re.compile(r"^##[ \t]+(.+?)[ \t]*$", re.MULTILINE)
_TITLE_RE = re.compile(r"^#[ \t]+(.+)$", re.MULTILINE)
_LANE_RE = re.compile(r"Lane:\s*\**\s*([A-D])\b", re.IGNORECASE)
_ISSUE_RE = re.compile(r"Issue:\s*#(\d+)", re.IGNORECASE)
_STATUS_LINE_RE = re.compile(r"^Status:[ \t]*(.*?)[ \t]*$", re.MULTILINE)
_SUB_ISSUE_RE = re.compile(r"^\d+\.\s+\*\*([A-Z]+-[\w-]+)\*\*\s*-\s*(.+)$")
_ID_RE = re.compile(r"^([A-Z]+-[A-Za-z0-9]+)")


@dataclass(frozen=True)
class SubIssue:
    id: str
    description: str


@dataclass
class Idea:
    """Parsed contents of an idea file."""

    filename: str | None
    type: str | None
    title: str | None = None
    lane: str | None = None
    issue_number: int | None = None
    status: str | None = None
    sections: dict[str, str] = field(default_factory=dict)
    frontmatter: dict[str, Any] = field(default_factory=dict)
    content: str = ""

    def section(self, name: str) -> str | None:
        for key, body in self.sections.items():
            if key.lower() == name.lower():
                return body
        return None

    @property
    def purpose(self) -> str | None:
        return self.section("Purpose")

    @property
    def problem(self) -> str | None:
        return self.section("Problem")

    @property
    def proposal(self) -> str | None:
        return self.section("Proposal")

    @property
    def id(self) -> str | None:
        if not self.filename:
            return None
        m = _ID_RE.match(self.filename)
        return m.group(1) if m else None


@dataclass
class IdeaValidation:
    filename: str
    type: str | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    idea: Idea | None = None

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "type": self.type,
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def get_idea_type(filename: str) -> str | None:
    for prefix, kind in _TYPE_PREFIXES:
        if filename.startswith(prefix):
            return kind
    if re.match(r"^[a-z]", filename):
        return "brief"
    return None


def _split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    if not text.startswith("---\n"):
        return {}, text
    end = text.find("\n---\n", 4)
    if end == -1:
        raise IdeaError("YAML frontmatter starts with '---' but no closing '---' was found.")
    try:
        data = yaml.safe_load(text[4:end]) or {}
    except yaml.YAMLError as e:
        raise IdeaError(f"Invalid YAML frontmatter: {e}") from e
    if not isinstance(data, dict):
        raise IdeaError("YAML frontmatter must be a mapping/object at the top level.")
    return data, text[end + len("\n---\n") :]


def split_sections(content: str) -> dict[str, str]:
    """
    Map each `## Heading` to the trimmed text up to the next `## ` heading.
    """
    sections: dict[str, str] = {}
    matches = list(_SECTION_RE.finditer(content))
    for i, m in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
        sections[m.group(1).strip()] = content[m.end() : end].strip()
    return sections


def _status_from(body: str, sections: dict[str, str]) -> str | None:
    m = _STATUS_LINE_RE.search(body)
    if m and m.group(1):
        return m.group(1).strip("`* ")
    section = next((v for k, v in sections.items() if k.lower() == "status"), None)
    if not section:
        return None
    tick = re.search(r"`([^`]+)`", section)
    if tick:
        return tick.group(1).strip()
    first = section.splitlines()[0].strip() if section.splitlines() else ""
    return first or None


def parse_idea(content: str, filename: str | None = None) -> Idea:
    frontmatter, body = _split_frontmatter(content)
    sections = split_sections(body)

    title_m = _TITLE_RE.search(body)
    lane_m = _LANE_RE.search(body)
    issue_m = _ISSUE_RE.search(body)

    lane = lane_m.group(1).upper() if lane_m else None
    if lane is None and isinstance(frontmatter.get("lane"), str):
        lane = frontmatter["lane"].strip().upper() or None
    issue = int(issue_m.group(1)) if issue_m else None
    if issue is None and isinstance(frontmatter.get("issue"), int):
        issue = frontmatter["issue"]
    status = _status_from(body, sections)
    if status is None and isinstance(frontmatter.get("status"), str):
        status = frontmatter["status"].strip() or None

    return Idea(
        filename=filename,
        type=get_idea_type(filename) if filename else None,
        title=title_m.group(1).strip() if title_m else None,
        lane=lane,
        issue_number=issue,
        status=status,
        sections=sections,
        frontmatter=frontmatter,
        content=content,
    )


def load_idea(path: str | Path) -> Idea:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise IdeaError(f"Unable to read idea file {p}: {e}") from e
    return parse_idea(text, p.name)


def _checklist_lines(content: str) -> list[str]:
    body = split_sections(content).get("Acceptance Checklist")
    if body is None:
        return []
    return [line.strip() for line in body.splitlines()]


def extract_checklist_items(content: str) -> list[str]:
    items = []
    for line in _checklist_lines(content):
        if line.startswith("- [ ]") or line.lower().startswith("- [x]"):
            items.append(line[5:].strip())
    return items


def extract_sub_issues(content: str) -> list[SubIssue]:
    body = split_sections(content).get("Sub-issues")
    if not body:
        return []
    out = []
    for line in body.splitlines():
        m = _SUB_ISSUE_RE.match(line.strip())
        if m:
            out.append(SubIssue(id=m.group(1), description=m.group(2).strip()))
    return out


def extract_labels(idea: Idea) -> list[str]:
    """
    Labels come from a `Labels: a, b` line inside the Lane section.
    """
    lane_section = idea.section("Lane") or ""
    m = re.search(r"Labels?:\s*([^\n]+)", lane_section, re.IGNORECASE)
    if not m:
        return []
    raw = re.sub(r"^[-*]\s*", "", m.group(1).replace("**", ""))
    return [label.strip() for label in raw.split(",") if label.strip()]


def labels_for(kind: str | None, lane: str | None) -> list[str]:
    labels = []
    if kind in TYPE_LABELS:
        labels.append(TYPE_LABELS[kind])
    if lane:
        labels.append(f"lane-{lane.upper()}")
    return labels


def validate_idea_file(path: str | Path) -> IdeaValidation:
    """
    Validate one idea file. Read failures are reported as errors, never raised.
    """
    p = Path(path)
    result = IdeaValidation(filename=p.name, type=get_idea_type(p.name))

    try:
        content = p.read_text(encoding="utf-8")
        idea = parse_idea(content, p.name)
    except (OSError, IdeaError) as e:
        result.type = None
        result.errors.append(f"Failed to read file: {e}")
        return result

    if result.type is None:
        result.errors.append("Filename must start with U-, C-, ARCH-, PB-, or B-")
        return result

    result.idea = idea
    rules = VALIDATION_RULES[result.type]
    if not rules.filename_pattern.match(p.name):
        result.errors.append(f"Filename doesn't match pattern: {rules.filename_pattern.pattern}")

    if not idea.title:
        result.errors.append("Missing top-level heading (# Title)")

    for section in rules.required_sections:
        if section not in idea.sections:
            result.errors.append(f"Missing required section: {section}")

    if not idea.lane and result.type != "brief":
        result.errors.append("Missing or invalid Lane specification (A, B, C, or D)")

    if "Acceptance Checklist" in idea.sections:
        count = len([ln for ln in _checklist_lines(content) if ln.startswith("- [ ]")])
        if count == 0:
            result.warnings.append("Acceptance Checklist is empty")
        elif count < 3:
            result.warnings.append(f"Acceptance Checklist has only {count} item(s) (consider adding more)")

    if idea.title and result.type != "brief":
        prefix = p.name[: p.name.index("-")]
        if prefix not in idea.title:
            result.warnings.append(f"Title doesn't include ticket ID prefix ({prefix})")

    return result


def find_idea_files(ideas_dir: str | Path, name_filter: str | None = None) -> list[str]:
    d = Path(ideas_dir)
    if not d.is_dir():
        return []
    names = sorted(p.name for p in d.iterdir() if p.is_file() and p.suffix == ".md")
    if name_filter:
        names = [n for n in names if n == name_filter or name_filter in n]
    return names


def locate_idea(ideas_dir: str | Path, idea_id: str) -> Path | None:
    """
    Prefer `<id>.md`; otherwise the first file whose name starts with `<id>`
    followed by a non-alphanumeric character. `ARCH-12` never matches
    `ARCH-123-*.md`.
    """
    d = Path(ideas_dir)
    direct = d / f"{idea_id}.md"
    if direct.is_file():
        return direct
    pattern = re.compile(rf"^{re.escape(idea_id)}(?![A-Za-z0-9])")
    names = [n for n in find_idea_files(d) if pattern.match(n)]
    return d / names[0] if names else None


def apply_status_line(content: str, status: str) -> str:
    """
    Set `Status: <status>`. Insert after `Lane:`, else after the title, else at the top.
    """
    line = f"Status: {status}"
    if _STATUS_LINE_RE.search(content):
        return _STATUS_LINE_RE.sub(lambda _m: line, content, count=1)

    lines = content.split("\n")
    for i, existing in enumerate(lines):
        if re.match(r"^Lane:", existing.strip(), re.IGNORECASE):
            lines.insert(i + 1, line)
            return "\n".join(lines)
    for i, existing in enumerate(lines):
        if re.match(r"^#\s+", existing):
            lines.insert(i + 1, line)
            return "\n".join(lines)
    return f"{line}\n\n{content}"
