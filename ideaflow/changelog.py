"""
changelog.py

Responsibility: build and merge CHANGELOG.md entries.

Entries have the shape:

    ## [1.4.0] - 2025-11-03

    ### Split CI tracks

    - bullet

Merging is keyed on exact heading strings: duplicate `## [version]` blocks are
folded together and duplicate `### title` sections inside a version are combined,
skipping bodies that are already present. Inserting the same entry twice yields
the same text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

CHANGELOG_PREAMBLE = "# Changelog\n\nAll notable changes to this project will be documented in this file.\n\n"

_VERSION_SPLIT_RE = re.compile(r"\n(?=## \[)")
_VERSION_HEAD_RE = re.compile(r"^## \[([^\]]+)\]")
_SECTION_SPLIT_RE = re.compile(r"\n(?=###\s+)")

_PR_SECTION_PATTERNS = (
    re.compile(r"## Changes[ \t]*\n([\s\S]*?)(?=\n##|$)", re.IGNORECASE),
    re.compile(r"## Changelog[ \t]*\n([\s\S]*?)(?=\n##|$)", re.IGNORECASE),
    re.compile(r"## What Changed[ \t]*\n([\s\S]*?)(?=\n##|$)", re.IGNORECASE),
    re.compile(r"## Summary[ \t]*\n([\s\S]*?)(?=\n##|$)", re.IGNORECASE),
    re.compile(r"### Changes[ \t]*\n([\s\S]*?)(?=\n###|$)", re.IGNORECASE),
)


@dataclass(frozen=True)
class Summary:
    title: str
    content: str
    path: Path | None = None


def get_summary_files(root: str | Path, tmp_dir: str = "_tmp") -> list[Path]:
    target = Path(root) / tmp_dir
    if not target.is_dir():
        return []
    return sorted((p for p in target.iterdir() if p.is_file() and p.suffix == ".md"), key=lambda p: p.name)


def parse_summary(content: str, path: Path | None = None) -> Summary:
    title = "Changes"
    for line in content.split("\n"):
        if line.startswith("# "):
            title = line[2:].strip() or title
            break
    return Summary(title=title, content=content.strip(), path=path)


def parse_summary_file(path: str | Path) -> Summary:
    p = Path(path)
    return parse_summary(p.read_text(encoding="utf-8"), p)


def parse_summary_files(paths: list[Path]) -> list[Summary]:
    return [parse_summary_file(p) for p in paths]


def generate_version_entry(version: str, date: str, summaries: list[Summary]) -> str:
    entry = f"## [{version}] - {date}\n\n"
    for summary in summaries:
        body = re.sub(r"^#\s+.*\n\n?", "", summary.content, count=1).strip()
        entry += f"### {summary.title}\n\n{body}\n\n"
    return entry.rstrip() + "\n"


def _split_sections(entry: str) -> tuple[str, list[str]]:
    lines = entry.split("\n")
    header = lines[0]
    body = "\n".join(lines[1:])
    sections = [s.strip() for s in _SECTION_SPLIT_RE.split(body) if s.strip()]
    return header, sections


def _combine_section(existing: str, incoming: str) -> str:
    heading, *existing_lines = existing.split("\n")
    existing_body = "\n".join(existing_lines).strip()
    incoming_body = "\n".join(incoming.split("\n")[1:]).strip()

    if not incoming_body:
        return existing.strip()
    if not existing_body:
        return f"{heading}\n\n{incoming_body}".strip()
    if incoming_body in existing_body:
        return existing.strip()
    return f"{heading}\n\n{existing_body}\n\n{incoming_body}".strip()


def merge_version_entries(existing: str, incoming: str) -> str:
    """
    Merge two blocks for the same version, section by section.
    The header line of `existing` is kept.
    """
    header, existing_sections = _split_sections(existing)
    _, incoming_sections = _split_sections(incoming)

    merged: dict[str, str] = {}
    for section in existing_sections:
        heading = section.split("\n")[0]
        merged[heading] = _combine_section(merged[heading], section) if heading in merged else section
    for section in incoming_sections:
        heading = section.split("\n")[0]
        merged[heading] = _combine_section(merged[heading], section) if heading in merged else section.strip()

    body = "\n\n".join(s.strip() for s in merged.values() if s.strip())
    return f"{header}\n\n{body}\n" if body else f"{header}\n"


def deduplicate_changelog(changelog: str) -> str:
    if not changelog:
        return ""
    first = changelog.find("## [")
    if first == -1:
        return changelog

    header = changelog[:first].rstrip()
    blocks = [b.strip() for b in _VERSION_SPLIT_RE.split(changelog[first:]) if b.strip()]

    versions: dict[str, str] = {}
    for block in blocks:
        m = _VERSION_HEAD_RE.match(block)
        if not m:
            continue
        version = m.group(1)
        if version in versions:
            versions[version] = merge_version_entries(versions[version], block).strip()
        else:
            versions[version] = block

    entries = "\n\n".join(v.strip() for v in versions.values())
    return f"{header}\n\n{entries}\n".strip() + "\n"


def insert_version_entry(existing: str, new_entry: str, version: str) -> str:
    """
    Insert `new_entry` above the newest version, or merge it into an existing block.
    """
    if not existing or not existing.strip():
        return CHANGELOG_PREAMBLE + new_entry.rstrip() + "\n"

    changelog = deduplicate_changelog(existing)
    block_re = re.compile(rf"^## \[{re.escape(version)}\][\s\S]*?(?=\n## \[|\Z)", re.MULTILINE)
    m = block_re.search(changelog)
    if m:
        merged = merge_version_entries(m.group(0).strip(), new_entry).strip()
        updated = changelog[: m.start()] + merged + "\n" + changelog[m.end() :]
        return deduplicate_changelog(updated).rstrip() + "\n"

    lines = changelog.split("\n")
    insert_at = next((i for i, line in enumerate(lines) if line.startswith("## [")), None)
    if insert_at is None:
        return changelog.rstrip() + "\n\n" + new_entry.rstrip() + "\n"

    before = "\n".join(lines[:insert_at])
    after = "\n".join(lines[insert_at:])
    combined = f"{before}\n{new_entry.rstrip()}\n\n{after}"
    return deduplicate_changelog(combined).rstrip() + "\n"


def extract_changelog_section(pr_body: str | None) -> str | None:
    if not pr_body:
        return None
    for pattern in _PR_SECTION_PATTERNS:
        m = pattern.search(pr_body)
        if m and m.group(1).strip():
            return m.group(1).strip()
    return None


def summary_title(pr_title: str | None) -> str:
    if not pr_title:
        return "Changes"
    m = re.match(r"^\[([^\]]+)\]\s+(.+)$", pr_title)
    return m.group(2).strip() if m else pr_title.strip()


def summary_filename(pr_number: int, pr_title: str | None) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", summary_title(pr_title).lower()).strip("-")[:50]
    return f"pr-{pr_number}-{slug}.md"


def render_summary(pr_title: str | None, changelog_content: str) -> str:
    return f"# {summary_title(pr_title)}\n\n{changelog_content}\n"
