from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from conftest import PROJECT_CACHE, FakeGitHub, board_item, item_page
from ideaflow.github_client import GitHubError
from ideaflow.project_board import (
    FieldValue,
    ProjectBoardError,
    ProjectCache,
    ProjectItem,
    add_issue_to_project,
    ensure_project_status,
    find_item_by_field_value,
    load_project_cache,
    lookup_item,
    map_field_values,
    refresh_project_cache,
)


def cache() -> ProjectCache:
    return ProjectCache(path=Path(".repo/projects.json"), data=json.loads(json.dumps(PROJECT_CACHE)))


def item(status: str | None) -> ProjectItem:
    fields = {"F_STATUS": FieldValue("F_STATUS", "Status", "ProjectV2ItemFieldSingleSelectValue", status)}
    return ProjectItem(id="ITEM_1", content={}, fields=fields)


def test_map_field_values_by_typename() -> None:
    nodes = [
        {"__typename": "ProjectV2ItemFieldTextValue", "text": "ARCH-12", "field": {"id": "F1", "name": "ID"}},
        {"__typename": "ProjectV2ItemFieldSingleSelectValue", "name": "Branched", "optionId": "o2", "field": {"id": "F2", "name": "Status"}},
        {"__typename": "ProjectV2ItemFieldNumberValue", "number": 3, "field": {"id": "F3", "name": "Points"}},
        {"__typename": "ProjectV2ItemFieldDateValue", "date": "2025-11-03", "field": {"id": "F4", "name": "Due"}},
        {"__typename": "ProjectV2ItemFieldIterationValue", "title": "Sprint 4", "field": {"id": "F5", "name": "Sprint"}},
        {"__typename": "ProjectV2ItemFieldLabelValue", "field": {"id": "F6", "name": "Labels"}},
        {"__typename": "ProjectV2ItemFieldTextValue", "text": "orphan"},
    ]
    fields = map_field_values(nodes)
    assert {k: v.value for k, v in fields.items()} == {
        "F1": "ARCH-12",
        "F2": "Branched",
        "F3": 3,
        "F4": "2025-11-03",
        "F5": "Sprint 4",
        "F6": None,
    }
    assert fields["F2"].option_id == "o2"
    assert fields["F1"].option_id is None


def test_find_item_pages_through_results() -> None:
    client = FakeGitHub()
    client.graphql_responses = [
        item_page([board_item("ITEM_A", "ARCH-11", "Draft")], has_next=True, cursor="c1"),
        item_page([board_item("ITEM_B", "ARCH-12", "Branched")]),
    ]
    found = find_item_by_field_value(client, project_id="PVT_1", field_id="F_ID", value="ARCH-12", sleep=lambda _s: None)
    assert found is not None and found.id == "ITEM_B"
    assert found.value_of("F_STATUS") == "Branched"
    assert [v for _, v in client.calls] == [{"projectId": "PVT_1", "after": None}, {"projectId": "PVT_1", "after": "c1"}]


def test_find_item_retries_with_backoff() -> None:
    client = FakeGitHub()
    client.graphql_responses = [item_page([]), item_page([]), item_page([board_item("ITEM_B", "ARCH-12", None)])]
    sleeps: list[float] = []
    found = find_item_by_field_value(
        client, project_id="PVT_1", field_id="F_ID", value="ARCH-12", retry_delay=0.5, sleep=sleeps.append
    )
    assert found is not None
    assert sleeps == [0.5, 1.0]


def test_find_item_gives_up_after_retries() -> None:
    client = FakeGitHub()
    sleeps: list[float] = []
    assert find_item_by_field_value(client, project_id="PVT_1", field_id="F_ID", value="X-1", sleep=sleeps.append) is None
    assert sleeps == [1.0, 2.0, 4.0]


def test_find_item_reraises_last_error() -> None:
    client = FakeGitHub()
    client.graphql_responses = [GitHubError("boom"), GitHubError("boom again")]
    sleeps: list[float] = []
    with pytest.raises(GitHubError, match="boom again"):
        find_item_by_field_value(client, project_id="PVT_1", field_id="F_ID", value="X-1", retries=1, sleep=sleeps.append)
    assert sleeps == [1.0]


def test_find_item_requires_ids() -> None:
    with pytest.raises(ProjectBoardError):
        find_item_by_field_value(FakeGitHub(), project_id="", field_id="F_ID", value="X-1")


def test_ensure_status_missing_metadata() -> None:
    broken = ProjectCache(path=Path("p"), data={"project": {"id": "PVT_1", "fields": {"ID": {"id": "F_ID"}}}})
    result = ensure_project_status(None, "ARCH-12", "Branched", cache=broken)
    assert not result.updated
    assert result.message.startswith("Project cache missing ID or Status field metadata.")


def test_ensure_status_unknown_option() -> None:
    result = ensure_project_status(None, "ARCH-12", "Shipped", cache=cache(), item=item("Ticketed"))
    assert not result.updated
    assert 'Status option "Shipped" not found' in result.message
    assert "Available: [Ticketed, Branched, PR Open, In Review]" in result.message


def test_ensure_status_item_not_found() -> None:
    result = ensure_project_status(FakeGitHub(), "ARCH-12", "Branched", cache=cache(), retries=0)
    assert result.message == "Project item for ARCH-12 not found. Ensure the issue or PR is added to the project."


def test_ensure_status_already_set() -> None:
    calls: list[dict[str, Any]] = []
    result = ensure_project_status(
        None, "ARCH-12", "Branched", cache=cache(), item=item("Branched"), update=lambda **kw: calls.append(kw)
    )
    assert (result.updated, result.previous, result.message) == (False, "Branched", "Project status already Branched.")
    assert calls == []


def test_ensure_status_updates() -> None:
    calls: list[dict[str, Any]] = []
    result = ensure_project_status(
        None, "ARCH-12", "PR Open", cache=cache(), item=item("Branched"), update=lambda **kw: calls.append(kw)
    )
    assert result.to_dict() == {"updated": True, "previous": "Branched", "message": "Project status updated to PR Open."}
    assert calls == [{"project_id": "PVT_1", "item_id": "ITEM_1", "field_id": "F_STATUS", "option_id": "opt-pr-open"}]


def test_ensure_status_sends_mutation_through_client() -> None:
    client = FakeGitHub()
    result = ensure_project_status(client, "ARCH-12", "In Review", cache=cache(), item=item("PR Open"))
    assert result.updated
    assert client.calls[-1][1]["optionId"] == "opt-review"


def test_ensure_status_reports_errors_with_hint() -> None:
    client = FakeGitHub()
    client.graphql_responses = [GitHubError("GraphQL error: denied INSUFFICIENT_SCOPES")]
    result = ensure_project_status(client, "ARCH-12", "Branched", cache=cache(), retries=0)
    assert not result.updated
    assert "INSUFFICIENT_SCOPES" in result.message
    assert "gh auth refresh -s read:project -s project" in result.message


def test_ensure_status_without_cache_file(tmp_path: Path) -> None:
    result = ensure_project_status(None, "ARCH-12", "Branched", root=tmp_path)
    assert not result.updated
    assert "Project cache not found" in result.message


def test_load_project_cache(repo: Path, with_cache: Path) -> None:
    loaded = load_project_cache(repo)
    assert loaded.project_id == "PVT_1"
    assert loaded.field("Status")["id"] == "F_STATUS"
    with_cache.write_text("{not json", encoding="utf-8")
    with pytest.raises(ProjectBoardError, match="Unable to read project cache"):
        load_project_cache(repo)


def test_refresh_project_cache_writes_file(repo: Path) -> None:
    client = FakeGitHub()
    client.graphql_responses = [
        {
            "repositoryOwner": {
                "projectV2": {
                    "id": "PVT_9",
                    "number": 2,
                    "title": "Lifecycle",
                    "url": "https://github.com/orgs/acme/projects/2",
                    "fields": {
                        "nodes": [
                            {"__typename": "ProjectV2Field", "id": "F_ID", "name": "ID", "dataType": "TEXT"},
                            {"__typename": "ProjectV2Field", "id": "F_NOTE", "name": "Notes", "dataType": "TEXT"},
                            {
                                "__typename": "ProjectV2SingleSelectField",
                                "id": "F_STATUS",
                                "name": "Status",
                                "dataType": "SINGLE_SELECT",
                                "options": [{"id": "o1", "name": "Draft", "color": "GRAY"}],
                            },
                            {},
                        ]
                    },
                }
            }
        }
    ]
    refreshed = refresh_project_cache(client, repo, number=2)
    assert client.calls[0][1] == {"login": "acme", "number": 2}

    on_disk = json.loads((repo / ".repo" / "projects.json").read_text(encoding="utf-8"))
    assert on_disk == refreshed.data
    fields = on_disk["project"]["fields"]
    assert fields["ID"]["required"] is True
    assert fields["Notes"]["required"] is False
    assert fields["Status"]["options"] == [{"id": "o1", "name": "Draft", "color": "GRAY"}]
    assert on_disk["version"] == 3


def test_refresh_project_cache_missing_project(repo: Path) -> None:
    client = FakeGitHub()
    client.graphql_responses = [{"repositoryOwner": None}]
    with pytest.raises(ProjectBoardError, match="Project #1 not found for owner acme"):
        refresh_project_cache(client, repo)


def test_add_issue_to_project_returns_item_id() -> None:
    client = FakeGitHub()
    assert add_issue_to_project(client, "PVT_1", 42) == "ITEM_NEW"
    assert client.calls[-1][1] == {"projectId": "PVT_1", "contentId": "I_42"}


def test_lookup_item_notes(repo: Path, with_cache: Path) -> None:
    assert lookup_item(repo, None, "ARCH-12").note == "Project item lookup skipped (no GitHub token)."

    client = FakeGitHub()
    client.graphql_responses = [item_page([board_item("ITEM_B", "ARCH-12", "Branched")])]
    found = lookup_item(repo, client, "ARCH-12")
    assert (found.note, found.status, found.item.id) == ("Project item located.", "Branched", "ITEM_B")

    pending = lookup_item(repo, FakeGitHub(), "ARCH-12", retries=0)
    assert pending.note == "Project item lookup pending."
    assert pending.cache is not None


def test_lookup_item_without_cache(repo: Path) -> None:
    result = lookup_item(repo, FakeGitHub(), "ARCH-12")
    assert result.cache is None
    assert result.note.startswith("Project cache not found")
