"""
project_board.py

Responsibility: GitHub Projects v2 primitives used to keep board items in sync
with idea files.

- Project metadata (field ids, single-select options) is cached at
  `<repo>/.repo/projects.json` and refreshed on demand.
- Item lookups page through the project 50 items at a time and retry with
  exponential backoff, since newly added items are eventually consistent.
- `ensure_project_status` never raises: it reports what happened in a
  `StatusResult` so workflows can log a warning and continue.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from ideaflow.github_client import GitHubClient, GitHubError
from ideaflow.workspace import atomic_write, now_iso

log = logging.getLogger("ideaflow.project")

CACHE_RELATIVE_PATH = Path(".repo") / "projects.json"
CACHE_VERSION = 3
PAGE_SIZE = 50
REQUIRED_FIELDS = ("ID", "Type", "Lane", "Status", "Owner", "Priority")

REFRESH_HINT = "Run: ideaflow refresh-project-cache --yes"


class ProjectBoardError(RuntimeError):
    pass


@dataclass(frozen=True)
class ProjectCache:
    path: Path
    data: dict[str, Any]

    @property
    def project(self) -> dict[str, Any]:
        return self.data.get("project") or {}

    @property
    def project_id(self) -> str | None:
        return self.project.get("id")

    def field(self, name: str) -> dict[str, Any] | None:
        return (self.project.get("fields") or {}).get(name)


@dataclass(frozen=True)
class FieldValue:
    id: str
    name: str | None
    type: str
    value: Any
    option_id: str | None = None


@dataclass(frozen=True)
class ProjectItem:
    id: str
    content: dict[str, Any]
    fields: dict[str, FieldValue]

    def value_of(self, field_id: str) -> Any:
        found = self.fields.get(field_id)
        return found.value if found else None


@dataclass(frozen=True)
class StatusResult:
    updated: bool
    previous: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"updated": self.updated, "previous": self.previous, "message": self.message}


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


def cache_path(root: str | Path) -> Path:
    return Path(root) / CACHE_RELATIVE_PATH


def load_project_cache(root: str | Path) -> ProjectCache:
    path = cache_path(root)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ProjectBoardError(f"Project cache not found at {path}. {REFRESH_HINT}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ProjectBoardError(f"Unable to read project cache {path}: {e}") from e
    if not isinstance(data, dict):
        raise ProjectBoardError(f"Project cache {path} must contain a JSON object.")
    return ProjectCache(path=path, data=data)


_FIELDS_QUERY = """
query($login: String!, $number: Int!) {
  repositoryOwner(login: $login) {
    ... on ProjectV2Owner {
      projectV2(number: $number) {
        id number title url
        fields(first: 50) {
          nodes {
            __typename
            ... on ProjectV2Field { id name dataType }
            ... on ProjectV2SingleSelectField { id name dataType options { id name color } }
            ... on ProjectV2IterationField { id name dataType }
          }
        }
      }
    }
  }
}
"""


def _field_entry(node: dict[str, Any]) -> dict[str, Any]:
    typename = node.get("__typename") or ""
    entry: dict[str, Any] = {
        "id": node.get("id"),
        "type": node.get("dataType") or typename.replace("ProjectV2", "").replace("Field", "").upper(),
    }
    if typename == "ProjectV2SingleSelectField" and node.get("options") is not None:
        entry["options"] = [
            {k: v for k, v in {"id": o.get("id"), "name": o.get("name"), "color": o.get("color")}.items() if v}
            for o in node["options"]
        ]
        entry["required"] = True
    elif typename == "ProjectV2Field":
        entry["description"] = node.get("name")
        entry["required"] = node.get("name") in REQUIRED_FIELDS
    return entry


def refresh_project_cache(
    client: GitHubClient,
    root: str | Path,
    *,
    number: int = 1,
    owner: str | None = None,
    write: bool = True,
) -> ProjectCache:
    """
    Fetch project metadata and (optionally) write the cache file atomically.
    `owner` defaults to the repository owner, then the token's user.
    """
    login = owner or (client.repo.owner if client.repo else None) or client.viewer_login()
    data = client.graphql(_FIELDS_QUERY, {"login": login, "number": int(number)})
    project = ((data.get("repositoryOwner") or {}).get("projectV2")) or None
    if not project:
        raise ProjectBoardError(f"Project #{number} not found for owner {login}")

    fields = {}
    for node in (project.get("fields") or {}).get("nodes") or []:
        if node and node.get("name"):
            fields[node["name"]] = _field_entry(node)

    payload = {
        "cachedAt": now_iso(),
        "version": CACHE_VERSION,
        "project": {
            "id": project.get("id"),
            "number": project.get("number"),
            "name": project.get("title"),
            "url": project.get("url"),
            "fields": fields,
        },
    }
    path = cache_path(root)
    if write:
        atomic_write(path, json.dumps(payload, indent=2) + "\n")
        log.info("Project cache updated", extra={"meta": {"path": str(path), "fields": len(fields)}})
    return ProjectCache(path=path, data=payload)


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

_VALUE_KEYS = {
    "ProjectV2ItemFieldSingleSelectValue": "name",
    "ProjectV2ItemFieldTextValue": "text",
    "ProjectV2ItemFieldNumberValue": "number",
    "ProjectV2ItemFieldDateValue": "date",
    "ProjectV2ItemFieldIterationValue": "title",
}


def map_field_values(nodes: list[dict[str, Any]] | None) -> dict[str, FieldValue]:
    """
    Key item field values by field id, resolving the GraphQL union by `__typename`.
    """
    out: dict[str, FieldValue] = {}
    for node in nodes or []:
        field_info = (node or {}).get("field") or {}
        field_id = field_info.get("id")
        if not field_id:
            continue
        typename = node.get("__typename") or ""
        key = _VALUE_KEYS.get(typename)
        out[field_id] = FieldValue(
            id=field_id,
            name=field_info.get("name"),
            type=typename,
            value=node.get(key) if key else None,
            option_id=node.get("optionId") if typename == "ProjectV2ItemFieldSingleSelectValue" else None,
        )
    return out


_FIELD_REF = "field { ... on ProjectV2Field { id name } ... on ProjectV2SingleSelectField { id name } ... on ProjectV2IterationField { id name } }"

_ITEMS_QUERY = f"""
query($projectId: ID!, $after: String) {{
  node(id: $projectId) {{
    ... on ProjectV2 {{
      items(first: {PAGE_SIZE}, after: $after) {{
        nodes {{
          id
          content {{
            __typename
            ... on Issue {{ number title }}
            ... on PullRequest {{ number title }}
          }}
          fieldValues(first: 50) {{
            nodes {{
              __typename
              ... on ProjectV2ItemFieldTextValue {{ text {_FIELD_REF} }}
              ... on ProjectV2ItemFieldNumberValue {{ number {_FIELD_REF} }}
              ... on ProjectV2ItemFieldSingleSelectValue {{ name optionId {_FIELD_REF} }}
              ... on ProjectV2ItemFieldDateValue {{ date {_FIELD_REF} }}
              ... on ProjectV2ItemFieldIterationValue {{ title {_FIELD_REF} }}
            }}
          }}
        }}
        pageInfo {{ hasNextPage endCursor }}
      }}
    }}
  }}
}}
"""


def _find_once(client: GitHubClient, project_id: str, field_id: str, value: str) -> ProjectItem | None:
    cursor: str | None = None
    wanted = str(value).strip()
    while True:
        data = client.graphql(_ITEMS_QUERY, {"projectId": project_id, "after": cursor})
        project = data.get("node")
        if not project:
            return None
        items = project.get("items") or {}
        for node in items.get("nodes") or []:
            fields = map_field_values((node.get("fieldValues") or {}).get("nodes"))
            match = fields.get(field_id)
            if match is not None and str(match.value).strip() == wanted:
                return ProjectItem(id=node["id"], content=node.get("content") or {}, fields=fields)
        page = items.get("pageInfo") or {}
        if not page.get("hasNextPage"):
            return None
        cursor = page.get("endCursor")


def find_item_by_field_value(
    client: GitHubClient,
    *,
    project_id: str,
    field_id: str,
    value: str,
    retries: int = 3,
    retry_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ProjectItem | None:
    """
    Find the item whose `field_id` value equals `value`.
    Retries up to `retries` times after the first attempt, waiting
    `retry_delay * 2**attempt` seconds; the last error is re-raised.
    """
    if not project_id or not field_id:
        raise ProjectBoardError("project_id and field_id are required to locate a project item")
    for attempt in range(retries + 1):
        try:
            found = _find_once(client, project_id, field_id, value)
        except GitHubError:
            if attempt == retries:
                raise
            found = None
        if found is not None:
            return found
        if attempt < retries:
            delay = retry_delay * (2**attempt)
            log.debug("Project item not found; retrying", extra={"meta": {"value": value, "attempt": attempt + 1, "delay": delay}})
            sleep(delay)
    return None


def update_single_select(client: GitHubClient, *, project_id: str, item_id: str, field_id: str, option_id: str) -> None:
    client.graphql(
        """
        mutation($projectId: ID!, $itemId: ID!, $fieldId: ID!, $optionId: String!) {
          updateProjectV2ItemFieldValue(input: {
            projectId: $projectId, itemId: $itemId, fieldId: $fieldId,
            value: { singleSelectOptionId: $optionId }
          }) { projectV2Item { id } }
        }
        """,
        {"projectId": project_id, "itemId": item_id, "fieldId": field_id, "optionId": option_id},
    )


def add_issue_to_project(client: GitHubClient, project_id: str, issue_number: int) -> str:
    """
    Add an issue to the project and return the new item id.
    """
    content_id = client.get_issue_node_id(issue_number)
    data = client.graphql(
        """
        mutation($projectId: ID!, $contentId: ID!) {
          addProjectV2ItemById(input: {projectId: $projectId, contentId: $contentId}) { item { id } }
        }
        """,
        {"projectId": project_id, "contentId": content_id},
    )
    try:
        return data["addProjectV2ItemById"]["item"]["id"]
    except (KeyError, TypeError) as e:
        raise ProjectBoardError(f"Unexpected addProjectV2ItemById response for issue #{issue_number}") from e


def _remediation(message: str) -> str:
    if "INSUFFICIENT_SCOPES" in message or "scope" in message:
        return " Check token scopes with: gh auth status. Refresh with: gh auth refresh -s read:project -s project"
    if "NOT_FOUND" in message:
        return f" Verify the project exists and is accessible. {REFRESH_HINT}"
    return ""


def ensure_project_status(
    client: GitHubClient | None,
    idea_id: str,
    status: str,
    *,
    cache: ProjectCache | None = None,
    root: str | Path | None = None,
    item: ProjectItem | None = None,
    update: Callable[..., None] | None = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> StatusResult:
    """
    Move the board item for `idea_id` to `status` if it is not already there.
    """
    try:
        if cache is None:
            if root is None:
                raise ProjectBoardError("Either cache or root is required")
            cache = load_project_cache(root)
        status_field = cache.field("Status") or {}
        id_field = cache.field("ID") or {}
        if not status_field.get("id") or not id_field.get("id"):
            return StatusResult(False, None, f"Project cache missing ID or Status field metadata. {REFRESH_HINT}")

        options = status_field.get("options") or []
        option = next((o for o in options if o.get("name") == status), None)
        if option is None:
            available = ", ".join(o.get("name", "") for o in options)
            return StatusResult(
                False,
                None,
                f'Status option "{status}" not found in project cache. Available: [{available}]. '
                f"Add it in the project settings, then {REFRESH_HINT[0].lower()}{REFRESH_HINT[1:]}",
            )

        if item is None:
            if client is None:
                raise ProjectBoardError("GitHub client is required to look up project items")
            item = find_item_by_field_value(
                client,
                project_id=cache.project_id or "",
                field_id=id_field["id"],
                value=idea_id,
                retries=retries,
                retry_delay=retry_delay,
                sleep=sleep,
            )
        if item is None:
            return StatusResult(
                False,
                None,
                f"Project item for {idea_id} not found. Ensure the issue or PR is added to the project.",
            )

        current = item.value_of(status_field["id"])
        if current == status:
            return StatusResult(False, current, f"Project status already {status}.")

        if update is None:
            if client is None:
                raise ProjectBoardError("GitHub client is required to update project items")
            update_single_select(
                client,
                project_id=cache.project_id or "",
                item_id=item.id,
                field_id=status_field["id"],
                option_id=option["id"],
            )
        else:
            update(project_id=cache.project_id, item_id=item.id, field_id=status_field["id"], option_id=option["id"])
        return StatusResult(True, current, f"Project status updated to {status}.")
    except Exception as e:  # reported, not raised
        message = str(e)
        return StatusResult(False, None, message + _remediation(message))


@dataclass(frozen=True)
class ItemLookup:
    cache: ProjectCache | None
    item: ProjectItem | None
    status: str | None
    note: str


def lookup_item(
    root: str | Path,
    client: GitHubClient | None,
    idea_id: str,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ItemLookup:
    """
    Load the cache and find the board item for `idea_id`. Failures become the note.
    """
    try:
        cache = load_project_cache(root)
    except ProjectBoardError as e:
        return ItemLookup(None, None, None, str(e))

    status_field = cache.field("Status") or {}
    id_field = cache.field("ID") or {}
    if not status_field.get("id") or not id_field.get("id"):
        return ItemLookup(cache, None, None, "Project cache missing ID or Status field metadata.")
    if client is None:
        return ItemLookup(cache, None, None, "Project item lookup skipped (no GitHub token).")

    try:
        item = find_item_by_field_value(
            client,
            project_id=cache.project_id or "",
            field_id=id_field["id"],
            value=idea_id,
            retries=retries,
            retry_delay=retry_delay,
            sleep=sleep,
        )
    except (GitHubError, ProjectBoardError) as e:
        return ItemLookup(cache, None, None, str(e))
    if item is None:
        return ItemLookup(cache, None, None, "Project item lookup pending.")
    return ItemLookup(cache, item, item.value_of(status_field["id"]), "Project item located.")
