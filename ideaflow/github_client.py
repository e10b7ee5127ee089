"""
github_client.py

Responsibility: isolate all direct GitHub API interaction (REST + GraphQL).

This module must be the only place that:
- Constructs GitHub REST endpoints and GraphQL requests
- Sends HTTP requests to api.github.com
- Interprets GitHub API responses / error payloads

Everything else (idea parsing, git commands, CLI behavior) should use this client.
Project-board GraphQL lives in `project_board.py`, on top of `GitHubClient.graphql`.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Any, Mapping

import requests

log = logging.getLogger("ideaflow.github")

API_BASE = "https://api.github.com"


class GitHubError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None, error_types: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_types = error_types


@dataclass(frozen=True)
class RepoRef:
    owner: str
    name: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str
    state: str
    url: str
    node_id: str
    labels: tuple[str, ...] = ()
    state_reason: str | None = None
    created_at: str | None = None
    closed_at: str | None = None


@dataclass(frozen=True)
class PullRequest:
    number: int
    title: str
    body: str
    state: str
    url: str
    node_id: str
    draft: bool
    merged: bool
    merged_at: str | None = None
    head: str | None = None
    base: str | None = None
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScopeCheck:
    valid: bool
    scopes: tuple[str, ...] = ()
    missing: tuple[str, ...] = field(default_factory=tuple)
    message: str = ""


_REMOTE_RE = re.compile(r"github\.com[:/](?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$")


def parse_remote_url(url: str | None) -> RepoRef | None:
    """
    Accepts https://github.com/o/r(.git) and git@github.com:o/r(.git).
    """
    if not url:
        return None
    m = _REMOTE_RE.search(url.strip())
    return RepoRef(m.group("owner"), m.group("name")) if m else None


def resolve_repo(remote_url: str | None = None, env: Mapping[str, str] | None = None) -> RepoRef | None:
    env = os.environ if env is None else env
    slug = env.get("GITHUB_REPOSITORY", "").strip()
    if "/" in slug:
        owner, name = slug.split("/", 1)
        return RepoRef(owner, name)
    return parse_remote_url(remote_url)


def resolve_token(explicit: str | None = None, env: Mapping[str, str] | None = None) -> str:
    """
    --github-token, then GITHUB_TOKEN / GH_TOKEN, then `gh auth token` when gh is installed.
    """
    env = os.environ if env is None else env
    token = explicit or env.get("GITHUB_TOKEN") or env.get("GH_TOKEN") or ""
    if token:
        return token
    gh = shutil.which("gh")
    if gh:
        try:
            proc = subprocess.run([gh, "auth", "token"], check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
            return proc.stdout.strip()
        except subprocess.CalledProcessError:
            log.debug("gh auth token failed; no token available")
    return ""


def _label_names(raw: Any) -> tuple[str, ...]:
    names = []
    for label in raw or []:
        name = label.get("name") if isinstance(label, dict) else label
        if name:
            names.append(str(name))
    return tuple(names)


def _issue_from(data: dict[str, Any]) -> Issue:
    return Issue(
        number=int(data["number"]),
        title=data.get("title") or "",
        body=data.get("body") or "",
        state=str(data.get("state") or "").upper(),
        url=data.get("html_url") or "",
        node_id=data.get("node_id") or "",
        labels=_label_names(data.get("labels")),
        state_reason=data.get("state_reason"),
        created_at=data.get("created_at"),
        closed_at=data.get("closed_at"),
    )


def _pr_from(data: dict[str, Any]) -> PullRequest:
    merged_at = data.get("merged_at")
    return PullRequest(
        number=int(data["number"]),
        title=data.get("title") or "",
        body=data.get("body") or "",
        state=str(data.get("state") or "").upper(),
        url=data.get("html_url") or "",
        node_id=data.get("node_id") or "",
        draft=bool(data.get("draft")),
        merged=bool(data.get("merged")) or bool(merged_at),
        merged_at=merged_at,
        head=(data.get("head") or {}).get("ref"),
        base=(data.get("base") or {}).get("ref"),
        labels=_label_names(data.get("labels")),
    )


class GitHubClient:
    def __init__(
        self,
        token: str,
        repo: RepoRef | None = None,
        api_base: str = API_BASE,
        session: requests.Session | None = None,
        timeout: float = 30,
    ) -> None:
        if not token.strip():
            raise GitHubError("GitHub token is required (use --github-token or set GITHUB_TOKEN).")
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._session = session or requests.Session()
        self._timeout = timeout
        self.repo = repo

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "ideaflow",
        }

    def _send(self, method: str, path: str, *, json_body: Any = None, params: dict[str, Any] | None = None) -> requests.Response:
        url = f"{self._api_base}{path}"
        log.debug("GitHub request", extra={"meta": {"method": method, "path": path}})
        try:
            r = self._session.request(method, url, headers=self._headers(), json=json_body, params=params, timeout=self._timeout)
        except requests.RequestException as e:
            raise GitHubError(f"GitHub API request failed {method} {path}: {e}") from e
        if r.status_code >= 400:
            try:
                payload = r.json()
            except ValueError:
                payload = {"message": r.text}
            message = payload.get("message", payload) if isinstance(payload, dict) else payload
            raise GitHubError(f"GitHub API error {r.status_code} {method} {path}: {message}", status_code=r.status_code)
        return r

    def _request(self, method: str, path: str, *, json_body: Any = None, params: dict[str, Any] | None = None) -> Any:
        r = self._send(method, path, json_body=json_body, params=params)
        if r.status_code == 204 or not r.content:
            return None
        return r.json()

    def _repo_path(self, suffix: str) -> str:
        if self.repo is None:
            raise GitHubError("Repository is unknown (set GITHUB_REPOSITORY or configure an origin remote).")
        return f"/repos/{self.repo.owner}/{self.repo.name}{suffix}"

    # -- GraphQL ------------------------------------------------------------

    def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Execute a GraphQL document and return its `data`. GraphQL `errors` raise GitHubError.
        """
        body = {"query": " ".join(query.split()), "variables": {k: v for k, v in (variables or {}).items() if v is not None}}
        payload = self._request("POST", "/graphql", json_body=body) or {}
        errors = payload.get("errors") or []
        if errors:
            types = tuple(str(e.get("type")) for e in errors if e.get("type"))
            messages = "; ".join(str(e.get("message")) for e in errors)
            raise GitHubError(f"GraphQL error: {messages} {' '.join(types)}".strip(), error_types=types)
        return payload.get("data") or {}

    # -- Auth ---------------------------------------------------------------

    def viewer_login(self) -> str:
        data = self._request("GET", "/user") or {}
        return str(data.get("login") or "")

    def token_scopes(self) -> tuple[str, ...] | None:
        """
        Classic tokens report scopes in X-OAuth-Scopes; fine-grained tokens return None.
        """
        r = self._send("GET", "/user")
        header = r.headers.get("X-OAuth-Scopes")
        if header is None:
            return None
        return tuple(s.strip() for s in header.split(",") if s.strip())

    def verify_scopes(self, required: list[str]) -> ScopeCheck:
        try:
            scopes = self.token_scopes()
        except GitHubError as e:
            return ScopeCheck(valid=False, message=f"Unable to verify token scopes: {e}")
        if scopes is None:
            return ScopeCheck(valid=True, message="Fine-grained token; scopes not reported.")
        granted = set(scopes)
        # `project` implies `read:project`.
        if "project" in granted:
            granted.add("read:project")
        missing = tuple(s for s in required if s not in granted)
        if missing:
            return ScopeCheck(
                valid=False,
                scopes=scopes,
                missing=missing,
                message=f"Token missing scopes: {', '.join(missing)}. Refresh with: gh auth refresh -s {' -s '.join(missing)}",
            )
        return ScopeCheck(valid=True, scopes=scopes, message="Token scopes verified.")

    # -- Issues -------------------------------------------------------------

    def get_issue(self, number: int) -> Issue:
        return _issue_from(self._request("GET", self._repo_path(f"/issues/{int(number)}")))

    def get_issue_node_id(self, number: int) -> str:
        return self.get_issue(number).node_id

    def list_issues(self, *, state: str = "open", label: str | None = None) -> list[Issue]:
        params: dict[str, Any] = {"state": state, "per_page": 100}
        if label:
            params["labels"] = label
        data = self._request("GET", self._repo_path("/issues"), params=params) or []
        return [_issue_from(item) for item in data if "pull_request" not in item]

    def create_issue(self, title: str, body: str, *, labels: list[str] | None = None, assignees: list[str] | None = None) -> Issue:
        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels
        if assignees:
            payload["assignees"] = assignees
        return _issue_from(self._request("POST", self._repo_path("/issues"), json_body=payload))

    def update_issue(
        self,
        number: int,
        *,
        title: str | None = None,
        body: str | None = None,
        state: str | None = None,
        add_labels: list[str] | None = None,
        remove_labels: list[str] | None = None,
    ) -> None:
        patch = {k: v for k, v in {"title": title, "body": body, "state": state}.items() if v is not None}
        if patch:
            self._request("PATCH", self._repo_path(f"/issues/{int(number)}"), json_body=patch)
        if add_labels:
            self._request("POST", self._repo_path(f"/issues/{int(number)}/labels"), json_body={"labels": add_labels})
        for label in remove_labels or []:
            self._request("DELETE", self._repo_path(f"/issues/{int(number)}/labels/{requests.utils.quote(label, safe='')}"))

    def create_label(self, name: str, color: str, description: str = "") -> None:
        """
        Create a label, or update it in place when it already exists.
        """
        body = {"name": name, "color": color.lstrip("#"), "description": description}
        try:
            self._request("POST", self._repo_path("/labels"), json_body=body)
        except GitHubError as e:
            if e.status_code != 422:
                raise
            self._request("PATCH", self._repo_path(f"/labels/{requests.utils.quote(name, safe='')}"), json_body=body)

    # -- Pull requests ------------------------------------------------------

    def get_pr(self, number: int) -> PullRequest:
        return _pr_from(self._request("GET", self._repo_path(f"/pulls/{int(number)}")))

    def find_pr_by_branch(self, branch: str) -> PullRequest | None:
        path = self._repo_path("/pulls")
        params = {"state": "all", "head": f"{self.repo.owner}:{branch}", "per_page": 10}
        data = self._request("GET", path, params=params) or []
        return _pr_from(data[0]) if data else None

    def create_pr(self, *, title: str, body: str, head: str, base: str = "main", draft: bool = True) -> PullRequest:
        payload = {"title": title, "body": body, "head": head, "base": base, "draft": draft}
        return _pr_from(self._request("POST", self._repo_path("/pulls"), json_body=payload))

    def update_pr(self, number: int, *, title: str | None = None, body: str | None = None) -> None:
        patch = {k: v for k, v in {"title": title, "body": body}.items() if v is not None}
        if patch:
            self._request("PATCH", self._repo_path(f"/pulls/{int(number)}"), json_body=patch)

    def sync_pr_labels(self, number: int, labels: list[str], *, mode: str = "replace") -> tuple[list[str], list[str]]:
        """
        Bring PR labels in line with `labels`. `merge` only adds; `replace` also removes extras.
        Returns (added, removed).
        """
        current = set(_label_names(self._request("GET", self._repo_path(f"/issues/{int(number)}/labels"))))
        desired = set(labels)
        to_add = [label for label in labels if label not in current]
        to_remove = sorted(current - desired) if mode == "replace" else []
        if to_add or to_remove:
            self.update_issue(number, add_labels=to_add, remove_labels=to_remove)
        return to_add, to_remove

    def convert_pr_to_draft(self, node_id: str) -> None:
        self.graphql(
            "mutation($id: ID!) { convertPullRequestToDraft(input: {pullRequestId: $id}) { pullRequest { id } } }",
            {"id": node_id},
        )

    def mark_pr_ready(self, node_id: str) -> None:
        self.graphql(
            "mutation($id: ID!) { markPullRequestReadyForReview(input: {pullRequestId: $id}) { pullRequest { id } } }",
            {"id": node_id},
        )
