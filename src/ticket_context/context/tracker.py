"""Issue tracker collaborator: protocol, Jira adapter and in-memory mock.

The resolver and matcher only ever talk to ``IssueTrackerProtocol``. The
Jira adapter translates Jira Cloud REST v3 payloads into ``IssueNode`` and
``PullRequest`` models and raises the engine's error taxonomy; the mock
serves fixed data for tests and local development.

Jira API docs: https://developer.atlassian.com/cloud/jira/platform/rest/v3/
"""

from __future__ import annotations

import os
import re
from datetime import datetime
from typing import Any, Protocol

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ticket_context.errors import NotFoundError, TransportError
from ticket_context.schemas import IssueNode, PRState, PullRequest

# ---------------------------------------------------------------------------
# Protocol (Interface)
# ---------------------------------------------------------------------------


class IssueTrackerProtocol(Protocol):
    """Capabilities the engine needs from an issue tracker.

    Every method raises ``NotFoundError`` when the referenced issue does not
    exist and ``TransportError`` for any other failure.
    """

    async def fetch_issue(self, key: str) -> IssueNode:
        """Fetch a single issue by key."""
        ...

    async def search_issues(self, query: str, max_results: int = 50) -> list[IssueNode]:
        """Run a tracker query (JQL for Jira) and return matching issues."""
        ...

    async def fetch_remote_links(self, key: str) -> list[dict[str, Any]]:
        """Return raw remote links; each has ``object.url`` and ``object.title``."""
        ...

    async def fetch_dev_status(self, key: str) -> list[PullRequest]:
        """Return pull requests linked through the tracker's code-host integration."""
        ...

    async def get_raw_fields(self, key: str, fields: list[str]) -> dict[str, Any]:
        """Return the raw values of the named fields for an issue."""
        ...


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def parse_tracker_datetime(value: str | None) -> datetime | None:
    """Parse Jira timestamps such as ``2024-01-15T10:30:00.000+0000``."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def issue_from_jira(data: dict[str, Any]) -> IssueNode:
    """Convert a Jira issue payload into an IssueNode."""
    fields = data.get("fields") or {}
    parent = fields.get("parent") or {}
    return IssueNode(
        key=data["key"],
        type=(fields.get("issuetype") or {}).get("name") or "Task",
        status=(fields.get("status") or {}).get("name") or "",
        title=fields.get("summary") or "",
        created=parse_tracker_datetime(fields.get("created")),
        updated=parse_tracker_datetime(fields.get("updated")),
        parent_key=parent.get("key"),
        assignee=(fields.get("assignee") or {}).get("displayName"),
        priority=(fields.get("priority") or {}).get("name"),
        labels=list(fields.get("labels") or []),
    )


def pull_request_from_dev_status(data: dict[str, Any]) -> PullRequest | None:
    """Convert one dev-status ``pullRequests`` entry into a PullRequest.

    Dev-status ids look like ``"#42"``; entries without a numeric id are
    skipped.
    """
    match = re.search(r"\d+", str(data.get("id", "")))
    if not match:
        return None
    updated = parse_tracker_datetime(data.get("lastUpdate"))
    state = PRState.parse(data.get("status"))
    return PullRequest(
        id=int(match.group()),
        title=data.get("name") or "",
        state=state,
        url=data.get("url") or "",
        branch=(data.get("source") or {}).get("branch") or "",
        author=(data.get("author") or {}).get("name"),
        updated=updated,
        merged=updated if state is PRState.MERGED else None,
        repository=data.get("repositoryName"),
    )


# ---------------------------------------------------------------------------
# Concrete Implementation
# ---------------------------------------------------------------------------

_ISSUE_FIELDS = "summary,status,issuetype,parent,created,updated,assignee,priority,labels"


class JiraClient:
    """Jira Cloud adapter using httpx.

    Usage:
        tracker = JiraClient(base_url="https://acme.atlassian.net",
                             email="me@acme.io", api_token="...")
        issue = await tracker.fetch_issue("JAR-123")
    """

    def __init__(
        self,
        base_url: str | None = None,
        email: str | None = None,
        api_token: str | None = None,
        project: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the Jira adapter.

        Args:
            base_url: Site URL. Falls back to JIRA_BASE_URL.
            email: Account email. Falls back to JIRA_EMAIL.
            api_token: API token. Falls back to JIRA_API_TOKEN.
            project: Default project key. Falls back to JIRA_PROJECT.
            timeout: Per-request timeout in seconds.
        """
        self.base_url = (base_url or os.environ.get("JIRA_BASE_URL", "")).rstrip("/")
        self.project = project or os.environ.get("JIRA_PROJECT") or None
        self._auth = httpx.BasicAuth(
            email or os.environ.get("JIRA_EMAIL", ""),
            api_token or os.environ.get("JIRA_API_TOKEN", ""),
        )
        self._timeout = timeout
        self._headers = {"Accept": "application/json"}

    async def fetch_issue(self, key: str) -> IssueNode:
        data = await self._get(f"/rest/api/3/issue/{key}", {"fields": _ISSUE_FIELDS})
        return issue_from_jira(data)

    async def search_issues(self, query: str, max_results: int = 50) -> list[IssueNode]:
        data = await self._get(
            "/rest/api/3/search",
            {"jql": query, "maxResults": max_results, "fields": _ISSUE_FIELDS},
        )
        if "issues" not in data:
            raise TransportError("Invalid search response from Jira", {"query": query})
        return [issue_from_jira(issue) for issue in data["issues"]]

    async def fetch_remote_links(self, key: str) -> list[dict[str, Any]]:
        data = await self._get(f"/rest/api/3/issue/{key}/remotelink")
        return data if isinstance(data, list) else []

    async def fetch_dev_status(self, key: str) -> list[PullRequest]:
        # The dev-status API is keyed by the numeric issue id
        issue = await self._get(f"/rest/api/3/issue/{key}", {"fields": "summary"})
        detail = await self._get(
            "/rest/dev-status/latest/issue/detail",
            {
                "issueId": issue["id"],
                "applicationType": "bitbucket",
                "dataType": "pullrequest",
            },
        )
        pull_requests: list[PullRequest] = []
        for entry in detail.get("detail") or []:
            for raw in entry.get("pullRequests") or []:
                pr = pull_request_from_dev_status(raw)
                if pr is not None:
                    pull_requests.append(pr)
        return pull_requests

    async def get_raw_fields(self, key: str, fields: list[str]) -> dict[str, Any]:
        data = await self._get(f"/rest/api/3/issue/{key}", {"fields": ",".join(fields)})
        return data.get("fields") or {}

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            resp = await self._send(path, params)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 404:
                raise NotFoundError(f"Jira resource not found: {path}", {"status": status}) from exc
            raise TransportError(
                f"Jira request failed with HTTP {status}: {path}", {"status": status}
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Jira request failed: {exc}", {"path": path}) from exc
        return resp.json()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def _send(self, path: str, params: dict[str, Any] | None) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            auth=self._auth,
            timeout=self._timeout,
        ) as client:
            return await client.get(path, params=params)


# ---------------------------------------------------------------------------
# Mock Implementation (for testing)
# ---------------------------------------------------------------------------

_CLAUSE = re.compile(
    r'(?:"(?P<quoted>[^"]+)"|(?P<bare>[A-Za-z][\w\[\]]*))\s*=\s*"?(?P<value>[A-Za-z][A-Za-z0-9]*(?:-\d+)?)"?'
)


class MockIssueTracker:
    """In-memory tracker that serves predefined issues and links.

    Understands the handful of query shapes the resolver issues
    (``parent = "KEY"``, ``"Epic Link" = "KEY"``, optionally scoped by
    ``project = "P"``). Explicit ``search_results`` override parsing.

    Usage:
        tracker = MockIssueTracker(issues=[IssueNode(key="JAR-1", type="Epic")])
        issue = await tracker.fetch_issue("JAR-1")
    """

    def __init__(
        self,
        issues: list[IssueNode] | None = None,
        links: dict[str, list[dict[str, Any]]] | None = None,
        epic_links: dict[str, str] | None = None,
        remote_links: dict[str, list[dict[str, Any]]] | None = None,
        dev_status: dict[str, list[PullRequest]] | None = None,
        search_results: dict[str, list[str]] | None = None,
        failing_keys: set[str] | None = None,
        epic_link_field: str = "customfield_10014",
    ) -> None:
        """Initialize with predefined tracker data.

        Args:
            issues: Issues the tracker knows about
            links: Issue key -> raw Jira ``issuelinks`` entries
            epic_links: Issue key -> epic key stored in the epic-link field
            remote_links: Issue key -> raw remote links
            dev_status: Issue key -> pull requests reported by dev-status
            search_results: Exact query -> issue keys, bypassing query parsing
            failing_keys: Keys for which every call raises TransportError
            epic_link_field: Name of the epic-link field
        """
        self._issues = {issue.key: issue for issue in issues or []}
        self._links = links or {}
        self._epic_links = epic_links or {}
        self._remote_links = remote_links or {}
        self._dev_status = dev_status or {}
        self._search_results = search_results or {}
        self._failing = failing_keys or set()
        self._epic_link_field = epic_link_field
        self.calls: list[tuple[str, str]] = []

    def add_issue(self, issue: IssueNode) -> None:
        self._issues[issue.key] = issue

    async def fetch_issue(self, key: str) -> IssueNode:
        self._record("fetch_issue", key)
        if key not in self._issues:
            raise NotFoundError(f"Issue {key} not found", {"key": key})
        return self._issues[key]

    async def search_issues(self, query: str, max_results: int = 50) -> list[IssueNode]:
        self.calls.append(("search_issues", query))
        if query in self._search_results:
            keys = self._search_results[query]
            return [self._issues[k] for k in keys if k in self._issues][:max_results]

        project: str | None = None
        criteria: list[tuple[str, str]] = []
        for match in _CLAUSE.finditer(query):
            field = (match.group("quoted") or match.group("bare")).lower()
            if field == "project":
                project = match.group("value").upper()
            else:
                criteria.append((field, match.group("value").upper()))

        found: list[IssueNode] = []
        for issue in self._issues.values():
            if project and not issue.key.upper().startswith(f"{project}-"):
                continue
            if criteria and all(self._matches(issue, f, v) for f, v in criteria):
                found.append(issue)
        return found[:max_results]

    async def fetch_remote_links(self, key: str) -> list[dict[str, Any]]:
        self._record("fetch_remote_links", key)
        return list(self._remote_links.get(key, []))

    async def fetch_dev_status(self, key: str) -> list[PullRequest]:
        self._record("fetch_dev_status", key)
        return list(self._dev_status.get(key, []))

    async def get_raw_fields(self, key: str, fields: list[str]) -> dict[str, Any]:
        self._record("get_raw_fields", key)
        if key not in self._issues:
            raise NotFoundError(f"Issue {key} not found", {"key": key})
        raw: dict[str, Any] = {
            "issuelinks": list(self._links.get(key, [])),
            self._epic_link_field: self._epic_links.get(key),
        }
        return {name: raw.get(name) for name in fields}

    def _record(self, method: str, key: str) -> None:
        self.calls.append((method, key))
        if key in self._failing:
            raise TransportError(f"Simulated tracker failure for {key}", {"key": key})

    def _matches(self, issue: IssueNode, field: str, value: str) -> bool:
        if field == "parent":
            return (issue.parent_key or "").upper() == value
        if field in ("epic link", self._epic_link_field.lower()):
            return self._epic_links.get(issue.key, "").upper() == value
        return False
