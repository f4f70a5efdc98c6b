"""Tests for the collaborator adapters.

These tests verify that:
- Jira and Bitbucket payloads are parsed into engine models
- HTTP failures are mapped onto the engine's error taxonomy
- The mock tracker answers the query shapes the resolver issues

No network access is needed; the adapters' transport is patched out.

Run with: pytest tests/test_context.py -v
"""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from ticket_context.context.codehost import (
    BitbucketClient,
    MockCodeHost,
    pull_request_from_bitbucket,
)
from ticket_context.context.tracker import (
    JiraClient,
    MockIssueTracker,
    issue_from_jira,
    parse_tracker_datetime,
    pull_request_from_dev_status,
)
from ticket_context.errors import NotFoundError, TransportError
from ticket_context.schemas import IssueNode, PRState, PullRequest


def respond(status: int, payload: object | None = None):
    """Build a replacement for an adapter's ``_send`` returning a fixed response."""

    async def send(path: str, params: dict | None) -> httpx.Response:
        return httpx.Response(
            status,
            json=payload if payload is not None else {},
            request=httpx.Request("GET", f"https://example.test{path}"),
        )

    return send


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


class TestParsing:
    """Tests for converting raw payloads into engine models."""

    @pytest.mark.parametrize(
        "raw",
        [
            "2024-01-15T10:30:00.000+0000",
            "2024-01-15T10:30:00+0000",
            "2024-01-15T10:30:00Z",
        ],
    )
    def test_tracker_datetimes(self, raw: str) -> None:
        assert parse_tracker_datetime(raw) == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_unparseable_datetime_is_none(self) -> None:
        assert parse_tracker_datetime("yesterday") is None
        assert parse_tracker_datetime(None) is None

    def test_issue_from_jira(self) -> None:
        issue = issue_from_jira(
            {
                "key": "JAR-7",
                "fields": {
                    "summary": "Checkout flow",
                    "issuetype": {"name": "Story"},
                    "status": {"name": "In Progress"},
                    "parent": {"key": "JAR-1"},
                    "assignee": {"displayName": "Sam"},
                    "labels": ["web"],
                    "updated": "2024-02-01T08:00:00.000+0000",
                },
            }
        )
        assert issue.type == "Story"
        assert issue.status == "In Progress"
        assert issue.parent_key == "JAR-1"
        assert issue.assignee == "Sam"
        assert issue.updated == datetime(2024, 2, 1, 8, tzinfo=timezone.utc)

    def test_issue_defaults_when_fields_missing(self) -> None:
        issue = issue_from_jira({"key": "JAR-8"})
        assert issue.type == "Task"
        assert issue.parent_key is None

    def test_dev_status_entry(self) -> None:
        pr = pull_request_from_dev_status(
            {
                "id": "#42",
                "name": "JAR-7: checkout",
                "status": "MERGED",
                "url": "https://bitbucket.org/acme/api/pull-requests/42",
                "source": {"branch": "feature/JAR-7-checkout"},
                "lastUpdate": "2024-02-01T08:00:00.000+0000",
                "repositoryName": "api",
            }
        )
        assert pr is not None
        assert (pr.id, pr.state, pr.repository) == (42, PRState.MERGED, "api")
        assert pr.merged == pr.updated

    def test_dev_status_entry_without_id_skipped(self) -> None:
        assert pull_request_from_dev_status({"id": "", "name": "x"}) is None

    def test_bitbucket_pull_request(self) -> None:
        pr = pull_request_from_bitbucket(
            {
                "id": 5,
                "title": "JAR-7: checkout",
                "state": "DECLINED",
                "source": {"branch": {"name": "feature/JAR-7"}},
                "links": {"html": {"href": "https://bitbucket.org/acme/api/pull-requests/5"}},
                "author": {"display_name": "Sam"},
                "created_on": "2024-02-01T08:00:00+00:00",
            },
            "api",
        )
        assert pr.branch == "feature/JAR-7"
        assert pr.state is PRState.DECLINED
        assert pr.merged is None
        assert pr.repository == "api"
        assert pr.url.endswith("/5")

    def test_bitbucket_query_matches_title_or_branch(self) -> None:
        query = BitbucketClient._build_query(["JAR-7", 'say "hi"'])
        assert query == (
            'title ~ "JAR-7" OR source.branch.name ~ "JAR-7" OR '
            'title ~ "say \\"hi\\"" OR source.branch.name ~ "say \\"hi\\""'
        )


# ---------------------------------------------------------------------------
# HTTP adapters
# ---------------------------------------------------------------------------


class TestJiraClient:
    """Tests for the Jira adapter with the transport patched out."""

    @pytest.fixture
    def client(self) -> JiraClient:
        return JiraClient(base_url="https://acme.atlassian.net/", email="me@acme.io", api_token="t")

    @pytest.mark.asyncio
    async def test_fetch_issue(self, client: JiraClient) -> None:
        client._send = respond(200, {"key": "JAR-1", "fields": {"issuetype": {"name": "Epic"}}})
        issue = await client.fetch_issue("JAR-1")
        assert issue.is_epic
        assert client.base_url == "https://acme.atlassian.net"

    @pytest.mark.asyncio
    async def test_404_is_not_found(self, client: JiraClient) -> None:
        client._send = respond(404)
        with pytest.raises(NotFoundError):
            await client.fetch_issue("JAR-404")

    @pytest.mark.asyncio
    async def test_server_error_is_transport_error(self, client: JiraClient) -> None:
        client._send = respond(503)
        with pytest.raises(TransportError) as exc_info:
            await client.fetch_issue("JAR-1")
        assert exc_info.value.details == {"status": 503}

    @pytest.mark.asyncio
    async def test_search_without_issues_key_is_transport_error(self, client: JiraClient) -> None:
        client._send = respond(200, {"errorMessages": ["bad jql"]})
        with pytest.raises(TransportError):
            await client.search_issues('parent = "JAR-1"')

    @pytest.mark.asyncio
    async def test_remote_links_non_list_is_empty(self, client: JiraClient) -> None:
        client._send = respond(200, {"unexpected": True})
        assert await client.fetch_remote_links("JAR-1") == []


class TestBitbucketClient:
    """Tests for the Bitbucket adapter with the transport patched out."""

    @pytest.mark.asyncio
    async def test_diff_stat_skips_pathless_entries(self) -> None:
        client = BitbucketClient(workspace="acme", username="me", app_password="p")
        client._send = respond(
            200,
            {
                "values": [
                    {"new": {"path": "src/app.py"}, "lines_added": 4, "status": "modified"},
                    {"old": {"path": "src/gone.py"}, "lines_removed": 9, "status": "removed"},
                    {"status": "modified"},
                ]
            },
        )
        stats = await client.fetch_pr_diff_stat("api", 5)
        assert [(s.path, s.lines_added, s.lines_removed) for s in stats] == [
            ("src/app.py", 4, 0),
            ("src/gone.py", 0, 9),
        ]

    @pytest.mark.asyncio
    async def test_listing_reports_next_page(self) -> None:
        client = BitbucketClient(workspace="acme", username="me", app_password="p")
        client._send = respond(200, {"values": [{"id": 1, "state": "OPEN"}], "page": 1, "next": "..."})
        page = await client.fetch_pull_requests("api", state="OPEN")
        assert page.has_next is True
        assert page.pull_requests[0].state is PRState.OPEN


# ---------------------------------------------------------------------------
# Mocks
# ---------------------------------------------------------------------------


class TestMockIssueTracker:
    """Tests for the query shapes the mock tracker understands."""

    @pytest.fixture
    def tracker(self) -> MockIssueTracker:
        return MockIssueTracker(
            issues=[
                IssueNode(key="JAR-1", type="Epic"),
                IssueNode(key="JAR-2", parent_key="JAR-1"),
                IssueNode(key="OPS-3"),
            ],
            epic_links={"JAR-2": "JAR-1", "OPS-3": "JAR-1"},
        )

    @pytest.mark.asyncio
    async def test_parent_query(self, tracker: MockIssueTracker) -> None:
        found = await tracker.search_issues('parent = "JAR-1"')
        assert [i.key for i in found] == ["JAR-2"]

    @pytest.mark.asyncio
    async def test_project_scoped_epic_link_query(self, tracker: MockIssueTracker) -> None:
        scoped = await tracker.search_issues('project = "JAR" AND "Epic Link" = "JAR-1"')
        unscoped = await tracker.search_issues('"Epic Link" = "JAR-1"')
        assert [i.key for i in scoped] == ["JAR-2"]
        assert [i.key for i in unscoped] == ["JAR-2", "OPS-3"]

    @pytest.mark.asyncio
    async def test_unknown_issue_and_failures(self) -> None:
        tracker = MockIssueTracker(issues=[IssueNode(key="JAR-1")], failing_keys={"JAR-1"})
        with pytest.raises(TransportError):
            await tracker.fetch_issue("JAR-1")
        with pytest.raises(NotFoundError):
            await tracker.fetch_issue("JAR-2")
        assert tracker.calls == [("fetch_issue", "JAR-1"), ("fetch_issue", "JAR-2")]


class TestMockCodeHost:
    """Tests for the mock code host's filtering and paging."""

    @pytest.mark.asyncio
    async def test_state_search_and_paging(self) -> None:
        host = MockCodeHost(
            pull_requests={
                "api": [
                    PullRequest(id=n, title=f"JAR-{n}: change", state=PRState.MERGED)
                    for n in range(1, 6)
                ]
                + [PullRequest(id=9, title="JAR-9: draft", state=PRState.OPEN)]
            }
        )
        first = await host.fetch_pull_requests("api", state="MERGED", page=1, page_size=2)
        last = await host.fetch_pull_requests("api", state="MERGED", page=3, page_size=2)
        searched = await host.fetch_pull_requests("api", search_terms=["jar-9"])

        assert [pr.id for pr in first.pull_requests] == [1, 2]
        assert first.has_next is True
        assert [pr.id for pr in last.pull_requests] == [5]
        assert last.has_next is False
        assert [pr.id for pr in searched.pull_requests] == [9]

    @pytest.mark.asyncio
    async def test_unknown_repo(self) -> None:
        with pytest.raises(NotFoundError):
            await MockCodeHost().fetch_pull_requests("nope")
