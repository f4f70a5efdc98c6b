"""Tests for the PR/ticket matcher.

These tests verify that the matcher:
- Scores text and branch evidence by the confidence hierarchy
- Short-circuits on dev-status, then remote links, then code-host scans
- Finds the tickets a PR references (reverse lookup)
- Matches many tickets against one PR listing
- Reports failures only when every evidence source failed

Run with: pytest tests/test_matcher.py -v
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from ticket_context.context.codehost import MockCodeHost
from ticket_context.context.tracker import MockIssueTracker
from ticket_context.errors import TransportError
from ticket_context.matcher import (
    PRTicketMatcher,
    analyze_branch_name,
    analyze_text,
    dedupe_matches,
    extract_tickets_from_branch,
    extract_tickets_from_text,
    key_variants,
    merge_pr_match,
    remote_link_matches,
)
from ticket_context.schemas import (
    CommitInfo,
    FileStat,
    PRMatch,
    PRState,
    PullRequest,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def code_host() -> MockCodeHost:
    """Repository "api" with a handful of PRs, commits and diff stats."""
    return MockCodeHost(
        pull_requests={
            "api": [
                PullRequest(
                    id=1,
                    title="JAR-3: add login form",
                    state=PRState.OPEN,
                    branch="feature/JAR-3-login",
                    repository="api",
                ),
                PullRequest(id=2, title="Bump dependencies", state=PRState.MERGED, branch="chore/deps"),
                PullRequest(
                    id=3,
                    title="Follow-up for jar-3 review comments",
                    state=PRState.MERGED,
                    branch="fix/review",
                ),
                PullRequest(id=4, title="Refactor checkout", state=PRState.MERGED, branch="refactor/checkout"),
                PullRequest(
                    id=5,
                    title="Refactor pricing",
                    description="JAR-5: pricing details",
                    state=PRState.MERGED,
                    branch="refactor/pricing",
                ),
            ]
        },
        commits={
            ("api", 4): [CommitInfo(hash="a1", message="JAR-4: tidy up checkout")],
            ("api", 7): [CommitInfo(hash="b2", message="JAR-1 - wire up")],
        },
        diff_stats={
            ("api", 7): [FileStat(path="src/app.py", lines_added=3)],
        },
    )


@pytest.fixture
def tracker() -> MockIssueTracker:
    return MockIssueTracker(
        dev_status={
            "JAR-1": [PullRequest(id=7, title="JAR-1 checkout", state=PRState.MERGED)],
        },
        remote_links={
            "JAR-2": [
                {"object": {"url": "https://bitbucket.org/acme/api/pull-requests/12", "title": "Fix cart"}},
                {"object": {"url": "https://github.com/acme/web/pull/5"}},
                {"object": {"url": "https://wiki.acme.io/pages/JAR-2"}},
            ],
        },
    )


@pytest.fixture
def matcher(tracker: MockIssueTracker, code_host: MockCodeHost) -> PRTicketMatcher:
    return PRTicketMatcher(tracker, code_host)


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


class TestAnalyzeText:
    """Tests for text evidence scoring."""

    def test_structured_at_start_beats_bare_mention(self) -> None:
        structured = analyze_text("JAR-42: fix bug", "JAR-42")
        bare = analyze_text("see JAR-42 for context", "JAR-42")
        assert structured > bare > 0

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("JAR-42: fix bug", 85),
            ("[JAR-42] fix bug", 85),
            ("JAR-42 | fix bug", 85),
            ("jar-42 - fix bug", 85),
            ("Merge: JAR-42 - fix bug", 75),
            ("Fixes [JAR-42]", 75),
            ("see JAR-42 for context", 50),
            ("see JAR-421 for context", 0),
            ("", 0),
        ],
    )
    def test_confidence_levels(self, text: str, expected: int) -> None:
        assert analyze_text(text, "JAR-42") == expected

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("JAR_42: fix login", 85),
            ("jar 42 | fix login", 85),
            ("JAR42 cleanup", 50),
            ("Follow-up [jar_42]", 75),
            ("JAR_421 cleanup", 0),
            ("AJAR42 cleanup", 0),
        ],
    )
    def test_key_spelling_variants(self, text: str, expected: int) -> None:
        assert analyze_text(text, "JAR-42") == expected


class TestAnalyzeBranch:
    """Tests for branch naming evidence."""

    @pytest.mark.parametrize(
        "branch,expected",
        [
            ("feature/JAR-42-login", 90),
            ("bugfix/jar-42-crash", 90),
            ("hotfix/JAR-42", 90),
            ("JAR-42-login", 90),
            ("team/JAR-42-login", 90),
            ("release-JAR-42", 70),
            ("feature/JAR-43-login", 0),
            ("feature/jar_42-login", 90),
            ("JAR42-login", 90),
            ("wip-jar42", 70),
            ("feature/JAR-4-login", 0),
            ("", 0),
        ],
    )
    def test_branch_confidence(self, branch: str, expected: int) -> None:
        assert analyze_branch_name(branch, "JAR-42") == expected


class TestExtraction:
    """Tests for extracting ticket keys and key variants."""

    def test_extract_from_text_dedupes_in_order(self) -> None:
        assert extract_tickets_from_text("JAR-1: fix, see OPS-22 and JAR-1") == ["JAR-1", "OPS-22"]

    def test_extract_from_branch_uses_conventions(self) -> None:
        assert extract_tickets_from_branch("feature/JAR-7-checkout") == ["JAR-7"]
        assert extract_tickets_from_branch("release-JAR-7") == []

    def test_key_variants(self) -> None:
        variants = key_variants("JAR-42")
        assert variants[:4] == ["JAR-42", "JAR_42", "JAR42", "JAR 42"]
        assert "jar-42" in variants
        assert len(variants) == len(set(variants))

    def test_remote_link_matches_recognizes_hosts(self) -> None:
        links = [
            {"object": {"url": "https://bitbucket.org/acme/api/pull-requests/12"}},
            {"object": {"url": "https://github.com/acme/web/pull/5"}},
            {"object": {"url": "https://gitlab.acme.io/team/svc/-/merge_requests/9"}},
            {"object": {"url": "https://wiki.acme.io/page"}},
        ]
        matches = remote_link_matches(links)
        assert [(m.id, m.repository) for m in matches] == [(12, "api"), (5, "web"), (9, "svc")]
        assert all(m.confidence_score == 95 for m in matches)


class TestMerging:
    """Tests for merging duplicate matches of one PR."""

    def test_higher_confidence_wins_and_detail_is_kept(self) -> None:
        weak = PRMatch(
            id=1,
            confidence_score=50,
            match_sources=["pr-title"],
            diff_stat=[FileStat(path="a.py")],
        )
        strong = PRMatch(id=1, confidence_score=95, match_sources=["dev-status"])

        merged = merge_pr_match(weak, strong)
        assert merged.confidence_score == 95
        assert merged.match_sources == ["dev-status", "pr-title"]
        assert merged.diff_stat == [FileStat(path="a.py")]

    def test_dedupe_sorts_by_confidence(self) -> None:
        matches = [
            PRMatch(id=1, confidence_score=50),
            PRMatch(id=2, confidence_score=90),
            PRMatch(id=1, confidence_score=75),
        ]
        assert [(m.id, m.confidence_score) for m in dedupe_matches(matches)] == [(2, 90), (1, 75)]


# ---------------------------------------------------------------------------
# find_prs_for_ticket
# ---------------------------------------------------------------------------


class TestFindPRsForTicket:
    """Tests for the ticket -> PRs lookup strategy."""

    @pytest.mark.asyncio
    async def test_dev_status_wins_and_is_enriched(
        self, matcher: PRTicketMatcher, code_host: MockCodeHost
    ) -> None:
        result = await matcher.find_prs_for_ticket("JAR-1", repo="api")

        assert result.success
        prs = result.data.pull_requests
        assert [pr.id for pr in prs] == [7]
        assert prs[0].confidence_score == 95
        assert prs[0].match_sources == ["dev-status"]
        assert prs[0].diff_stat == [FileStat(path="src/app.py", lines_added=3)]
        assert prs[0].files_changed_count == 1
        assert prs[0].commits and prs[0].commits[0].hash == "b2"
        assert all(method != "fetch_pull_requests" for method, _ in code_host.calls)

    @pytest.mark.asyncio
    async def test_remote_links_used_without_dev_status(
        self, matcher: PRTicketMatcher, code_host: MockCodeHost
    ) -> None:
        result = await matcher.find_prs_for_ticket("JAR-2", repo="api")

        prs = result.data.pull_requests
        assert sorted(pr.id for pr in prs) == [5, 12]
        assert all(pr.match_sources == ["remote-link"] for pr in prs)
        assert code_host.calls == []

    @pytest.mark.asyncio
    async def test_targeted_scan_finds_variants(
        self, matcher: PRTicketMatcher, code_host: MockCodeHost
    ) -> None:
        result = await matcher.find_prs_for_ticket("JAR-3", repo="api")

        prs = result.data.pull_requests
        assert [(pr.id, pr.confidence_score) for pr in prs] == [(1, 90), (3, 50)]
        assert "branch-name" in prs[0].match_sources
        listings = [ref for method, ref in code_host.calls if method == "fetch_pull_requests"]
        assert listings == ["api", "api"]

    @pytest.mark.asyncio
    async def test_targeted_scan_scores_spelling_variants(self) -> None:
        host = MockCodeHost(
            pull_requests={
                "api": [
                    PullRequest(
                        id=9,
                        title="JAR_42: fix login",
                        branch="feature/jar_42-login",
                        state=PRState.MERGED,
                    ),
                    PullRequest(id=10, title="JAR42 cleanup", branch="chore/cleanup", state=PRState.OPEN),
                    PullRequest(id=11, title="JAR_421 follow-up", branch="chore/next", state=PRState.OPEN),
                ]
            }
        )
        matcher = PRTicketMatcher(MockIssueTracker(), host)

        result = await matcher.find_prs_for_ticket("JAR-42", repo="api")

        prs = result.data.pull_requests
        assert [(pr.id, pr.confidence_score) for pr in prs] == [(9, 90), (10, 50)]
        assert prs[0].match_sources == ["branch-name", "pr-title"]

    @pytest.mark.asyncio
    async def test_plain_scan_reads_commit_messages(self, matcher: PRTicketMatcher) -> None:
        result = await matcher.find_prs_for_ticket("JAR-4", repo="api")

        prs = result.data.pull_requests
        assert [pr.id for pr in prs] == [4]
        assert prs[0].confidence_score == 85
        assert prs[0].match_sources == ["commit-message"]

    @pytest.mark.asyncio
    async def test_description_capped(self, matcher: PRTicketMatcher) -> None:
        result = await matcher.find_prs_for_ticket("JAR-5", repo="api")

        prs = result.data.pull_requests
        assert [(pr.id, pr.confidence_score) for pr in prs] == [(5, 75)]

    @pytest.mark.asyncio
    async def test_no_repo_and_no_tracker_evidence_is_empty(self, matcher: PRTicketMatcher) -> None:
        result = await matcher.find_prs_for_ticket("JAR-8")

        assert result.success
        assert result.data.pull_requests == []

    @pytest.mark.asyncio
    async def test_all_sources_failing_is_transport_error(self, code_host: MockCodeHost) -> None:
        tracker = MockIssueTracker(failing_keys={"JAR-6"})
        matcher = PRTicketMatcher(tracker, code_host)
        result = await matcher.find_prs_for_ticket("JAR-6")

        assert result.success is False
        assert result.error.code == "TRANSPORT_ERROR"

    @pytest.mark.asyncio
    async def test_single_source_failure_is_swallowed(
        self, tracker: MockIssueTracker, code_host: MockCodeHost
    ) -> None:
        tracker.fetch_dev_status = AsyncMock(side_effect=TransportError("dev-status down"))
        matcher = PRTicketMatcher(tracker, code_host)
        result = await matcher.find_prs_for_ticket("JAR-2")

        assert result.success
        assert len(result.data.pull_requests) == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_is_match_error(
        self, tracker: MockIssueTracker, code_host: MockCodeHost
    ) -> None:
        tracker.fetch_dev_status = AsyncMock(side_effect=RuntimeError("boom"))
        matcher = PRTicketMatcher(tracker, code_host)
        result = await matcher.find_prs_for_ticket("JAR-1")

        assert result.error.code == "MATCH_ERROR"

    @pytest.mark.asyncio
    async def test_repeated_lookup_served_from_cache(
        self, matcher: PRTicketMatcher, tracker: MockIssueTracker
    ) -> None:
        await matcher.find_prs_for_ticket("JAR-2")
        calls = len(tracker.calls)
        again = await matcher.find_prs_for_ticket("JAR-2")

        assert again.from_cache is True
        assert len(tracker.calls) == calls
        matcher.clear_cache()
        assert matcher.cache_stats().size == 0


class TestDevStatusOnly:
    """Tests for the dev-status-only lookup."""

    @pytest.mark.asyncio
    async def test_returns_dev_status_prs(self, matcher: PRTicketMatcher) -> None:
        result = await matcher.find_dev_status_prs("JAR-1")

        assert [pr.id for pr in result.data.pull_requests] == [7]
        assert result.data.pull_requests[0].diff_stat is None

    @pytest.mark.asyncio
    async def test_failure_is_reported(self, code_host: MockCodeHost) -> None:
        matcher = PRTicketMatcher(MockIssueTracker(failing_keys={"JAR-1"}), code_host)
        result = await matcher.find_dev_status_prs("JAR-1")

        assert result.error.code == "TRANSPORT_ERROR"


# ---------------------------------------------------------------------------
# find_tickets_for_pr
# ---------------------------------------------------------------------------


class TestFindTicketsForPR:
    """Tests for the PR -> tickets reverse lookup."""

    @pytest.fixture
    def host(self) -> MockCodeHost:
        return MockCodeHost(
            pull_requests={
                "api": [
                    PullRequest(
                        id=10,
                        title="JAR-1: login",
                        description="Also touches OPS-2",
                        branch="feature/JAR-1-login",
                        state=PRState.DECLINED,
                        updated=datetime(2024, 5, 1, tzinfo=timezone.utc),
                    )
                ]
            },
            commits={("api", 10): [CommitInfo(message="JAR-9 - cleanup")]},
        )

    @pytest.mark.asyncio
    async def test_collects_references_from_every_source(self, host: MockCodeHost) -> None:
        matcher = PRTicketMatcher(MockIssueTracker(), host)
        result = await matcher.find_tickets_for_pr(10, "api")

        assert result.success
        refs = {t.ticket_key: t for t in result.data.tickets}
        assert refs["JAR-1"].confidence == 90
        assert refs["JAR-1"].sources == ["pr-title", "branch-name"]
        assert refs["OPS-2"].confidence == 75
        assert refs["OPS-2"].sources == ["pr-description"]
        assert refs["JAR-9"].sources == ["commit-message"]

    @pytest.mark.asyncio
    async def test_unknown_pr_is_not_found(self, host: MockCodeHost) -> None:
        matcher = PRTicketMatcher(MockIssueTracker(), host)
        result = await matcher.find_tickets_for_pr(99, "api")

        assert result.error.code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_requires_code_host(self) -> None:
        matcher = PRTicketMatcher(MockIssueTracker())
        result = await matcher.find_tickets_for_pr(10, "api")

        assert result.error.code == "TRANSPORT_ERROR"


# ---------------------------------------------------------------------------
# batch_match_tickets
# ---------------------------------------------------------------------------


class TestBatchMatch:
    """Tests for matching many tickets against one PR listing."""

    @pytest.mark.asyncio
    async def test_lists_once_and_fetches_commits_once_per_pr(
        self, matcher: PRTicketMatcher, code_host: MockCodeHost
    ) -> None:
        result = await matcher.batch_match_tickets(["JAR-3", "JAR-4", "JAR-2"], "api")

        assert result.success
        data = result.data
        assert [pr.id for pr in data["JAR-3"].pull_requests] == [1, 3]
        assert [pr.id for pr in data["JAR-4"].pull_requests] == [4]
        assert sorted(pr.id for pr in data["JAR-2"].pull_requests) == [5, 12]

        methods = [method for method, _ in code_host.calls]
        assert methods.count("fetch_pull_requests") == 2
        assert methods.count("fetch_pr_commits") == 5

    @pytest.mark.asyncio
    async def test_unknown_repo_fails(self, matcher: PRTicketMatcher) -> None:
        result = await matcher.batch_match_tickets(["JAR-3"], "missing")

        assert result.error.code == "NOT_FOUND"
