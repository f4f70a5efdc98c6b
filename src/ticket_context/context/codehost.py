"""Code host collaborator: protocol, Bitbucket adapter and in-memory mock.

The matcher lists pull requests per repository and, for the ones it keeps,
fetches commits and diff statistics. This module gathers:
- PR listings (paged, filtered by state and optionally by search terms)
- Commit messages of a PR
- Per-file diff statistics of a PR

Design notes:
- Uses httpx for async HTTP requests, tenacity for transient retries
- Uses a Protocol so the matcher doesn't depend on the concrete implementation
  (makes testing with mocks easy)

Bitbucket API docs: https://developer.atlassian.com/cloud/bitbucket/rest/
"""

from __future__ import annotations

import os
from typing import Any, Protocol

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ticket_context.context.tracker import parse_tracker_datetime
from ticket_context.errors import NotFoundError, TransportError
from ticket_context.schemas import (
    CommitInfo,
    FileStat,
    PRState,
    PullRequest,
    PullRequestPage,
)

# ---------------------------------------------------------------------------
# Protocol (Interface)
# ---------------------------------------------------------------------------


class CodeHostProtocol(Protocol):
    """Protocol defining the pull request data the matcher needs.

    By coding against this protocol (not the concrete class), the matcher
    and tests can use mock implementations without touching a real host.
    """

    async def fetch_pull_requests(
        self,
        repo: str,
        state: str | None = None,
        page: int = 1,
        page_size: int = 50,
        search_terms: list[str] | None = None,
    ) -> PullRequestPage:
        """List pull requests of a repository.

        Args:
            repo: Repository slug
            state: PR state filter (OPEN, MERGED, DECLINED)
            page: 1-based page number
            page_size: Items per page
            search_terms: When given, only PRs whose title, branch or
                description contains any term

        Returns:
            One page of pull requests
        """
        ...

    async def fetch_pr_commits(
        self, repo: str, pr_id: int, page: int = 1, page_size: int = 50
    ) -> list[CommitInfo]:
        """Fetch commits of a pull request."""
        ...

    async def fetch_pr_diff_stat(self, repo: str, pr_id: int) -> list[FileStat]:
        """Fetch per-file diff statistics of a pull request."""
        ...


# ---------------------------------------------------------------------------
# Concrete Implementation
# ---------------------------------------------------------------------------


def pull_request_from_bitbucket(data: dict[str, Any], repo: str) -> PullRequest:
    """Convert a Bitbucket pull request payload into a PullRequest."""
    state = PRState.parse(data.get("state"))
    updated = parse_tracker_datetime(data.get("updated_on"))
    author = data.get("author") or {}
    return PullRequest(
        id=data["id"],
        title=data.get("title") or "",
        description=data.get("description") or "",
        state=state,
        url=((data.get("links") or {}).get("html") or {}).get("href") or "",
        branch=((data.get("source") or {}).get("branch") or {}).get("name") or "",
        author=author.get("display_name") or author.get("nickname"),
        commit_count=data.get("commit_count") or 0,
        files_changed_count=(data.get("diff_stats") or {}).get("files_changed") or 0,
        created=parse_tracker_datetime(data.get("created_on")),
        updated=updated,
        merged=updated if state is PRState.MERGED else None,
        repository=repo,
    )


class BitbucketClient:
    """Bitbucket Cloud adapter using httpx.

    Usage:
        host = BitbucketClient(workspace="acme", username="me", app_password="...")
        page = await host.fetch_pull_requests("backend-api", state="MERGED")
    """

    BASE_URL = "https://api.bitbucket.org/2.0"

    def __init__(
        self,
        workspace: str | None = None,
        username: str | None = None,
        app_password: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the Bitbucket adapter.

        Args:
            workspace: Workspace slug. Falls back to BITBUCKET_WORKSPACE.
            username: Account name. Falls back to BITBUCKET_USERNAME.
            app_password: App password. Falls back to BITBUCKET_APP_PASSWORD.
            timeout: Per-request timeout in seconds.
        """
        self.workspace = workspace or os.environ.get("BITBUCKET_WORKSPACE", "")
        self._auth = httpx.BasicAuth(
            username or os.environ.get("BITBUCKET_USERNAME", ""),
            app_password or os.environ.get("BITBUCKET_APP_PASSWORD", ""),
        )
        self._timeout = timeout
        self._headers = {"Accept": "application/json"}

    async def fetch_pull_requests(
        self,
        repo: str,
        state: str | None = None,
        page: int = 1,
        page_size: int = 50,
        search_terms: list[str] | None = None,
    ) -> PullRequestPage:
        params: dict[str, Any] = {"page": page, "pagelen": min(page_size, 50)}
        if state:
            params["state"] = state
        if search_terms:
            params["q"] = self._build_query(search_terms)
        data = await self._get(f"/repositories/{self.workspace}/{repo}/pullrequests", params)
        return PullRequestPage(
            pull_requests=[
                pull_request_from_bitbucket(item, repo) for item in data.get("values") or []
            ],
            page=data.get("page") or page,
            has_next=bool(data.get("next")),
        )

    async def fetch_pr_commits(
        self, repo: str, pr_id: int, page: int = 1, page_size: int = 50
    ) -> list[CommitInfo]:
        data = await self._get(
            f"/repositories/{self.workspace}/{repo}/pullrequests/{pr_id}/commits",
            {"page": page, "pagelen": page_size},
        )
        return [
            CommitInfo(
                hash=item.get("hash") or "",
                message=item.get("message") or "",
                author=((item.get("author") or {}).get("user") or {}).get("display_name"),
                date=parse_tracker_datetime(item.get("date")),
            )
            for item in data.get("values") or []
        ]

    async def fetch_pr_diff_stat(self, repo: str, pr_id: int) -> list[FileStat]:
        data = await self._get(
            f"/repositories/{self.workspace}/{repo}/pullrequests/{pr_id}/diffstat"
        )
        stats: list[FileStat] = []
        for item in data.get("values") or []:
            path = (item.get("new") or {}).get("path") or (item.get("old") or {}).get("path")
            if not path:
                continue
            stats.append(
                FileStat(
                    path=path,
                    status=item.get("status") or "modified",
                    lines_added=item.get("lines_added") or 0,
                    lines_removed=item.get("lines_removed") or 0,
                )
            )
        return stats

    @staticmethod
    def _build_query(search_terms: list[str]) -> str:
        """Build a Bitbucket ``q`` filter matching any term in title or branch."""
        clauses = []
        for term in search_terms:
            escaped = term.replace('"', '\\"')
            clauses.append(f'title ~ "{escaped}"')
            clauses.append(f'source.branch.name ~ "{escaped}"')
        return " OR ".join(clauses)

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            resp = await self._send(path, params)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 404:
                raise NotFoundError(
                    f"Bitbucket resource not found: {path}", {"status": status}
                ) from exc
            raise TransportError(
                f"Bitbucket request failed with HTTP {status}: {path}", {"status": status}
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Bitbucket request failed: {exc}", {"path": path}) from exc
        return resp.json()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def _send(self, path: str, params: dict[str, Any] | None) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.BASE_URL,
            headers=self._headers,
            auth=self._auth,
            timeout=self._timeout,
        ) as client:
            return await client.get(path, params=params)


# ---------------------------------------------------------------------------
# Mock Implementation (for testing)
# ---------------------------------------------------------------------------


class MockCodeHost:
    """Mock code host that returns predefined pull requests.

    Use this in tests and local development when you don't want to hit a
    real code host.

    Usage:
        host = MockCodeHost(pull_requests={"api": [PullRequest(id=1, title="JAR-1: x")]})
        page = await host.fetch_pull_requests("api", state="OPEN")
    """

    def __init__(
        self,
        pull_requests: dict[str, list[PullRequest]] | None = None,
        commits: dict[tuple[str, int], list[CommitInfo]] | None = None,
        diff_stats: dict[tuple[str, int], list[FileStat]] | None = None,
        failing_repos: set[str] | None = None,
    ) -> None:
        """Initialize with optional predefined data.

        Args:
            pull_requests: Repository -> pull requests
            commits: (repository, PR id) -> commits
            diff_stats: (repository, PR id) -> per-file stats
            failing_repos: Repositories for which every call raises TransportError
        """
        self._pull_requests = pull_requests or {}
        self._commits = commits or {}
        self._diff_stats = diff_stats or {}
        self._failing = failing_repos or set()
        self.calls: list[tuple[str, str]] = []

    async def fetch_pull_requests(
        self,
        repo: str,
        state: str | None = None,
        page: int = 1,
        page_size: int = 50,
        search_terms: list[str] | None = None,
    ) -> PullRequestPage:
        self._record("fetch_pull_requests", repo)
        if repo not in self._pull_requests:
            raise NotFoundError(f"Repository {repo} not found", {"repo": repo})
        prs = self._pull_requests[repo]
        if state:
            wanted = {s.strip().upper() for s in state.split(",")}
            prs = [pr for pr in prs if pr.state.value in wanted]
        if search_terms:
            terms = [t.lower() for t in search_terms]
            prs = [
                pr
                for pr in prs
                if any(
                    t in pr.title.lower() or t in pr.branch.lower() or t in pr.description.lower()
                    for t in terms
                )
            ]
        start = (page - 1) * page_size
        return PullRequestPage(
            pull_requests=prs[start : start + page_size],
            page=page,
            has_next=start + page_size < len(prs),
        )

    async def fetch_pr_commits(
        self, repo: str, pr_id: int, page: int = 1, page_size: int = 50
    ) -> list[CommitInfo]:
        self._record("fetch_pr_commits", repo)
        start = (page - 1) * page_size
        return list(self._commits.get((repo, pr_id), []))[start : start + page_size]

    async def fetch_pr_diff_stat(self, repo: str, pr_id: int) -> list[FileStat]:
        self._record("fetch_pr_diff_stat", repo)
        return list(self._diff_stats.get((repo, pr_id), []))

    def _record(self, method: str, repo: str) -> None:
        self.calls.append((method, repo))
        if repo in self._failing:
            raise TransportError(f"Simulated code host failure for {repo}", {"repo": repo})
