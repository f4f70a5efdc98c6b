"""PR/ticket matcher.

Finds the pull requests that implement a ticket, and the tickets a pull
request references, with a 0-100 confidence score per match.

Evidence, strongest first:

    dev-status integration            95
    tracker remote link to a PR URL   95
    branch naming convention          90   feature/JAR-1-x, JAR-1-x, any/JAR-1-x
    structured reference at start     85   "JAR-1: msg", "[JAR-1] msg"
    structured reference elsewhere    75
    key anywhere in the branch        70
    key anywhere in text              50

PR descriptions never score above 75. Keys match in any common spelling
(JAR-1, JAR_1, JAR1, "JAR 1"), case-insensitively.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from ticket_context.cache import CacheStats, TTLCache
from ticket_context.config import EngineConfig
from ticket_context.context.codehost import CodeHostProtocol
from ticket_context.context.tracker import IssueTrackerProtocol
from ticket_context.errors import (
    ContextEngineError,
    DeadlineExceededError,
    MatchError,
    NotFoundError,
    TransportError,
    as_failure,
)
from ticket_context.logging_config import LoggerProtocol, get_logger
from ticket_context.schemas import (
    CommitInfo,
    PRMatch,
    PRState,
    PRTicketReferences,
    PullRequest,
    Result,
    TicketPRMatches,
    TicketReference,
)

logger = get_logger(__name__)
_default_logger = logger

T = TypeVar("T")

DEV_STATUS_CONFIDENCE = 95
REMOTE_LINK_CONFIDENCE = 95
EXACT_BRANCH_CONFIDENCE = 90
TITLE_PATTERN_CONFIDENCE = 85
MESSAGE_PATTERN_CONFIDENCE = 75
BRANCH_MENTION_CONFIDENCE = 70
PARTIAL_MATCH_CONFIDENCE = 50

DEFAULT_STATES: tuple[str, ...] = ("OPEN", "MERGED")

TICKET_KEY = re.compile(r"(?<![A-Z0-9])[A-Z][A-Z0-9]+-\d+(?!\d)")

_KEY = r"([A-Z][A-Z0-9]+-\d+)"
BRANCH_PATTERNS = [
    re.compile(rf"^FEATURE/{_KEY}"),
    re.compile(rf"^BUGFIX/{_KEY}"),
    re.compile(rf"^HOTFIX/{_KEY}"),
    re.compile(rf"^{_KEY}-"),
    re.compile(rf"/{_KEY}-"),
]

# Structured reference shapes; "{key}" is replaced by the key pattern
_STRUCTURED_TEMPLATES = (
    r"{key}:\s*",
    r"{key}\s*-\s*",
    r"\[{key}\]",
    r"{key}\s*\|\s*",
)

# Branch naming conventions, matched against the upper-cased branch
_BRANCH_TEMPLATES = (
    r"^(?:FEATURE|BUGFIX|HOTFIX)/{key}",
    r"^{key}-",
    r"/{key}-",
)

PR_URL_PATTERNS = [
    re.compile(r"bitbucket\.org/(?P<owner>[^/]+)/(?P<repo>[^/]+)/pull-requests/(?P<id>\d+)"),
    re.compile(r"github\.com/(?P<owner>[^/]+)/(?P<repo>[^/]+)/pull/(?P<id>\d+)"),
    re.compile(r"/(?P<owner>[^/]+)/(?P<repo>[^/]+)/-/merge_requests/(?P<id>\d+)"),
]


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def _key_pattern(ticket_key: str) -> str:
    """Regex for a key in any spelling: JAR-42, JAR_42, JAR42 or JAR 42."""
    project, sep, number = ticket_key.upper().rpartition("-")
    if not sep or not project:
        return rf"(?<![A-Z0-9]){re.escape(ticket_key.upper())}(?!\d)"
    return rf"(?<![A-Z0-9]){re.escape(project)}[-_ ]?{re.escape(number)}(?!\d)"


def analyze_text(text: str | None, ticket_key: str | None) -> int:
    """Score how strongly ``text`` references ``ticket_key`` (case-insensitive).

    Returns:
        85 for a structured reference at the start, 75 for one elsewhere,
        50 for a bare mention and 0 for none.
    """
    if not text or not ticket_key:
        return 0
    upper = text.upper().lstrip()
    key = _key_pattern(ticket_key)

    best = 0
    for template in _STRUCTURED_TEMPLATES:
        match = re.search(template.format(key=key), upper)
        if match is None:
            continue
        if match.start() == 0:
            return TITLE_PATTERN_CONFIDENCE
        best = MESSAGE_PATTERN_CONFIDENCE
    if best:
        return best
    if re.search(key, upper):
        return PARTIAL_MATCH_CONFIDENCE
    return 0


def analyze_branch_name(branch: str | None, ticket_key: str | None) -> int:
    """Score a branch name: 90 for a naming-convention match, 70 for a mention."""
    if not branch or not ticket_key:
        return 0
    upper = branch.upper()
    key = _key_pattern(ticket_key)
    for template in _BRANCH_TEMPLATES:
        if re.search(template.format(key=key), upper):
            return EXACT_BRANCH_CONFIDENCE
    if re.search(key, upper):
        return BRANCH_MENTION_CONFIDENCE
    return 0


def extract_tickets_from_text(text: str | None) -> list[str]:
    """Return every ticket key mentioned in ``text``, in order of appearance."""
    if not text:
        return []
    return list(dict.fromkeys(m.group(0).upper() for m in TICKET_KEY.finditer(text)))


def extract_tickets_from_branch(branch: str | None) -> list[str]:
    """Return the ticket keys a branch carries by naming convention."""
    if not branch:
        return []
    upper = branch.upper()
    found: dict[str, None] = {}
    for pattern in BRANCH_PATTERNS:
        match = pattern.search(upper)
        if match:
            found[match.group(1)] = None
    return list(found)


def key_variants(ticket_key: str) -> list[str]:
    """Spellings of a key people use in titles and branches.

    >>> key_variants("JAR-42")
    ['JAR-42', 'JAR_42', 'JAR42', 'JAR 42', 'jar-42', 'jar_42', 'jar42', 'jar 42']
    """
    project, _, number = ticket_key.upper().rpartition("-")
    if not project:
        return [ticket_key.upper(), ticket_key.lower()]
    upper = [f"{project}{sep}{number}" for sep in ("-", "_", "", " ")]
    return list(dict.fromkeys(upper + [v.lower() for v in upper]))


def pr_match_from_url(url: str, title: str | None = None) -> PRMatch | None:
    """Build a remote-link match from a Bitbucket, GitHub or GitLab PR URL."""
    for pattern in PR_URL_PATTERNS:
        match = pattern.search(url)
        if match:
            pr_id = int(match.group("id"))
            return PRMatch(
                id=pr_id,
                title=title or f"PR #{pr_id}",
                url=url,
                repository=match.group("repo"),
                confidence_score=REMOTE_LINK_CONFIDENCE,
                match_sources=["remote-link"],
            )
    return None


def remote_link_matches(links: Iterable[dict[str, Any]]) -> list[PRMatch]:
    """Turn raw tracker remote links into matches, skipping non-PR URLs."""
    matches: list[PRMatch] = []
    for link in links:
        obj = link.get("object") or {}
        match = pr_match_from_url(obj.get("url") or "", obj.get("title"))
        if match is not None:
            matches.append(match)
    return matches


def to_match(
    pr: PullRequest,
    confidence: int,
    sources: list[str],
    commits: list[CommitInfo] | None = None,
) -> PRMatch:
    data = pr.model_dump(exclude={"description"})
    data["branch"] = pr.branch or None
    return PRMatch(
        **data,
        confidence_score=confidence,
        match_sources=sources,
        commits=commits,
    )


def score_pull_request(
    pr: PullRequest,
    ticket_key: str,
    commits: list[CommitInfo] | None = None,
) -> tuple[int, list[str]]:
    """Combine branch, title, description and commit evidence for one PR.

    Returns:
        (confidence, sources); confidence is the maximum over all evidence.
    """
    confidence = 0
    sources: list[str] = []

    branch_score = analyze_branch_name(pr.branch, ticket_key)
    if branch_score:
        confidence = max(confidence, branch_score)
        sources.append("branch-name")

    title_score = analyze_text(pr.title, ticket_key)
    if title_score:
        confidence = max(confidence, title_score)
        sources.append("pr-title")

    desc_score = analyze_text(pr.description, ticket_key)
    if desc_score:
        confidence = max(confidence, min(desc_score, MESSAGE_PATTERN_CONFIDENCE))
        sources.append("pr-description")

    commit_score = max((analyze_text(c.message, ticket_key) for c in commits or []), default=0)
    if commit_score:
        confidence = max(confidence, commit_score)
        sources.append("commit-message")

    return confidence, sources


def merge_pr_match(current: PRMatch, incoming: PRMatch) -> PRMatch:
    """Merge two matches of the same PR.

    The higher-confidence match wins; detail it lacks (diff stat, commits,
    dates, counts) is taken from the other, and sources are unioned.
    """
    best, other = (incoming, current) if incoming.confidence_score > current.confidence_score else (current, incoming)
    update: dict[str, Any] = {
        "match_sources": list(dict.fromkeys(best.match_sources + other.match_sources)),
    }
    for name in ("diff_stat", "commits", "created", "updated", "merged", "author", "branch", "repository"):
        if getattr(best, name) is None and getattr(other, name) is not None:
            update[name] = getattr(other, name)
    for name in ("commit_count", "files_changed_count"):
        update[name] = max(getattr(best, name), getattr(other, name))
    if best.state is PRState.UNKNOWN:
        update["state"] = other.state
    return best.model_copy(update=update)


def dedupe_matches(matches: Iterable[PRMatch]) -> list[PRMatch]:
    """Collapse matches by PR id and sort by confidence, highest first."""
    by_id: dict[int, PRMatch] = {}
    for match in matches:
        by_id[match.id] = merge_pr_match(by_id[match.id], match) if match.id in by_id else match
    return sorted(by_id.values(), key=lambda m: m.confidence_score, reverse=True)


@dataclass
class _SourceTally:
    """Counts evidence sources attempted and failed during one lookup."""

    attempted: int = 0
    failed: int = 0

    @property
    def all_failed(self) -> bool:
        return self.attempted > 0 and self.failed == self.attempted


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------


class PRTicketMatcher:
    """Matches tickets to pull requests and back.

    Usage:
        matcher = PRTicketMatcher(tracker, code_host)
        result = await matcher.find_prs_for_ticket("JAR-123", repo="backend-api")
    """

    def __init__(
        self,
        tracker: IssueTrackerProtocol,
        code_host: CodeHostProtocol | None = None,
        config: EngineConfig | None = None,
        cache: TTLCache[Any] | None = None,
    ) -> None:
        self._tracker = tracker
        self._code_host = code_host
        self._config = config or EngineConfig()
        mc = self._config.matcher
        self._cache: TTLCache[Any] = cache or TTLCache(
            ttl_seconds=mc.cache_ttl_seconds,
            max_entries=mc.cache_max_entries,
            label="pr_matches",
        )

    # -- ticket -> PRs -----------------------------------------------------

    async def find_prs_for_ticket(
        self,
        ticket_key: str,
        repo: str | None = None,
        states: Iterable[str] | None = None,
        max_results: int = 100,
        logger: LoggerProtocol | None = None,
    ) -> Result[TicketPRMatches]:
        """Find pull requests implementing ``ticket_key``.

        Sources are tried in order and the first productive one wins:
        dev-status, remote links, then (with a repository) a targeted scan
        followed by a plain scan of recent PRs.

        Args:
            ticket_key: Tracker key
            repo: Repository slug; required for scanning the code host
            states: PR states to scan. Defaults to OPEN and MERGED.
            max_results: Upper bound on returned matches and scanned PRs per state
            logger: Logger overriding the module logger

        Returns:
            Result wrapping the matches, highest confidence first. Fails with
            TRANSPORT_ERROR only if every attempted source failed.
        """
        log = logger or _default_logger
        states = tuple(s.upper() for s in states) if states else DEFAULT_STATES
        cache_key = f"prs:{ticket_key}:{repo or '*'}:{','.join(states)}:{max_results}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            log.debug("pr_cache_hit", ticket_key=ticket_key, repo=repo)
            return Result.ok(cached, from_cache=True)

        try:
            tally = _SourceTally()
            matches = await self._collect(ticket_key, repo, states, max_results, tally, log)
        except Exception as exc:
            log.error("pr_match_failed", ticket_key=ticket_key, error=str(exc), exc_info=True)
            return as_failure(
                MatchError(f"Failed to find PRs for ticket {ticket_key}: {exc}", {"ticket_key": ticket_key})
            )

        if not matches and tally.all_failed:
            return as_failure(
                TransportError(
                    f"Every PR source failed for {ticket_key}", {"attempted": tally.attempted}
                )
            )

        data = TicketPRMatches(ticket_key=ticket_key, pull_requests=matches[:max_results])
        self._cache.set(cache_key, data)
        log.info(
            "pr_match_complete",
            ticket_key=ticket_key,
            repo=repo,
            matches=len(data.pull_requests),
        )
        return Result.ok(data)

    async def find_dev_status_prs(
        self,
        ticket_key: str,
        logger: LoggerProtocol | None = None,
    ) -> Result[TicketPRMatches]:
        """Look up PRs through the tracker's dev-status integration only."""
        log = logger or _default_logger
        try:
            prs = await self._call(self._tracker.fetch_dev_status(ticket_key))
        except ContextEngineError as exc:
            log.warning("pr_source_failed", source="dev-status", ticket_key=ticket_key, error=exc.message)
            return as_failure(exc)
        except TimeoutError:
            return as_failure(
                DeadlineExceededError(f"dev-status lookup for {ticket_key}", self._config.request_timeout_seconds)
            )
        matches = [to_match(pr, DEV_STATUS_CONFIDENCE, ["dev-status"]) for pr in prs]
        return Result.ok(TicketPRMatches(ticket_key=ticket_key, pull_requests=dedupe_matches(matches)))

    async def _collect(
        self,
        ticket_key: str,
        repo: str | None,
        states: tuple[str, ...],
        max_results: int,
        tally: _SourceTally,
        log: Any,
    ) -> list[PRMatch]:
        semaphore = asyncio.Semaphore(self._config.matcher.max_concurrency)

        dev_prs = await self._attempt(
            tally, self._tracker.fetch_dev_status(ticket_key), "dev-status", ticket_key, log
        )
        if dev_prs:
            matches = [to_match(pr, DEV_STATUS_CONFIDENCE, ["dev-status"]) for pr in dev_prs]
            if repo:
                matches = await self._enrich(matches, repo, semaphore, log)
            return dedupe_matches(matches)

        links = await self._attempt(
            tally, self._tracker.fetch_remote_links(ticket_key), "remote-link", ticket_key, log
        )
        linked = remote_link_matches(links or [])
        if linked:
            return dedupe_matches(linked)

        if not repo or self._code_host is None:
            return []

        page_size = min(self._config.matcher.scan_page_size, max_results)
        variants = key_variants(ticket_key)
        for search_terms in (variants, None):
            candidates: list[PullRequest] = []
            for state in states:
                page = await self._attempt(
                    tally,
                    self._code_host.fetch_pull_requests(
                        repo, state=state, page=1, page_size=page_size, search_terms=search_terms
                    ),
                    "targeted-scan" if search_terms else "recent-scan",
                    ticket_key,
                    log,
                )
                if page is not None:
                    candidates.extend(page.pull_requests)
            matches = await self._analyze(candidates, ticket_key, repo, semaphore, log)
            if matches:
                return dedupe_matches(await self._enrich(matches, repo, semaphore, log, commits=False))
        return []

    async def _analyze(
        self,
        candidates: list[PullRequest],
        ticket_key: str,
        repo: str,
        semaphore: asyncio.Semaphore,
        log: Any,
    ) -> list[PRMatch]:
        async def analyze_one(pr: PullRequest) -> PRMatch | None:
            commits = await self._commits(repo, pr.id, semaphore, log)
            confidence, sources = score_pull_request(pr, ticket_key, commits)
            if not confidence:
                return None
            return to_match(pr, confidence, sources, commits)

        unique = list({pr.id: pr for pr in candidates}.values())
        results = await asyncio.gather(*(analyze_one(pr) for pr in unique))
        return [m for m in results if m is not None]

    async def _enrich(
        self,
        matches: list[PRMatch],
        repo: str,
        semaphore: asyncio.Semaphore,
        log: Any,
        commits: bool = True,
    ) -> list[PRMatch]:
        """Attach diff stats (and commits) to matches; failures leave them as-is."""
        if self._code_host is None:
            return matches

        async def enrich_one(match: PRMatch) -> PRMatch:
            update: dict[str, Any] = {}
            async with semaphore:
                diff = await self._soft(
                    self._code_host.fetch_pr_diff_stat(repo, match.id), "diff-stat", match.id, log
                )
            if diff is not None:
                update["diff_stat"] = diff
                update["files_changed_count"] = match.files_changed_count or len(diff)
            if commits and match.commits is None:
                fetched = await self._commits(repo, match.id, semaphore, log)
                if fetched is not None:
                    update["commits"] = fetched
                    update["commit_count"] = match.commit_count or len(fetched)
            return match.model_copy(update=update) if update else match

        return list(await asyncio.gather(*(enrich_one(m) for m in matches)))

    # -- PR -> tickets -----------------------------------------------------

    async def find_tickets_for_pr(
        self,
        pr_id: int,
        repo: str,
        logger: LoggerProtocol | None = None,
    ) -> Result[PRTicketReferences]:
        """Find every ticket a pull request references.

        Title references score 85, description 75, branch 70 (90 when the
        branch follows the naming convention) and commit messages 75.
        """
        log = logger or _default_logger
        cache_key = f"tickets:{repo}:{pr_id}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return Result.ok(cached, from_cache=True)
        if self._code_host is None:
            return as_failure(TransportError("No code host configured"))

        try:
            pr = await self._locate_pr(pr_id, repo)
            if pr is None:
                raise NotFoundError(
                    f"Pull request {pr_id} not found in repository {repo}",
                    {"pr_id": pr_id, "repo": repo},
                )
            semaphore = asyncio.Semaphore(1)
            commits = await self._commits(repo, pr.id, semaphore, log) or []
        except ContextEngineError as exc:
            log.warning("pr_lookup_failed", pr_id=pr_id, repo=repo, error=exc.message)
            return as_failure(exc)
        except TimeoutError:
            return as_failure(
                DeadlineExceededError(f"Looking up PR {pr_id}", self._config.request_timeout_seconds)
            )
        except Exception as exc:
            log.error("ticket_extraction_failed", pr_id=pr_id, error=str(exc), exc_info=True)
            return as_failure(MatchError(f"Failed to find tickets for PR {pr_id}: {exc}"))

        refs: dict[str, TicketReference] = {}

        def add(key: str, confidence: int, source: str) -> None:
            ref = refs.get(key)
            if ref is None:
                refs[key] = TicketReference(ticket_key=key, confidence=confidence, sources=[source])
                return
            ref.confidence = max(ref.confidence, confidence)
            if source not in ref.sources:
                ref.sources.append(source)

        for key in extract_tickets_from_text(pr.title):
            add(key, TITLE_PATTERN_CONFIDENCE, "pr-title")
        for key in extract_tickets_from_text(pr.description):
            add(key, MESSAGE_PATTERN_CONFIDENCE, "pr-description")
        conventional = extract_tickets_from_branch(pr.branch)
        for key in extract_tickets_from_text(pr.branch.upper()):
            add(key, EXACT_BRANCH_CONFIDENCE if key in conventional else BRANCH_MENTION_CONFIDENCE, "branch-name")
        for commit in commits:
            for key in extract_tickets_from_text(commit.message):
                add(key, MESSAGE_PATTERN_CONFIDENCE, "commit-message")

        data = PRTicketReferences(pr_id=pr_id, repo=repo, tickets=list(refs.values()))
        self._cache.set(cache_key, data)
        return Result.ok(data)

    async def _locate_pr(self, pr_id: int, repo: str) -> PullRequest | None:
        page_size = self._config.matcher.scan_page_size
        max_pages = max(1, self._config.matcher.batch_max_results // page_size)
        for page_number in range(1, max_pages + 1):
            page = await self._call(
                self._code_host.fetch_pull_requests(
                    repo, state="OPEN,MERGED,DECLINED", page=page_number, page_size=page_size
                )
            )
            for pr in page.pull_requests:
                if pr.id == pr_id:
                    return pr
            if not page.has_next:
                break
        return None

    # -- batch -------------------------------------------------------------

    async def batch_match_tickets(
        self,
        ticket_keys: Iterable[str],
        repo: str,
        states: Iterable[str] | None = None,
        max_results: int | None = None,
        logger: LoggerProtocol | None = None,
    ) -> Result[dict[str, TicketPRMatches]]:
        """Match many tickets against one fetch of a repository's PRs.

        PRs are listed once (up to ``max_results``) and each PR's commits are
        fetched once, then every key is scored against that set plus its
        own remote links.
        """
        log = logger or _default_logger
        keys = list(dict.fromkeys(ticket_keys))
        states = tuple(s.upper() for s in states) if states else DEFAULT_STATES
        limit = max_results or self._config.matcher.batch_max_results
        if self._code_host is None:
            return as_failure(TransportError("No code host configured"))

        try:
            prs = await self._list_prs(repo, states, limit)
        except ContextEngineError as exc:
            log.warning("batch_pr_listing_failed", repo=repo, error=exc.message)
            return as_failure(exc)
        except TimeoutError:
            return as_failure(
                DeadlineExceededError(f"Listing PRs of {repo}", self._config.request_timeout_seconds)
            )

        try:
            semaphore = asyncio.Semaphore(self._config.matcher.max_concurrency)
            commit_lists = await asyncio.gather(
                *(self._commits(repo, pr.id, semaphore, log) for pr in prs)
            )
            results: dict[str, TicketPRMatches] = {}
            for key in keys:
                links = await self._soft(self._tracker.fetch_remote_links(key), "remote-link", key, log)
                matches = remote_link_matches(links or [])
                for pr, commits in zip(prs, commit_lists):
                    confidence, sources = score_pull_request(pr, key, commits)
                    if confidence:
                        matches.append(to_match(pr, confidence, sources, commits))
                results[key] = TicketPRMatches(ticket_key=key, pull_requests=dedupe_matches(matches))
        except Exception as exc:
            log.error("batch_match_failed", repo=repo, error=str(exc), exc_info=True)
            return as_failure(MatchError(f"Failed to batch match tickets: {exc}", {"repo": repo}))

        log.info("batch_match_complete", repo=repo, tickets=len(keys), pull_requests=len(prs))
        return Result.ok(results)

    async def _list_prs(self, repo: str, states: tuple[str, ...], limit: int) -> list[PullRequest]:
        page_size = min(self._config.matcher.scan_page_size, limit)
        prs: dict[int, PullRequest] = {}
        for state in states:
            page_number = 1
            while len(prs) < limit:
                page = await self._call(
                    self._code_host.fetch_pull_requests(
                        repo, state=state, page=page_number, page_size=page_size
                    )
                )
                for pr in page.pull_requests:
                    prs.setdefault(pr.id, pr)
                if not page.has_next:
                    break
                page_number += 1
        return list(prs.values())[:limit]

    # -- cache -------------------------------------------------------------

    def clear_cache(self) -> None:
        self._cache.invalidate()

    def cache_stats(self) -> CacheStats:
        return self._cache.describe()

    # -- collaborator calls ------------------------------------------------

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, self._config.request_timeout_seconds)

    async def _soft(self, awaitable: Awaitable[T], source: str, ref: Any, log: Any) -> T | None:
        try:
            return await self._call(awaitable)
        except (ContextEngineError, TimeoutError) as exc:
            log.warning("pr_source_failed", source=source, ref=ref, error=str(exc))
            return None

    async def _attempt(
        self, tally: _SourceTally, awaitable: Awaitable[T], source: str, ref: Any, log: Any
    ) -> T | None:
        tally.attempted += 1
        try:
            return await self._call(awaitable)
        except (ContextEngineError, TimeoutError) as exc:
            tally.failed += 1
            log.warning("pr_source_failed", source=source, ref=ref, error=str(exc))
            return None

    async def _commits(
        self, repo: str, pr_id: int, semaphore: asyncio.Semaphore, log: Any
    ) -> list[CommitInfo] | None:
        async with semaphore:
            return await self._soft(
                self._code_host.fetch_pr_commits(repo, pr_id), "commits", pr_id, log
            )
