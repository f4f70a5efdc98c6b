"""Context aggregator.

Orchestrates the resolver and matcher into one relevance-ranked context
bundle for a root ticket:

1. Resolve the relationship graph (tracker-only fallback when it fails)
2. Look up pull requests for every related ticket concurrently
3. Deduplicate tickets reached through several relationships
4. Drop stale non-essential tickets
5. Score, size-limit and summarize what is left

Results are cached with a TTL that depends on whether any related work is
still active: active contexts go stale quickly, settled ones do not.
"""

from __future__ import annotations

import asyncio
import calendar
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from ticket_context.cache import CacheStats, TTLCache
from ticket_context.config import EngineConfig
from ticket_context.errors import ResolutionError, as_failure
from ticket_context.logging_config import LoggerProtocol, bind_ticket_context, get_logger
from ticket_context.matcher import PRTicketMatcher
from ticket_context.resolver import RelationshipResolver, normalize_kinds
from ticket_context.schemas import (
    AggregatedContext,
    ContextInsights,
    ContextMetadata,
    ContextSummary,
    EnrichedTicket,
    IssueNode,
    PRMatch,
    PRState,
    RelationshipGraph,
    RelationshipKind,
    Result,
)

logger = get_logger(__name__)
_default_logger = logger

# ---------------------------------------------------------------------------
# Scoring tables
# ---------------------------------------------------------------------------

# Which relationship survives when a ticket is reached more than once
KIND_PRIORITY: dict[RelationshipKind, int] = {
    RelationshipKind.PARENT: 100,
    RelationshipKind.CHILD: 90,
    RelationshipKind.EPIC: 80,
    RelationshipKind.STORY: 75,
    RelationshipKind.DEPENDENCY: 70,
    RelationshipKind.BLOCKS: 65,
    RelationshipKind.RELATES: 60,
}

KIND_BASE_SCORE: dict[RelationshipKind, int] = {
    RelationshipKind.PARENT: 100,
    RelationshipKind.CHILD: 90,
    RelationshipKind.EPIC: 80,
    RelationshipKind.STORY: 75,
    RelationshipKind.DEPENDENCY: 75,
    RelationshipKind.BLOCKS: 70,
    RelationshipKind.RELATES: 60,
}

ESSENTIAL_KINDS = frozenset(
    {RelationshipKind.PARENT, RelationshipKind.CHILD, RelationshipKind.EPIC}
)

STATUS_SCORES: dict[str, int] = {
    "in progress": 100,
    "review": 90,
    "testing": 90,
    "done": 80,
    "to do": 70,
}
DEFAULT_STATUS_SCORE = 50
ACTIVE_STATUSES = frozenset({"in progress", "review", "testing"})

PR_STATE_POINTS: dict[PRState, int] = {
    PRState.MERGED: 30,
    PRState.OPEN: 20,
    PRState.DECLINED: 5,
}

TECHNOLOGIES: dict[str, str] = {
    "js": "JavaScript",
    "ts": "TypeScript",
    "jsx": "React",
    "tsx": "React/TypeScript",
    "vue": "Vue.js",
    "py": "Python",
    "java": "Java",
    "cs": "C#",
    "go": "Go",
    "rs": "Rust",
    "php": "PHP",
    "rb": "Ruby",
    "css": "CSS",
    "scss": "SCSS",
    "less": "LESS",
    "sql": "SQL",
    "json": "JSON",
    "yml": "YAML",
    "yaml": "YAML",
    "md": "Markdown",
}


# ---------------------------------------------------------------------------
# Pipeline steps
# ---------------------------------------------------------------------------


def _aware(moment: datetime | None) -> datetime | None:
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=timezone.utc)


def subtract_months(moment: datetime, months: int) -> datetime:
    """Calendar-month subtraction; the day is clamped to the target month's length."""
    index = moment.year * 12 + moment.month - 1 - months
    year, month0 = divmod(index, 12)
    day = min(moment.day, calendar.monthrange(year, month0 + 1)[1])
    return moment.replace(year=year, month=month0 + 1, day=day)


def is_active(ticket: IssueNode) -> bool:
    return ticket.status.strip().lower() in ACTIVE_STATUSES


def _richness(pr: PRMatch) -> tuple[bool, bool, bool]:
    return (bool(pr.diff_stat), bool(pr.commits), pr.has_detail)


def merge_pull_requests(*lists: Iterable[PRMatch]) -> list[PRMatch]:
    """Union PR lists by id.

    When the same PR appears twice, the copy carrying more detail (diff
    stat, commits, file counts) is kept and the other only fills gaps.
    """
    merged: dict[int, PRMatch] = {}
    for prs in lists:
        for pr in prs:
            current = merged.get(pr.id)
            if current is None:
                merged[pr.id] = pr
                continue
            rich, poor = (pr, current) if _richness(pr) > _richness(current) else (current, pr)
            update: dict[str, Any] = {
                "confidence_score": max(rich.confidence_score, poor.confidence_score),
                "match_sources": list(dict.fromkeys(rich.match_sources + poor.match_sources)),
            }
            for name in ("diff_stat", "commits", "created", "updated", "merged", "author", "branch"):
                if getattr(rich, name) is None and getattr(poor, name) is not None:
                    update[name] = getattr(poor, name)
            if rich.state is PRState.UNKNOWN:
                update["state"] = poor.state
            merged[pr.id] = rich.model_copy(update=update)
    return list(merged.values())


def deduplicate_tickets(tickets: Sequence[EnrichedTicket]) -> list[EnrichedTicket]:
    """Collapse tickets reached through several relationships.

    The highest-priority relationship (parent > child > epic > story >
    dependency > blocks > relates) is kept; PR lists are unioned.
    """
    by_key: dict[str, EnrichedTicket] = {}
    for item in tickets:
        key = item.ticket.key
        current = by_key.get(key)
        if current is None:
            by_key[key] = item
            continue
        keep = item if KIND_PRIORITY[item.relationship_kind] > KIND_PRIORITY[current.relationship_kind] else current
        by_key[key] = keep.model_copy(
            update={"pull_requests": merge_pull_requests(current.pull_requests, item.pull_requests)}
        )
    return list(by_key.values())


def filter_by_recency(
    tickets: Sequence[EnrichedTicket],
    max_age_months: int,
    now: datetime | None = None,
) -> list[EnrichedTicket]:
    """Keep essential tickets plus anything touched within ``max_age_months``.

    A non-essential ticket survives if it was updated (or, lacking that,
    created) after the cutoff, or if any of its PRs saw activity after it.
    """
    cutoff = subtract_months(now or datetime.now(timezone.utc), max_age_months)
    kept: list[EnrichedTicket] = []
    for item in tickets:
        if item.relationship_kind in ESSENTIAL_KINDS:
            kept.append(item)
            continue
        ticket_date = _aware(item.ticket.updated or item.ticket.created)
        if ticket_date is not None and ticket_date > cutoff:
            kept.append(item)
            continue
        if any(
            (date := _aware(pr.activity_date)) is not None and date > cutoff
            for pr in item.pull_requests
        ):
            kept.append(item)
    return kept


def status_score(status: str | None) -> int:
    return STATUS_SCORES.get((status or "").strip().lower(), DEFAULT_STATUS_SCORE)


def pr_points(pr: PRMatch, now: datetime | None = None) -> int:
    """Points a single PR contributes: state, files touched and recency."""
    points = PR_STATE_POINTS.get(pr.state, 0)
    points += min(2 * pr.files_changed_count, 20)
    activity = _aware(pr.activity_date)
    if activity is not None:
        age_days = ((now or datetime.now(timezone.utc)) - activity).days
        if age_days < 30:
            points += 15
        elif age_days < 90:
            points += 10
        elif age_days < 180:
            points += 5
    return points


def calculate_relevance_score(
    ticket: IssueNode,
    pull_requests: Sequence[PRMatch],
    kind: RelationshipKind,
    now: datetime | None = None,
) -> int:
    """Relevance of a related ticket on a 0-100 scale.

    Kind base score, plus 30% of the status score, plus 40% of the PR
    points capped at 40; rounded and clamped.
    """
    score = KIND_BASE_SCORE.get(kind, KIND_BASE_SCORE[RelationshipKind.RELATES])
    score += 0.3 * status_score(ticket.status)
    score += min(0.4 * sum(pr_points(pr, now) for pr in pull_requests), 40)
    return max(0, min(100, round(score)))


def limit_context_size(tickets: Sequence[EnrichedTicket], max_related: int) -> list[EnrichedTicket]:
    """Keep every essential ticket plus the best-scoring others, sorted by score."""
    essentials = [t for t in tickets if t.relationship_kind in ESSENTIAL_KINDS]
    others = sorted(
        (t for t in tickets if t.relationship_kind not in ESSENTIAL_KINDS),
        key=lambda t: t.relevance_score,
        reverse=True,
    )
    slots = max(0, max_related - len(essentials))
    return sorted(essentials + others[:slots], key=lambda t: t.relevance_score, reverse=True)


def extract_technology_patterns(tickets: Sequence[EnrichedTicket]) -> list[str]:
    """Technologies touched by the tickets' PRs, most frequent first."""
    extensions: Counter[str] = Counter()
    for item in tickets:
        for pr in item.pull_requests:
            for stat in pr.diff_stat or []:
                name = stat.path.rsplit("/", 1)[-1]
                if "." in name:
                    extensions[name.rsplit(".", 1)[-1].lower()] += 1
    technologies: dict[str, None] = {}
    for ext, _ in extensions.most_common():
        if ext in TECHNOLOGIES:
            technologies[TECHNOLOGIES[ext]] = None
    return list(technologies)[:5]


def generate_summary(tickets: Sequence[EnrichedTicket], unique_before: int) -> ContextSummary:
    statuses = Counter(t.ticket.status or "Unknown" for t in tickets)
    prs = [pr for t in tickets for pr in t.pull_requests]
    return ContextSummary(
        total_related=len(tickets),
        filtered_out=max(0, unique_before - len({t.ticket.key for t in tickets})),
        completed_work=sum(n for s, n in statuses.items() if s.lower() == "done"),
        active_work=sum(1 for t in tickets if is_active(t.ticket)),
        total_prs=len(prs),
        merged_prs=sum(1 for pr in prs if pr.state is PRState.MERGED),
        average_relevance=round(sum(t.relevance_score for t in tickets) / len(tickets)) if tickets else 0,
        status_breakdown=dict(statuses),
    )


def generate_insights(tickets: Sequence[EnrichedTicket], summary: ContextSummary) -> ContextInsights:
    if not tickets:
        return ContextInsights()

    insights: list[str] = []
    if summary.active_work:
        insights.append(f"{summary.active_work} related tickets currently in active development")
    if summary.completed_work and summary.merged_prs:
        insights.append(
            f"{summary.completed_work} completed tickets with {summary.merged_prs} "
            "merged PRs provide implementation context"
        )
    technologies = extract_technology_patterns(tickets)
    if technologies:
        insights.append(f"Common technologies used: {', '.join(technologies[:3])}")
    dependencies = sum(1 for t in tickets if t.relationship_kind is RelationshipKind.DEPENDENCY)
    if dependencies:
        insights.append(f"{dependencies} dependency relationships require coordination")

    defaults = ContextInsights()
    return ContextInsights(
        overview=f"Found {summary.total_related} related tickets with {summary.total_prs} associated PRs",
        recent_activity=(
            f"{summary.active_work} tickets currently in progress"
            if summary.active_work
            else defaults.recent_activity
        ),
        completed_work=(
            f"{summary.completed_work} tickets completed with implementation details"
            if summary.completed_work
            else defaults.completed_work
        ),
        implementation_insights=insights,
    )


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class ContextAggregator:
    """Builds relevance-ranked context bundles around a root ticket.

    Usage:
        aggregator = ContextAggregator(resolver, matcher)
        result = await aggregator.aggregate("JAR-100", repo_hint="backend-api")
        for item in result.data.tickets: ...
    """

    def __init__(
        self,
        resolver: RelationshipResolver,
        matcher: PRTicketMatcher,
        config: EngineConfig | None = None,
        cache: TTLCache[AggregatedContext] | None = None,
    ) -> None:
        self._resolver = resolver
        self._matcher = matcher
        self._config = config or EngineConfig()
        ac = self._config.aggregator
        self._cache: TTLCache[AggregatedContext] = cache or TTLCache(
            ttl_seconds=ac.cache_ttl_seconds * ac.stable_ttl_multiplier,
            max_entries=ac.cache_max_entries,
            label="aggregated_context",
        )

    async def aggregate(
        self,
        root_key: str,
        depth: int | None = None,
        include_kinds: Iterable[RelationshipKind | str] | None = None,
        repo_hint: str | None = None,
        detected_repos: Iterable[str] | None = None,
        max_age_months: int | None = None,
        max_related: int | None = None,
        logger: LoggerProtocol | None = None,
        timeout: float | None = None,
    ) -> Result[AggregatedContext]:
        """Aggregate the related-work context of ``root_key``.

        Args:
            root_key: Tracker key to build context for
            depth: Relationship depth. Defaults to the resolver default.
            include_kinds: Relationship kinds to follow. Defaults to all.
            repo_hint: Repository to scan when none of ``detected_repos`` has PRs
            detected_repos: Repositories to search first, in order
            max_age_months: Staleness cutoff for non-essential tickets
            max_related: Size limit for non-essential tickets
            logger: Logger overriding the module logger
            timeout: Overall deadline; exceeding it yields an empty context

        Returns:
            Result wrapping the context. Fails only when the graph cannot be
            resolved and the tracker-only fallback is disabled.
        """
        log = logger or _default_logger
        ac = self._config.aggregator
        depth = self._config.resolver.default_depth if depth is None else depth
        kinds = normalize_kinds(include_kinds)
        repos = list(dict.fromkeys(detected_repos or []))
        max_age = ac.max_age_months if max_age_months is None else max_age_months
        limit = ac.max_related if max_related is None else max_related

        cache_key = "|".join(
            [
                root_key,
                repo_hint or "",
                str(depth),
                ",".join(k.value for k in kinds),
                ",".join(repos),
                str(max_age),
                str(limit),
            ]
        )
        cached = self._cache.get(cache_key)
        if cached is not None:
            log.debug("context_cache_hit", root_key=root_key)
            return Result.ok(cached, from_cache=True)

        log.info("context_aggregation_started", root_key=root_key, repo_hint=repo_hint)
        build = self._build(root_key, depth, kinds, repo_hint, repos, max_age, limit, log)
        try:
            with bind_ticket_context(root_key, repo_hint=repo_hint):
                result = await (asyncio.wait_for(build, timeout) if timeout else build)
        except TimeoutError:
            log.warning("context_timed_out", root_key=root_key, timeout=timeout)
            return Result.ok(self._empty_context(IssueNode(key=root_key), repo_hint, timed_out=True))
        except Exception as exc:
            log.error("context_aggregation_failed", root_key=root_key, error=str(exc), exc_info=True)
            return as_failure(
                ResolutionError(f"Failed to aggregate context for {root_key}: {exc}", {"root_key": root_key})
            )

        if result.success and not result.data.metadata.fallback_mode:
            self._cache.set(cache_key, result.data, ttl_seconds=result.data.metadata.cache_ttl_seconds)
            log.info(
                "context_aggregation_complete",
                root_key=root_key,
                tickets=len(result.data.tickets),
                ttl_seconds=result.data.metadata.cache_ttl_seconds,
            )
        return result

    def clear_cache(self) -> None:
        self._cache.invalidate()

    def cache_stats(self) -> CacheStats:
        return self._cache.describe()

    # -- internals ---------------------------------------------------------

    async def _build(
        self,
        root_key: str,
        depth: int,
        kinds: tuple[RelationshipKind, ...],
        repo_hint: str | None,
        repos: list[str],
        max_age: int,
        limit: int,
        log: Any,
    ) -> Result[AggregatedContext]:
        graph_result = await self._resolver.resolve(root_key, depth=depth, include_kinds=kinds, logger=log)
        if not graph_result.success:
            if not self._config.aggregator.enable_fallback:
                return Result(success=False, error=graph_result.error)
            log.warning("context_fallback", root_key=root_key, error=graph_result.error.message)
            return Result.ok(
                await self._tracker_only(root_key, depth, kinds, repo_hint, max_age, limit, log)
            )

        graph = graph_result.data
        keys = list(dict.fromkeys(edge.target_key for edge in graph.edges))
        outcomes = await asyncio.gather(
            *(self._lookup_prs(key, repo_hint, repos, log) for key in keys),
            return_exceptions=True,
        )
        prs_by_key: dict[str, list[PRMatch]] = {}
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, BaseException):
                log.warning("pr_lookup_failed", ticket_key=key, error=str(outcome))
                prs_by_key[key] = []
            else:
                prs_by_key[key] = outcome
        return Result.ok(self._assemble(graph, prs_by_key, repo_hint, max_age, limit, fallback_mode=False))

    async def _lookup_prs(
        self, key: str, repo_hint: str | None, repos: list[str], log: Any
    ) -> list[PRMatch]:
        found: list[PRMatch] = []
        for repo in repos:
            result = await self._matcher.find_prs_for_ticket(key, repo=repo, logger=log)
            if result.success:
                found.extend(result.data.pull_requests)
        if found:
            # Repository-independent evidence repeats the same PRs per repo
            return merge_pull_requests(found)
        result = await self._matcher.find_prs_for_ticket(key, repo=repo_hint, logger=log)
        return result.data.pull_requests if result.success else []

    async def _tracker_only(
        self,
        root_key: str,
        depth: int,
        kinds: tuple[RelationshipKind, ...],
        repo_hint: str | None,
        max_age: int,
        limit: int,
        log: Any,
    ) -> AggregatedContext:
        graph_result = await self._resolver.resolve(root_key, depth=depth, include_kinds=kinds, logger=log)
        if not graph_result.success:
            return self._empty_context(IssueNode(key=root_key), repo_hint, fallback_mode=True)

        graph = graph_result.data
        keys = list(dict.fromkeys(edge.target_key for edge in graph.edges))
        outcomes = await asyncio.gather(
            *(self._matcher.find_dev_status_prs(key, logger=log) for key in keys),
            return_exceptions=True,
        )
        prs_by_key = {
            key: outcome.data.pull_requests
            if isinstance(outcome, Result) and outcome.success
            else []
            for key, outcome in zip(keys, outcomes)
        }
        return self._assemble(graph, prs_by_key, repo_hint, max_age, limit, fallback_mode=True)

    def _assemble(
        self,
        graph: RelationshipGraph,
        prs_by_key: dict[str, list[PRMatch]],
        repo_hint: str | None,
        max_age: int,
        limit: int,
        fallback_mode: bool,
    ) -> AggregatedContext:
        now = datetime.now(timezone.utc)
        enriched = [
            EnrichedTicket(
                ticket=edge.target,
                relationship_kind=edge.kind,
                direction=edge.direction,
                depth=edge.depth,
                pull_requests=prs_by_key.get(edge.target_key, []),
            )
            for edge in graph.edges
        ]
        unique = deduplicate_tickets(enriched)
        recent = filter_by_recency(unique, max_age, now)
        scored = [
            t.model_copy(
                update={
                    "relevance_score": calculate_relevance_score(
                        t.ticket, t.pull_requests, t.relationship_kind, now
                    )
                }
            )
            for t in recent
        ]
        final = limit_context_size(scored, limit)
        summary = generate_summary(final, len(unique))
        ttl = self._ttl_for(final)

        return AggregatedContext(
            source_ticket=graph.root,
            tickets=final,
            summary=summary,
            insights=generate_insights(final, summary),
            metadata=ContextMetadata(
                total_related=graph.metadata.total_related,
                max_depth_reached=graph.metadata.max_depth_reached,
                kinds_present=graph.metadata.kinds_present,
                circular_suppressed=graph.metadata.circular_suppressed,
                generated_at=now,
                repo_hint=repo_hint,
                filtering_applied=len(enriched) > len(final),
                fallback_mode=fallback_mode,
                cache_ttl_seconds=ttl,
                cached_until=now + timedelta(seconds=ttl),
            ),
        )

    def _ttl_for(self, tickets: Sequence[EnrichedTicket]) -> int:
        ac = self._config.aggregator
        if any(is_active(t.ticket) for t in tickets):
            return ac.cache_ttl_seconds
        return ac.cache_ttl_seconds * ac.stable_ttl_multiplier

    def _empty_context(
        self,
        source: IssueNode,
        repo_hint: str | None,
        *,
        fallback_mode: bool = False,
        timed_out: bool = False,
    ) -> AggregatedContext:
        return AggregatedContext(
            source_ticket=source,
            metadata=ContextMetadata(
                generated_at=datetime.now(timezone.utc),
                repo_hint=repo_hint,
                fallback_mode=fallback_mode,
                timed_out=timed_out,
            ),
        )
