"""Relationship graph resolver.

Walks the issue tracker's relationships outward from a root ticket and
returns a bounded ``RelationshipGraph``:

- Issue links (dependency, blocks, relates) via the raw ``issuelinks`` field
- Parent (upward) and children (downward)
- Epic (upward) and, for epics, their stories (downward)

Traversal is depth-first and strictly sequential within a node (links,
parent, children, epic/story) because each branch reads the visited-set and
edge list the previous branch mutated. A single ``_Traversal`` object owns
that state for the duration of one ``resolve`` call.

A candidate that is already in the visited-set is skipped regardless of the
kind it is being discovered under, so a node reached first as a parent is
not recorded again as an epic once it has been traversed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ticket_context.cache import CacheStats, TTLCache
from ticket_context.config import EngineConfig
from ticket_context.context.tracker import IssueTrackerProtocol
from ticket_context.errors import (
    ContextEngineError,
    DeadlineExceededError,
    ErrorCode,
    NotFoundError,
    ResolutionError,
    as_failure,
)
from ticket_context.logging_config import LoggerProtocol, get_logger
from ticket_context.schemas import (
    ALL_KINDS,
    Direction,
    GraphMetadata,
    IssueNode,
    RelationshipEdge,
    RelationshipGraph,
    RelationshipKind,
    Result,
)

logger = get_logger(__name__)
_default_logger = logger

T = TypeVar("T")

# Case-insensitive raw link label -> canonical kind. Unknown labels map to RELATES.
LINK_LABEL_KINDS: dict[str, RelationshipKind] = {
    "blocks": RelationshipKind.BLOCKS,
    "is blocked by": RelationshipKind.BLOCKS,
    "depends on": RelationshipKind.DEPENDENCY,
    "is depended on by": RelationshipKind.DEPENDENCY,
    "relates to": RelationshipKind.RELATES,
    "duplicates": RelationshipKind.RELATES,
    "is duplicated by": RelationshipKind.RELATES,
    "clones": RelationshipKind.RELATES,
    "is cloned by": RelationshipKind.RELATES,
}

LINK_KINDS = frozenset(
    {RelationshipKind.DEPENDENCY, RelationshipKind.BLOCKS, RelationshipKind.RELATES}
)


def map_link_label(label: str | None) -> RelationshipKind:
    """Map a raw tracker link label onto a canonical relationship kind."""
    if not label:
        return RelationshipKind.RELATES
    return LINK_LABEL_KINDS.get(label.strip().lower(), RelationshipKind.RELATES)


def normalize_kinds(
    include_kinds: Iterable[RelationshipKind | str] | None,
) -> tuple[RelationshipKind, ...]:
    """Return the requested kinds as enum members in canonical order.

    Raises:
        ValueError: If a kind name is not recognized
    """
    if include_kinds is None:
        return ALL_KINDS
    requested = {RelationshipKind(k) for k in include_kinds}
    return tuple(k for k in ALL_KINDS if k in requested)


def children_query(key: str) -> str:
    return f'parent = "{key}"'


def story_queries(epic_key: str) -> list[str]:
    """Queries for an epic's stories, most specific first.

    Which one works depends on how the tracker links stories to epics
    (classic "Epic Link" field vs. team-managed parent), so they are tried
    in order until one returns something.
    """
    project = epic_key.rsplit("-", 1)[0]
    return [
        f'project = "{project}" AND "Epic Link" = "{epic_key}"',
        f'project = "{project}" AND parent = "{epic_key}"',
        f'"Epic Link" = "{epic_key}"',
    ]


@dataclass
class _Traversal:
    """Mutable state of one resolve call: visited-set, edges and counters."""

    root_key: str
    max_depth: int
    kinds: frozenset[RelationshipKind]
    cap: int
    log: Any
    visited: set[str] = field(default_factory=set)
    edges: list[RelationshipEdge] = field(default_factory=list)
    issues: dict[str, IssueNode] = field(default_factory=dict)
    suppressed: int = 0
    tripped: bool = False
    _edge_keys: set[tuple[str, RelationshipKind]] = field(default_factory=set)

    @property
    def full(self) -> bool:
        return len(self.edges) >= self.cap

    def has_edge(self, key: str, kind: RelationshipKind) -> bool:
        return (key, kind) in self._edge_keys

    def is_visited(self, key: str) -> bool:
        if key in self.visited:
            self.suppressed += 1
            self.log.debug("candidate_already_visited", key=key)
            return True
        return False

    def exhausted(self) -> bool:
        """Whether a pending candidate must be dropped because the cap is reached."""
        if not self.full:
            return False
        if not self.tripped:
            self.tripped = True
            self.log.warning(
                "circuit_breaker_tripped", root_key=self.root_key, max_edges=self.cap
            )
        return True

    def record(self, edge: RelationshipEdge) -> bool:
        """Append an edge unless the cap is reached. Returns whether it was added."""
        if self.exhausted():
            return False
        if edge.target_key == self.root_key or self.has_edge(edge.target_key, edge.kind):
            return False
        self.edges.append(edge)
        self._edge_keys.add((edge.target_key, edge.kind))
        self.issues[edge.target_key] = edge.target
        return True


class RelationshipResolver:
    """Resolves the bounded relationship graph around a root ticket.

    Usage:
        resolver = RelationshipResolver(tracker)
        result = await resolver.resolve("JAR-100", depth=2)
        if result.success:
            for edge in result.data.edges: ...
    """

    def __init__(
        self,
        tracker: IssueTrackerProtocol,
        config: EngineConfig | None = None,
        cache: TTLCache[RelationshipGraph] | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            tracker: Issue tracker collaborator
            config: Engine configuration. Uses defaults if None.
            cache: Graph cache. Defaults to a 5-minute, 100-entry cache.
        """
        self._tracker = tracker
        self._config = config or EngineConfig()
        rc = self._config.resolver
        self._cache: TTLCache[RelationshipGraph] = cache or TTLCache(
            ttl_seconds=rc.cache_ttl_seconds,
            max_entries=rc.cache_max_entries,
            label="relationship_graph",
        )

    async def resolve(
        self,
        root_key: str,
        depth: int | None = None,
        include_kinds: Iterable[RelationshipKind | str] | None = None,
        logger: LoggerProtocol | None = None,
        timeout: float | None = None,
    ) -> Result[RelationshipGraph]:
        """Resolve all relationships of ``root_key`` up to ``depth`` hops.

        Args:
            root_key: Tracker key to start from
            depth: Maximum traversal depth (>= 1). Defaults to the configured depth.
            include_kinds: Relationship kinds to follow. Defaults to all.
            logger: Logger overriding the module logger
            timeout: Overall deadline in seconds

        Returns:
            A Result wrapping the graph; ``from_cache`` is set on cache hits.
            Fails with NOT_FOUND if the root cannot be fetched, TIMEOUT if the
            deadline elapses and RESOLUTION_ERROR for anything unexpected.

        Raises:
            ValueError: If depth < 1 or an unknown kind is requested
        """
        log = logger or _default_logger
        max_depth = self._config.resolver.default_depth if depth is None else depth
        if max_depth < 1:
            raise ValueError(f"depth must be >= 1, got {max_depth}")
        kinds = normalize_kinds(include_kinds)

        cache_key = f"{root_key}:{max_depth}:{','.join(k.value for k in kinds)}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            log.debug("relationship_cache_hit", root_key=root_key)
            return Result.ok(cached, from_cache=True)

        log.info("resolution_started", root_key=root_key, depth=max_depth)
        try:
            build = self._build(root_key, max_depth, frozenset(kinds), log)
            graph = await (asyncio.wait_for(build, timeout) if timeout else build)
        except NotFoundError as exc:
            log.warning("root_fetch_failed", root_key=root_key, error=exc.message)
            return as_failure(exc)
        except TimeoutError:
            log.warning("resolution_timed_out", root_key=root_key, timeout=timeout)
            return as_failure(DeadlineExceededError(f"Resolving {root_key}", timeout))
        except Exception as exc:
            log.error("resolution_failed", root_key=root_key, error=str(exc), exc_info=True)
            return as_failure(
                ResolutionError(f"Failed to resolve relationships: {exc}", {"root_key": root_key})
            )

        self._cache.set(cache_key, graph)
        log.info(
            "resolution_complete",
            root_key=root_key,
            total_related=graph.metadata.total_related,
            circuit_breaker_tripped=graph.metadata.circuit_breaker_tripped,
        )
        return Result.ok(graph)

    def clear_cache(self) -> None:
        self._cache.invalidate()

    def cache_stats(self) -> CacheStats:
        return self._cache.describe()

    # -- traversal ---------------------------------------------------------

    async def _build(
        self,
        root_key: str,
        max_depth: int,
        kinds: frozenset[RelationshipKind],
        log: Any,
    ) -> RelationshipGraph:
        try:
            root = await self._call(self._tracker.fetch_issue(root_key))
        except (ContextEngineError, TimeoutError) as exc:
            cause = exc.code.value if isinstance(exc, ContextEngineError) else ErrorCode.TIMEOUT.value
            raise NotFoundError(
                f"Root issue {root_key} could not be fetched: {exc}",
                {"key": root_key, "cause": cause},
            ) from exc

        state = _Traversal(
            root_key=root.key,
            max_depth=max_depth,
            kinds=kinds,
            cap=self._config.resolver.max_related_issues,
            log=log,
        )
        await self._traverse(state, root, 1)

        edges = state.edges
        return RelationshipGraph(
            root_key=root.key,
            root=root,
            edges=edges,
            metadata=GraphMetadata(
                total_related=len(edges),
                max_depth_reached=max((e.depth for e in edges), default=0),
                kinds_present=list(dict.fromkeys(e.kind for e in edges)),
                circular_suppressed=state.suppressed,
                circuit_breaker_tripped=state.tripped,
            ),
        )

    async def _traverse(self, state: _Traversal, issue: IssueNode, depth: int) -> None:
        if depth > state.max_depth:
            return
        if state.full:
            return
        state.visited.add(issue.key)

        if state.kinds & LINK_KINDS:
            await self._traverse_links(state, issue, depth)
        if RelationshipKind.PARENT in state.kinds or RelationshipKind.CHILD in state.kinds:
            await self._traverse_parent_child(state, issue, depth)
        if RelationshipKind.EPIC in state.kinds or RelationshipKind.STORY in state.kinds:
            await self._traverse_epic_story(state, issue, depth)

    async def _discover(
        self,
        state: _Traversal,
        source: IssueNode,
        target: IssueNode,
        kind: RelationshipKind,
        direction: Direction,
        depth: int,
        raw_link_label: str | None = None,
    ) -> None:
        if state.has_edge(target.key, kind):
            return
        edge = RelationshipEdge(
            source_key=source.key,
            target_key=target.key,
            kind=kind,
            direction=direction,
            depth=depth,
            raw_link_label=raw_link_label,
            target=target,
        )
        if not state.record(edge):
            return
        if depth < state.max_depth:
            await self._traverse(state, target, depth + 1)

    async def _traverse_links(self, state: _Traversal, issue: IssueNode, depth: int) -> None:
        links_field = self._config.tracker_fields.issue_links_field
        raw = await self._soft(
            state, self._tracker.get_raw_fields(issue.key, [links_field]), "issue_links", issue.key
        )
        for link in (raw or {}).get(links_field) or []:
            if state.exhausted():
                return
            link_type = link.get("type") or {}
            if link.get("outwardIssue"):
                target_key = link["outwardIssue"].get("key")
                label = link_type.get("outward") or "relates to"
                direction = Direction.OUTWARD
            elif link.get("inwardIssue"):
                target_key = link["inwardIssue"].get("key")
                label = link_type.get("inward") or "relates to"
                direction = Direction.INWARD
            else:
                continue

            kind = map_link_label(label)
            if not target_key or kind not in state.kinds:
                continue
            if state.is_visited(target_key) or state.has_edge(target_key, kind):
                continue
            related = await self._fetch(state, target_key)
            if related is not None:
                await self._discover(state, issue, related, kind, direction, depth, label)

    async def _traverse_parent_child(
        self, state: _Traversal, issue: IssueNode, depth: int
    ) -> None:
        parent_key = issue.parent_key
        if RelationshipKind.PARENT in state.kinds and parent_key:
            if not state.is_visited(parent_key) and not state.has_edge(
                parent_key, RelationshipKind.PARENT
            ):
                parent = await self._fetch(state, parent_key)
                if parent is not None:
                    await self._discover(
                        state, issue, parent, RelationshipKind.PARENT, Direction.UPWARD, depth
                    )

        if RelationshipKind.CHILD in state.kinds and not state.full:
            children = await self._soft(
                state,
                self._tracker.search_issues(
                    children_query(issue.key),
                    max_results=self._config.resolver.children_page_size,
                ),
                "children",
                issue.key,
            )
            for child in children or []:
                if state.exhausted():
                    return
                if state.is_visited(child.key):
                    continue
                await self._discover(
                    state, issue, child, RelationshipKind.CHILD, Direction.DOWNWARD, depth
                )

    async def _traverse_epic_story(
        self, state: _Traversal, issue: IssueNode, depth: int
    ) -> None:
        if RelationshipKind.STORY in state.kinds and issue.is_epic:
            for query in story_queries(issue.key):
                if state.full:
                    return
                stories = await self._soft(
                    state,
                    self._tracker.search_issues(
                        query, max_results=self._config.resolver.children_page_size
                    ),
                    "stories",
                    issue.key,
                )
                if not stories:
                    continue
                for story in stories:
                    if state.exhausted():
                        return
                    if state.is_visited(story.key):
                        continue
                    await self._discover(
                        state, issue, story, RelationshipKind.STORY, Direction.DOWNWARD, depth
                    )
                break

        if RelationshipKind.EPIC not in state.kinds or state.full:
            return

        # An Epic-typed parent wins; the epic-link field is only a fallback
        if issue.parent_key:
            parent = await self._fetch(state, issue.parent_key)
            if parent is not None and parent.is_epic:
                if not state.is_visited(parent.key):
                    await self._discover(
                        state, issue, parent, RelationshipKind.EPIC, Direction.UPWARD, depth
                    )
                return

        epic_field = self._config.tracker_fields.epic_link_field
        raw = await self._soft(
            state, self._tracker.get_raw_fields(issue.key, [epic_field]), "epic_link", issue.key
        )
        value = (raw or {}).get(epic_field)
        epic_key = value.get("key") if isinstance(value, dict) else value
        if not epic_key or epic_key == issue.key:
            return
        if state.is_visited(epic_key) or state.has_edge(epic_key, RelationshipKind.EPIC):
            return
        epic = await self._fetch(state, epic_key)
        if epic is not None:
            await self._discover(
                state, issue, epic, RelationshipKind.EPIC, Direction.UPWARD, depth
            )

    # -- collaborator calls ------------------------------------------------

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, self._config.request_timeout_seconds)

    async def _fetch(self, state: _Traversal, key: str) -> IssueNode | None:
        if key in state.issues:
            return state.issues[key]
        issue = await self._soft(state, self._tracker.fetch_issue(key), "issue", key)
        if issue is not None:
            state.issues[key] = issue
        return issue

    async def _soft(
        self, state: _Traversal, awaitable: Awaitable[T], what: str, key: str
    ) -> T | None:
        """Await a neighbor-level call; failures are logged and read as empty."""
        try:
            return await self._call(awaitable)
        except (ContextEngineError, TimeoutError) as exc:
            state.log.warning("neighbor_fetch_failed", what=what, key=key, error=str(exc))
            return None
