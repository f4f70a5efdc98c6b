"""Pydantic models defining the data contract of the ticket context engine.

These schemas are the single source of truth for what flows between the
collaborator adapters (issue tracker, code host), the three core components
(resolver, matcher, aggregator) and their callers.

Key design decisions:
- Enums constrain relationship kinds, directions and PR states to a closed set
- Scores are validated to stay within [0, 100]
- Every core entry point returns a ``Result`` envelope instead of raising
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RelationshipKind(str, Enum):
    """Canonical relationship between a related ticket and the ticket that led to it.

    Raw tracker link labels ("is blocked by", "clones", ...) are mapped onto
    this closed set; anything unrecognized becomes RELATES.
    """

    PARENT = "parent"
    CHILD = "child"
    EPIC = "epic"
    STORY = "story"
    DEPENDENCY = "dependency"
    BLOCKS = "blocks"
    RELATES = "relates"


class Direction(str, Enum):
    """Which way an edge points relative to the node it was discovered from."""

    UPWARD = "upward"
    DOWNWARD = "downward"
    OUTWARD = "outward"
    INWARD = "inward"


class PRState(str, Enum):
    """Pull request lifecycle state as reported by the code host."""

    OPEN = "OPEN"
    MERGED = "MERGED"
    DECLINED = "DECLINED"
    SUPERSEDED = "SUPERSEDED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str | None) -> PRState:
        """Normalize a host-specific state string ("closed", "merged", ...)."""
        if not value:
            return cls.UNKNOWN
        normalized = value.strip().upper()
        if normalized == "CLOSED":
            return cls.DECLINED
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN


ALL_KINDS: tuple[RelationshipKind, ...] = tuple(RelationshipKind)


# ---------------------------------------------------------------------------
# Tracker-side models
# ---------------------------------------------------------------------------


class IssueNode(BaseModel):
    """A single tracker issue as seen by the engine.

    Attributes:
        key: Tracker key (e.g., "JAR-123")
        type: Issue type name (Epic, Story, Task, Subtask, Bug, ...)
        status: Workflow status name (e.g., "In Progress")
        title: Issue summary
        created: Creation timestamp
        updated: Last update timestamp
        parent_key: Key of the parent issue, if any
    """

    key: str = Field(..., min_length=1, description="Tracker issue key")
    type: str = Field("Task", description="Issue type name")
    status: str = Field("", description="Workflow status name")
    title: str = Field("", description="Issue summary")
    created: datetime | None = Field(None, description="Creation timestamp")
    updated: datetime | None = Field(None, description="Last update timestamp")
    parent_key: str | None = Field(None, description="Parent issue key")
    assignee: str | None = Field(None, description="Assignee display name")
    priority: str | None = Field(None, description="Priority name")
    labels: list[str] = Field(default_factory=list, description="Issue labels")

    @property
    def is_epic(self) -> bool:
        return self.type.lower() == "epic"


class RelationshipEdge(BaseModel):
    """One discovered relationship from a node in the graph to a related issue.

    Attributes:
        source_key: Key of the node the edge was discovered from
        target_key: Key of the related issue
        kind: Canonical relationship kind
        direction: Edge direction relative to the source
        depth: Distance from the root (1 for the root's direct neighbors)
        raw_link_label: The tracker's own label for the link, if any
        target: The fetched related issue
    """

    source_key: str
    target_key: str
    kind: RelationshipKind
    direction: Direction
    depth: int = Field(..., ge=1)
    raw_link_label: str | None = None
    target: IssueNode


class GraphMetadata(BaseModel):
    """Summary statistics about a resolved relationship graph."""

    total_related: int = 0
    max_depth_reached: int = 0
    kinds_present: list[RelationshipKind] = Field(default_factory=list)
    circular_suppressed: int = Field(
        0, description="Candidates skipped because they were already visited"
    )
    circuit_breaker_tripped: bool = False


class RelationshipGraph(BaseModel):
    """Bounded relationship graph rooted at a single ticket."""

    root_key: str
    root: IssueNode
    edges: list[RelationshipEdge] = Field(default_factory=list)
    metadata: GraphMetadata = Field(default_factory=GraphMetadata)


# ---------------------------------------------------------------------------
# Code-host-side models
# ---------------------------------------------------------------------------


class FileStat(BaseModel):
    """Diff statistics for one file touched by a pull request."""

    path: str
    status: str = "modified"
    lines_added: int = Field(0, ge=0)
    lines_removed: int = Field(0, ge=0)


class CommitInfo(BaseModel):
    """A commit belonging to a pull request."""

    hash: str = ""
    message: str = ""
    author: str | None = None
    date: datetime | None = None


class PullRequest(BaseModel):
    """A pull request as returned by a code host listing.

    This is the raw material the matcher analyzes; it carries no confidence.
    """

    id: int
    title: str = ""
    description: str = ""
    state: PRState = PRState.UNKNOWN
    url: str = ""
    branch: str = ""
    author: str | None = None
    commit_count: int = 0
    files_changed_count: int = 0
    created: datetime | None = None
    updated: datetime | None = None
    merged: datetime | None = None
    repository: str | None = None


class PullRequestPage(BaseModel):
    """One page of a pull request listing."""

    pull_requests: list[PullRequest] = Field(default_factory=list)
    page: int = 1
    has_next: bool = False


class PRMatch(BaseModel):
    """A pull request matched to a ticket with a confidence score.

    Attributes:
        confidence_score: 0-100 certainty that the PR belongs to the ticket
        match_sources: Which evidence produced the match (dev-status,
            remote-link, branch-name, pr-title, pr-description, commit-message)
        diff_stat: Per-file change statistics, when fetched
        commits: Commit list, when fetched
    """

    id: int
    title: str = ""
    state: PRState = PRState.UNKNOWN
    url: str = ""
    branch: str | None = None
    commit_count: int = 0
    files_changed_count: int = 0
    created: datetime | None = None
    updated: datetime | None = None
    merged: datetime | None = None
    author: str | None = None
    repository: str | None = None
    confidence_score: int = Field(0, ge=0, le=100)
    match_sources: list[str] = Field(default_factory=list)
    diff_stat: list[FileStat] | None = None
    commits: list[CommitInfo] | None = None

    @property
    def has_detail(self) -> bool:
        """Whether the match carries diff or file-count detail."""
        return bool(self.diff_stat) or self.files_changed_count > 0

    @property
    def activity_date(self) -> datetime | None:
        """Most relevant activity date: merged, then updated, then created."""
        return self.merged or self.updated or self.created


class TicketPRMatches(BaseModel):
    """All pull requests matched to one ticket, highest confidence first."""

    ticket_key: str
    pull_requests: list[PRMatch] = Field(default_factory=list)


class TicketReference(BaseModel):
    """A ticket key referenced by a pull request (reverse lookup row)."""

    ticket_key: str
    confidence: int = Field(0, ge=0, le=100)
    sources: list[str] = Field(default_factory=list)


class PRTicketReferences(BaseModel):
    """Tickets referenced by a single pull request."""

    pr_id: int
    repo: str
    tickets: list[TicketReference] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Aggregated context
# ---------------------------------------------------------------------------


class EnrichedTicket(BaseModel):
    """A related ticket with its relationship, pull requests and relevance."""

    ticket: IssueNode
    relationship_kind: RelationshipKind
    direction: Direction
    depth: int = Field(..., ge=1)
    pull_requests: list[PRMatch] = Field(default_factory=list)
    relevance_score: int = Field(0, ge=0, le=100)


class ContextSummary(BaseModel):
    """Counts describing the final ticket list."""

    total_related: int = 0
    filtered_out: int = 0
    completed_work: int = 0
    active_work: int = 0
    total_prs: int = 0
    merged_prs: int = 0
    average_relevance: int = 0
    status_breakdown: dict[str, int] = Field(default_factory=dict)


class ContextInsights(BaseModel):
    """Short narrative strings derived from the summary."""

    overview: str = "No related tickets found"
    recent_activity: str = "No active work found"
    completed_work: str = "No completed work found"
    implementation_insights: list[str] = Field(default_factory=list)


class ContextMetadata(BaseModel):
    """Provenance of an aggregated context."""

    total_related: int = 0
    max_depth_reached: int = 0
    kinds_present: list[RelationshipKind] = Field(default_factory=list)
    circular_suppressed: int = 0
    generated_at: datetime
    repo_hint: str | None = None
    filtering_applied: bool = False
    fallback_mode: bool = False
    timed_out: bool = False
    cache_ttl_seconds: int | None = None
    cached_until: datetime | None = None


class AggregatedContext(BaseModel):
    """The relevance-ranked, size-bounded context bundle for a root ticket."""

    source_ticket: IssueNode
    tickets: list[EnrichedTicket] = Field(default_factory=list)
    summary: ContextSummary = Field(default_factory=ContextSummary)
    insights: ContextInsights = Field(default_factory=ContextInsights)
    metadata: ContextMetadata


# ---------------------------------------------------------------------------
# Result envelope
# ---------------------------------------------------------------------------


class ErrorInfo(BaseModel):
    """Structured error returned to callers: stable code plus message."""

    code: str
    message: str
    details: dict[str, Any] | None = None


class Result(BaseModel, Generic[T]):
    """Uniform return envelope for the engine's entry points.

    Either ``success`` is True and ``data`` is set, or ``success`` is False
    and ``error`` describes what went wrong.
    """

    success: bool
    data: T | None = None
    error: ErrorInfo | None = None
    from_cache: bool = False

    @classmethod
    def ok(cls, data: T, *, from_cache: bool = False) -> Result[T]:
        return cls(success=True, data=data, from_cache=from_cache)

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> Result[T]:
        return cls(
            success=False,
            error=ErrorInfo(code=code, message=message, details=details),
        )
