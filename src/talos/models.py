"""Data models for the talos daemon."""

from dataclasses import dataclass, field
from datetime import datetime

BEAN_STATUSES = ("draft", "todo", "in-progress", "completed", "scrapped")
BEAN_TYPES = ("milestone", "epic", "feature", "bug", "task")
BEAN_PRIORITIES = ("critical", "high", "normal", "low", "deferred")

TERMINAL_STATUSES = frozenset({"completed", "scrapped"})
WORKABLE_STATUSES = frozenset({"todo", "in-progress"})

# Tags are the only out-of-band signal that a bean is stuck.
STUCK_TAGS = ("blocked", "failed")

PRIORITY_RANKS = {name: rank for rank, name in enumerate(BEAN_PRIORITIES)}


@dataclass
class Bean:
    id: str
    slug: str = ""
    title: str = ""
    status: str = "todo"
    type: str = "task"
    priority: str = "normal"
    tags: list[str] = field(default_factory=list)
    body: str = ""
    parent_id: str | None = None
    blocking_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    children: list["Bean"] = field(default_factory=list)

    @property
    def is_stuck(self) -> bool:
        return any(tag in self.tags for tag in STUCK_TAGS)

    @property
    def stuck_reason(self) -> str | None:
        for tag in STUCK_TAGS:
            if tag in self.tags:
                return tag
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_review_mode(self) -> bool:
        """Epics and milestones are audited, not implemented."""
        return self.type in ("epic", "milestone")

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANKS.get(self.priority, PRIORITY_RANKS["normal"])


@dataclass(order=True)
class QueueEntry:
    rank: int
    sequence: int
    enqueued_at: float = field(compare=False)
    bean: Bean = field(compare=False)


@dataclass
class ExecutionContext:
    """Where a ready bean will run, decided before its agent is spawned."""

    branch_name: str | None = None
    base_branch: str | None = None
    worktree_path: str | None = None


@dataclass
class ExitResult:
    code: int
    duration: float
    signal: str | None = None


@dataclass
class RunningAgent:
    bean: Bean
    runner: object
    started_at: float
    correlation_id: str
    output: list[str] = field(default_factory=list)
    worktree_path: str | None = None


@dataclass
class MergeResult:
    success: bool
    commit_sha: str | None = None
    conflict: bool = False
    error: str | None = None


@dataclass
class CompletionResult:
    """What happened to a run. Distinct from the bean's status."""

    outcome: str
    commit_sha: str | None = None
    blocker_bean_id: str | None = None
    error: str | None = None
    merge_conflict: bool = False
