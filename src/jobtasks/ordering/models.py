"""Domain models for task placement, batch directives and snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from jobtasks.ordering.errors import ValidationError

DEFAULT_SPACING = 10_000
POSITION_FLOOR = 1
POSITION_CEILING = 2_100_000_000
REBALANCE_CEILING = 2_000_000_000


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    NEW_TASK = "new_task"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    SUCCESSFULLY_COMPLETED = "successfully_completed"
    CANCELLED = "cancelled"


class PlacementKind(str, Enum):
    """How a placement request picks its position."""

    ABSOLUTE = "absolute"
    AFTER = "after"
    BEFORE = "before"
    TOP = "top"
    BOTTOM = "bottom"


class Edge(str, Enum):
    """Edge anchors accepted by relative batch directives."""

    FIRST = "first"
    LAST = "last"


@dataclass(frozen=True, slots=True)
class PlacementRequest:
    """Transient move intent handed to the position allocator; never persisted."""

    kind: PlacementKind
    position: int | None = None
    neighbor_id: str | None = None

    @classmethod
    def absolute(cls, position: int) -> PlacementRequest:
        return cls(kind=PlacementKind.ABSOLUTE, position=position)

    @classmethod
    def after(cls, neighbor_id: str) -> PlacementRequest:
        return cls(kind=PlacementKind.AFTER, neighbor_id=neighbor_id)

    @classmethod
    def before(cls, neighbor_id: str) -> PlacementRequest:
        return cls(kind=PlacementKind.BEFORE, neighbor_id=neighbor_id)

    @classmethod
    def top(cls) -> PlacementRequest:
        return cls(kind=PlacementKind.TOP)

    @classmethod
    def bottom(cls) -> PlacementRequest:
        return cls(kind=PlacementKind.BOTTOM)

    @property
    def finalized(self) -> bool:
        return self.kind is PlacementKind.ABSOLUTE


@dataclass(frozen=True, slots=True)
class SiblingPosition:
    """Minimal view of one sibling used by the allocator and rebalance heuristics."""

    task_id: str
    position: int


@dataclass(frozen=True, slots=True)
class AbsoluteMove:
    """Batch directive stating a literal position (and optionally a new parent)."""

    task_id: str
    position: int
    parent_id: str | None = None
    change_parent: bool = False
    expected_version: int | None = None

    def to_placement(self) -> PlacementRequest:
        return PlacementRequest.absolute(self.position)


@dataclass(frozen=True, slots=True)
class RelativeMove:
    """Batch directive anchored on a neighbor or on an edge of the sibling group."""

    task_id: str
    before_id: str | None = None
    after_id: str | None = None
    edge: Edge | None = None
    parent_id: str | None = None
    change_parent: bool = False
    expected_version: int | None = None

    def to_placement(self) -> PlacementRequest:
        anchors = [
            value for value in (self.before_id, self.after_id, self.edge) if value is not None
        ]
        if len(anchors) != 1:
            raise ValidationError(
                f"Relative move for task {self.task_id} needs exactly one of "
                "before_id, after_id or edge.",
                field="anchor",
            )
        if self.before_id is not None:
            return PlacementRequest.before(self.before_id)
        if self.after_id is not None:
            return PlacementRequest.after(self.after_id)
        if self.edge is Edge.FIRST:
            return PlacementRequest.top()
        return PlacementRequest.bottom()


@dataclass(slots=True)
class JobView:
    """Readable job view."""

    job_id: str
    title: str
    version: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskView:
    """Readable task view returned by every mutation."""

    task_id: str
    job_id: str
    parent_id: str | None
    title: str
    status: TaskStatus
    position: int
    version: int
    reordered_at: datetime | None
    deleted_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "title": self.title,
            "status": self.status.value,
            "position": self.position,
            "parent_id": self.parent_id,
            "version": self.version,
        }


@dataclass(slots=True)
class JobSnapshot:
    """Authoritative state of a job's live tasks, enough to reconcile a client."""

    job_id: str
    job_version: int
    tasks: list[TaskView] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "job_version": self.job_version,
            "tasks": [task.to_payload() for task in self.tasks],
        }


@dataclass(slots=True)
class ReorderResult:
    """Outcome of a single-task reorder."""

    task: TaskView

    def to_payload(self) -> dict[str, Any]:
        return {"ok": True, "id": self.task.task_id, "version": self.task.version}


@dataclass(slots=True)
class BatchResult:
    """Outcome of a successful batch reorder."""

    snapshot: JobSnapshot
    moved: int
    rebalanced_groups: list[str | None] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "ok": True,
            "moved": self.moved,
            "rebalanced_groups": list(self.rebalanced_groups),
            **self.snapshot.to_payload(),
        }


@dataclass(slots=True)
class RebalanceResult:
    """Outcome of one sibling-group rebalance."""

    job_id: str
    parent_id: str | None
    rebalanced: bool
    count: int
    updated: int
    reasons: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "parent_id": self.parent_id,
            "rebalanced": self.rebalanced,
            "count": self.count,
            "updated": self.updated,
            "reasons": list(self.reasons),
        }


@dataclass(slots=True)
class TaskEventView:
    """Audit trail entry."""

    event_id: int
    job_id: str
    task_id: str | None
    actor_id: str
    event_type: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
