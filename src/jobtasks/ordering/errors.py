"""Error taxonomy for task ordering and hierarchy mutations.

Every error is raised before or inside the single transaction of an operation,
so raising always means nothing was persisted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from jobtasks.ordering.models import JobSnapshot


@dataclass(slots=True)
class TaskOrderingError(Exception):
    """Base error for rejected task mutations."""

    message: str
    code: str = "task_ordering_error"

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


@dataclass(slots=True)
class ValidationError(TaskOrderingError):
    """Malformed directive or request; no mutation was attempted."""

    code: str = "validation_error"
    field: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = {"error": self.message, "code": self.code}
        if self.field is not None:
            payload["field"] = self.field
        return payload


@dataclass(slots=True)
class PlacementError(ValidationError):
    """Neighbor referenced by a placement request is outside the target sibling group."""

    code: str = "placement_error"
    neighbor_id: str | None = None


@dataclass(slots=True)
class NotFoundError(TaskOrderingError):
    """Referenced job, task, neighbor or parent is missing or out of scope."""

    code: str = "not_found"
    entity_type: str = "task"
    entity_id: str | None = None


@dataclass(slots=True)
class CycleError(TaskOrderingError):
    """Parent assignment would make a task its own ancestor."""

    code: str = "cycle"
    task_id: str | None = None
    parent_id: str | None = None


@dataclass(slots=True)
class ConflictError(TaskOrderingError):
    """Caller worked from a stale version of a task or job."""

    code: str = "conflict"
    entity_type: str = "task"
    entity_id: str | None = None
    current_version: int | None = None
    snapshot: JobSnapshot | None = None

    def to_payload(self) -> dict[str, Any]:
        current_state: dict[str, Any] = {}
        if self.snapshot is not None:
            current_state = self.snapshot.to_payload()
        elif self.entity_type == "job":
            current_state = {"job_version": self.current_version}
        else:
            current_state = {"version": self.current_version}
        return {
            "error": self.message,
            "code": self.code,
            "conflict": True,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "current_version": self.current_version,
            "current_state": current_state,
        }


@dataclass(slots=True)
class PositionsExhaustedError(TaskOrderingError):
    """No integer room left at the requested spot; the sibling group needs a rebalance."""

    code: str = "positions_exhausted"
    job_id: str | None = None
    parent_id: str | None = None


@dataclass(slots=True)
class TransactionError(TaskOrderingError):
    """Unexpected persistence failure; the transaction was rolled back."""

    code: str = "transaction_error"
