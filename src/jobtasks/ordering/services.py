"""Use-case services: task creation, single moves, atomic batch reorders and rebalancing."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from sqlmodel import Session

from jobtasks.ordering.allocator import PositionAllocator
from jobtasks.ordering.errors import (
    ConflictError,
    PositionsExhaustedError,
    TaskOrderingError,
    ValidationError,
)
from jobtasks.ordering.guard import VersionBaseline, check_version
from jobtasks.ordering.hierarchy import HierarchyValidator
from jobtasks.ordering.models import (
    AbsoluteMove,
    BatchResult,
    JobSnapshot,
    JobView,
    PlacementRequest,
    RebalanceResult,
    RelativeMove,
    ReorderResult,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from jobtasks.ordering.rebalance import RebalanceEngine, RebalancePolicy
from jobtasks.ordering.repository import TaskRepository, to_job_view, to_task_view
from jobtasks.storage.common import to_db_datetime, utc_now
from jobtasks.storage.sqlmodel_models import Task

logger = logging.getLogger(__name__)

BatchMove = AbsoluteMove | RelativeMove


class TaskOrderingService:
    """Coordinates the allocator, conflict guard, hierarchy validator and rebalancer.

    Every public method is one transaction. ``actor`` is the authenticated
    user on whose behalf the change is made; it is recorded in the audit trail.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        allocator: PositionAllocator | None = None,
        rebalance_policy: RebalancePolicy | None = None,
        auto_rebalance: bool = True,
        auto_rebalance_min_siblings: int = 10,
    ) -> None:
        self.repository = repository
        self.allocator = allocator or PositionAllocator()
        self.hierarchy = HierarchyValidator(repository)
        self.rebalancer = RebalanceEngine(
            repository,
            rebalance_policy or RebalancePolicy(spacing=self.allocator.spacing),
        )
        self.auto_rebalance = auto_rebalance
        self.auto_rebalance_min_siblings = auto_rebalance_min_siblings

    def create_job(self, *, title: str, actor: str) -> JobView:
        title = _require_title(title, label="Job")
        with self.repository.transaction() as session:
            job = self.repository.insert_job(session, title=title)
            self.repository.add_event(
                session,
                job_id=job.job_id,
                task_id=None,
                actor_id=actor,
                event_type="job_created",
                details={"title": title},
            )
            view = to_job_view(job)
        return view

    def create_task(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        title: str,
        actor: str,
        parent_id: str | None = None,
        placement: PlacementRequest | None = None,
        status: TaskStatus | str = TaskStatus.NEW_TASK,
    ) -> TaskView:
        """Create a task at a trusted absolute position or at a resolved placement."""

        title = _require_title(title)
        placement = placement or PlacementRequest.bottom()
        status = _parse_status(status)
        with self.repository.transaction() as session:
            self.repository.get_job(session, job_id)
            self.hierarchy.validate_parent(
                session,
                job_id=job_id,
                task=None,
                parent_id=parent_id,
                actor=actor,
            )
            position = self._allocate(
                session,
                job_id=job_id,
                parent_id=parent_id,
                placement=placement,
                moving_task_id=None,
                actor=actor,
                baseline=VersionBaseline(),
            )
            row = self.repository.insert_task(
                session,
                job_id=job_id,
                parent_id=parent_id,
                title=title,
                status=status,
                position=position,
            )
            self.repository.add_event(
                session,
                job_id=job_id,
                task_id=row.task_id,
                actor_id=actor,
                event_type="created",
                details={
                    "parent_id": parent_id,
                    "position": position,
                    "placement": placement.kind.value,
                },
            )
            self.repository.touch_job(session, job_id=job_id)
            view = to_task_view(row)
        self._auto_rebalance(job_id=job_id, parent_scopes=[parent_id], actor=actor)
        return view

    def update_task(
        self,
        *,
        task_id: str,
        actor: str,
        title: str | None = None,
        status: TaskStatus | str | None = None,
        expected_version: int | None = None,
    ) -> TaskView:
        """Change title and/or status under an optional version check."""

        values: dict[str, object] = {}
        if title is not None:
            values["title"] = _require_title(title)
        if status is not None:
            values["status"] = _parse_status(status).value
        if not values:
            raise ValidationError("Nothing to update: pass a title or a status.")

        with self.repository.transaction() as session:
            row = self.repository.get_task(session, task_id=task_id)
            check_version(
                entity_type="task",
                entity_id=task_id,
                current_version=row.version,
                expected_version=expected_version,
            )
            changes = {
                key: [getattr(row, key), value]
                for key, value in values.items()
                if getattr(row, key) != value
            }
            if changes:
                row = self.repository.update_task(session, task=row, **values)
                self.repository.add_event(
                    session,
                    job_id=row.job_id,
                    task_id=task_id,
                    actor_id=actor,
                    event_type="updated",
                    details={"changes": changes},
                )
                self.repository.touch_job(session, job_id=row.job_id)
            view = to_task_view(row)
        return view

    def delete_task(
        self,
        *,
        task_id: str,
        actor: str,
        expected_version: int | None = None,
    ) -> TaskView:
        """Soft-delete a task that has no live children."""

        with self.repository.transaction() as session:
            row = self.repository.get_task(session, task_id=task_id)
            check_version(
                entity_type="task",
                entity_id=task_id,
                current_version=row.version,
                expected_version=expected_version,
            )
            live_children = self.repository.count_live_children(session, task_id=task_id)
            if live_children:
                raise ValidationError(
                    "Cannot delete task with active subtasks. "
                    "Please delete or move subtasks first.",
                    code="has_live_children",
                )
            row = self.repository.update_task(
                session,
                task=row,
                deleted_at=to_db_datetime(utc_now()),
            )
            self.repository.add_event(
                session,
                job_id=row.job_id,
                task_id=task_id,
                actor_id=actor,
                event_type="deleted",
                details={"parent_id": row.parent_id, "position": row.position},
            )
            self.repository.touch_job(session, job_id=row.job_id)
            view = to_task_view(row)
        return view

    def reorder_task(
        self,
        *,
        task_id: str,
        position: int,
        actor: str,
        expected_version: int | None = None,
    ) -> ReorderResult:
        """Single reorder to a caller-trusted absolute position."""

        view = self.move_task(
            task_id=task_id,
            placement=PlacementRequest.absolute(position),
            actor=actor,
            expected_version=expected_version,
        )
        return ReorderResult(task=view)

    def move_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        placement: PlacementRequest,
        actor: str,
        parent_id: str | None = None,
        change_parent: bool = False,
        expected_version: int | None = None,
    ) -> TaskView:
        """Move one task, optionally under a new parent, in its own transaction."""

        with self.repository.transaction() as session:
            row = self.repository.get_task(session, task_id=task_id)
            job_id = row.job_id
            scopes = [row.parent_id]
            row, _ = self._place(
                session,
                task=row,
                placement=placement,
                parent_id=parent_id,
                change_parent=change_parent,
                expected_version=expected_version,
                actor=actor,
                baseline=VersionBaseline(),
            )
            scopes.append(row.parent_id)
            self.repository.touch_job(session, job_id=job_id)
            view = to_task_view(row)
        self._auto_rebalance(job_id=job_id, parent_scopes=scopes, actor=actor)
        return view

    def batch_reorder(
        self,
        *,
        job_id: str,
        moves: Sequence[BatchMove],
        actor: str,
        job_expected_version: int | None = None,
    ) -> BatchResult:
        """Apply absolute or relative directives as one all-or-nothing unit.

        On a task-level conflict the raised :class:`ConflictError` carries a
        fresh snapshot of the job's tasks; on a job-level conflict it carries
        the current job version.
        """

        moves = list(moves)
        mode = _batch_mode(moves)
        placements = [move.to_placement() for move in moves]
        scopes: list[str | None] = []
        moved = 0
        try:
            with self.repository.transaction() as session:
                job = self.repository.get_job(session, job_id)
                loaded_job_version = job.version
                check_version(
                    entity_type="job",
                    entity_id=job_id,
                    current_version=loaded_job_version,
                    expected_version=job_expected_version,
                )
                baseline = VersionBaseline()
                for move, placement in zip(moves, placements, strict=True):
                    row = self.repository.get_task(session, task_id=move.task_id, job_id=job_id)
                    scopes.append(row.parent_id)
                    row, changed = self._place(
                        session,
                        task=row,
                        placement=placement,
                        parent_id=move.parent_id,
                        change_parent=move.change_parent,
                        expected_version=move.expected_version,
                        actor=actor,
                        baseline=baseline,
                    )
                    scopes.append(row.parent_id)
                    moved += int(changed)
                job_version = self.repository.advance_job_version(
                    session,
                    job_id=job_id,
                    loaded_version=loaded_job_version,
                )
                self.repository.add_event(
                    session,
                    job_id=job_id,
                    task_id=None,
                    actor_id=actor,
                    event_type="batch_reordered",
                    details={
                        "mode": mode,
                        "directives": len(moves),
                        "moved": moved,
                        "job_version": job_version,
                    },
                )
        except ConflictError as error:
            if error.entity_type == "task":
                error.snapshot = self.repository.job_snapshot(job_id)
            raise

        logger.info(
            "Batch %s reorder committed: job=%s directives=%d moved=%d actor=%s",
            mode,
            job_id,
            len(moves),
            moved,
            actor,
        )
        rebalanced = self._auto_rebalance(job_id=job_id, parent_scopes=scopes, actor=actor)
        return BatchResult(
            snapshot=self.repository.job_snapshot(job_id),
            moved=moved,
            rebalanced_groups=rebalanced,
        )

    def rebalance(
        self,
        *,
        job_id: str,
        actor: str,
        parent_id: str | None = None,
        spacing: int | None = None,
        force: bool = False,
    ) -> RebalanceResult:
        """Rebalance one sibling group when heuristics (or ``force``) ask for it."""

        with self.repository.transaction() as session:
            job = self.repository.get_job(session, job_id)
            if parent_id is not None:
                self.repository.get_task(
                    session,
                    task_id=parent_id,
                    job_id=job_id,
                    entity_type="parent",
                )
            result = self.rebalancer.rebalance_group(
                session,
                job_id=job_id,
                parent_id=parent_id,
                actor=actor,
                spacing=spacing,
                force=force,
            )
            if result.updated:
                self.repository.advance_job_version(
                    session,
                    job_id=job_id,
                    loaded_version=job.version,
                )
        return result

    def rebalance_all(
        self,
        *,
        job_id: str,
        actor: str,
        spacing: int | None = None,
        force: bool = False,
    ) -> list[RebalanceResult]:
        """One independent rebalance per sibling group of the job."""

        with self.repository.transaction() as session:
            self.repository.get_job(session, job_id)
            scopes = self.repository.list_parent_scopes(session, job_id=job_id)
        return [
            self.rebalance(
                job_id=job_id,
                actor=actor,
                parent_id=parent_id,
                spacing=spacing,
                force=force,
            )
            for parent_id in scopes
        ]

    def snapshot(self, job_id: str) -> JobSnapshot:
        return self.repository.job_snapshot(job_id)

    def history(
        self,
        *,
        task_id: str | None = None,
        job_id: str | None = None,
    ) -> list[TaskEventView]:
        return self.repository.list_events(job_id=job_id, task_id=task_id)

    def _place(  # noqa: PLR0913
        self,
        session: Session,
        *,
        task: Task,
        placement: PlacementRequest,
        parent_id: str | None,
        change_parent: bool,
        expected_version: int | None,
        actor: str,
        baseline: VersionBaseline,
    ) -> tuple[Task, bool]:
        baseline.check(
            task_id=task.task_id,
            current_version=task.version,
            expected_version=expected_version,
        )
        previous_parent = task.parent_id
        previous_position = task.position
        target_parent = parent_id if change_parent else task.parent_id
        reparenting = target_parent != previous_parent
        if reparenting:
            self.hierarchy.validate_parent(
                session,
                job_id=task.job_id,
                task=task,
                parent_id=target_parent,
                actor=actor,
            )

        position = self._allocate(
            session,
            job_id=task.job_id,
            parent_id=target_parent,
            placement=placement,
            moving_task_id=task.task_id,
            actor=actor,
            baseline=baseline,
        )
        # The allocation may have rebalanced the group this task belongs to.
        task = self.repository.get_task(session, task_id=task.task_id)
        if not reparenting and position == task.position:
            return task, False

        values: dict[str, object] = {
            "position": position,
            "reordered_at": to_db_datetime(utc_now()),
        }
        if reparenting:
            values["parent_id"] = target_parent
        task = self.repository.update_task(session, task=task, **values)
        self.repository.add_event(
            session,
            job_id=task.job_id,
            task_id=task.task_id,
            actor_id=actor,
            event_type="reparented" if reparenting else "reordered",
            details={
                "placement": placement.kind.value,
                "position_from": previous_position,
                "position_to": position,
                "parent_from": previous_parent,
                "parent_to": target_parent,
            },
        )
        return task, True

    def _allocate(  # noqa: PLR0913
        self,
        session: Session,
        *,
        job_id: str,
        parent_id: str | None,
        placement: PlacementRequest,
        moving_task_id: str | None,
        actor: str,
        baseline: VersionBaseline,
    ) -> int:
        if placement.neighbor_id is not None:
            if placement.neighbor_id == moving_task_id:
                raise ValidationError(
                    f"Task {moving_task_id} cannot be placed relative to itself.",
                    field="neighbor_id",
                )
            self.repository.get_task(
                session,
                task_id=placement.neighbor_id,
                job_id=job_id,
                entity_type="neighbor",
            )

        siblings = self.repository.sibling_positions(
            session,
            job_id=job_id,
            parent_id=parent_id,
            exclude_task_id=moving_task_id,
        )
        try:
            return self.allocator.allocate(siblings, placement)
        except PositionsExhaustedError:
            logger.info(
                "Positions exhausted in job=%s parent=%s; rebalancing before retry",
                job_id,
                parent_id,
            )

        self.rebalancer.rebalance_group(
            session,
            job_id=job_id,
            parent_id=parent_id,
            actor=actor,
            force=True,
            baseline=baseline,
            exclude_task_id=moving_task_id,
        )
        siblings = self.repository.sibling_positions(
            session,
            job_id=job_id,
            parent_id=parent_id,
            exclude_task_id=moving_task_id,
        )
        try:
            return self.allocator.allocate(siblings, placement)
        except PositionsExhaustedError as error:
            error.job_id = job_id
            error.parent_id = parent_id
            raise

    def _auto_rebalance(
        self,
        *,
        job_id: str,
        parent_scopes: Iterable[str | None],
        actor: str,
    ) -> list[str | None]:
        """Follow-up rebalances of crowded groups, one transaction per group.

        The triggering change is already committed, so a failed follow-up is
        logged and that group is skipped.
        """

        if not self.auto_rebalance:
            return []
        rebalanced: list[str | None] = []
        for parent_id in _unique_scopes(parent_scopes):
            try:
                if self._auto_rebalance_group(job_id=job_id, parent_id=parent_id, actor=actor):
                    rebalanced.append(parent_id)
            except TaskOrderingError as error:
                logger.warning(
                    "Follow-up rebalance skipped: job=%s parent=%s code=%s: %s",
                    job_id,
                    parent_id,
                    error.code,
                    error.message,
                )
        return rebalanced

    def _auto_rebalance_group(self, *, job_id: str, parent_id: str | None, actor: str) -> bool:
        with self.repository.transaction() as session:
            job = self.repository.get_job(session, job_id)
            siblings = self.repository.list_siblings(session, job_id=job_id, parent_id=parent_id)
            if len(siblings) < self.auto_rebalance_min_siblings:
                return False
            result = self.rebalancer.rebalance_group(
                session,
                job_id=job_id,
                parent_id=parent_id,
                actor=actor,
            )
            if not result.updated:
                return False
            self.repository.advance_job_version(
                session,
                job_id=job_id,
                loaded_version=job.version,
            )
        return True


def _batch_mode(moves: Sequence[BatchMove]) -> str:
    if not moves:
        raise ValidationError("Batch reorder needs at least one directive.", field="items")
    if all(isinstance(move, AbsoluteMove) for move in moves):
        return "absolute"
    if all(isinstance(move, RelativeMove) for move in moves):
        return "relative"
    raise ValidationError(
        "Absolute and relative directives cannot be mixed in one batch.",
        field="items",
    )


def _require_title(title: str, *, label: str = "Task") -> str:
    normalized = title.strip()
    if not normalized:
        raise ValidationError(f"{label} title can't be blank.", field="title")
    return normalized


def _unique_scopes(scopes: Iterable[str | None]) -> list[str | None]:
    seen: list[str | None] = []
    for scope in scopes:
        if scope not in seen:
            seen.append(scope)
    return seen


def _parse_status(value: TaskStatus | str) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError as error:
        allowed = ", ".join(status.value for status in TaskStatus)
        raise ValidationError(
            f"Unknown task status {value!r}; expected one of: {allowed}.",
            field="status",
        ) from error
