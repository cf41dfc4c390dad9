"""Controllers for job and task CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jobtasks.config import Settings
from jobtasks.ordering.allocator import PositionAllocator
from jobtasks.ordering.errors import ValidationError
from jobtasks.ordering.models import (
    AbsoluteMove,
    Edge,
    JobSnapshot,
    PlacementRequest,
    RelativeMove,
    TaskView,
)
from jobtasks.ordering.rebalance import RebalancePolicy
from jobtasks.ordering.repository import TaskRepository
from jobtasks.ordering.services import BatchMove, TaskOrderingService


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for job creation."""

    db_path: Path | None
    title: str
    actor: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class JobShowCommand:
    """CLI input for job inspection and task listing."""

    db_path: Path | None
    job_id: str
    as_json: bool = False


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for task creation."""

    db_path: Path | None
    job_id: str
    title: str
    parent_id: str | None = None
    position: int | None = None
    after_id: str | None = None
    before_id: str | None = None
    top: bool = False
    status: str | None = None
    actor: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class TaskMoveCommand:
    """CLI input for a single-task move."""

    db_path: Path | None
    task_id: str
    position: int | None = None
    after_id: str | None = None
    before_id: str | None = None
    top: bool = False
    bottom: bool = False
    parent_id: str | None = None
    to_root: bool = False
    expected_version: int | None = None
    actor: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class TaskUpdateCommand:
    """CLI input for title/status edits."""

    db_path: Path | None
    task_id: str
    title: str | None = None
    status: str | None = None
    expected_version: int | None = None
    actor: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class TaskDeleteCommand:
    """CLI input for soft deletion."""

    db_path: Path | None
    task_id: str
    expected_version: int | None = None
    actor: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class TaskHistoryCommand:
    """CLI input for the audit trail."""

    db_path: Path | None
    task_id: str | None = None
    job_id: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class TaskBatchCommand:
    """CLI input for an atomic batch reorder read from a JSON document."""

    db_path: Path | None
    job_id: str
    document: str
    actor: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class TaskRebalanceCommand:
    """CLI input for sibling-group rebalancing."""

    db_path: Path | None
    job_id: str
    parent_id: str | None = None
    spacing: int | None = None
    force: bool = False
    all_groups: bool = False
    actor: str | None = None
    as_json: bool = False


class OrderingCliController:
    """Coordinates job and task CLI operations."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            job = service.create_job(
                title=command.title,
                actor=command.actor or settings.actor.actor_id,
            )
        if command.as_json:
            return _json_lines(
                {"job_id": job.job_id, "title": job.title, "version": job.version},
            )
        return [f"Job created: job_id={job.job_id} title={job.title} version={job.version}"]

    def show_job(self, command: JobShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            job = service.repository.job_view(command.job_id)
            snapshot = service.snapshot(command.job_id)
        if command.as_json:
            return _json_lines({"title": job.title, **snapshot.to_payload()})
        return [
            f"Job: {job.job_id}",
            f"Title: {job.title}",
            f"Version: {job.version}",
            f"Tasks: {len(snapshot.tasks)}",
            f"Updated: {job.updated_at.isoformat()}",
        ]

    def list_tasks(self, command: JobShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            snapshot = service.snapshot(command.job_id)
        if command.as_json:
            return _json_lines(snapshot.to_payload())
        return [
            f"Job {snapshot.job_id} version={snapshot.job_version} tasks={len(snapshot.tasks)}",
            *render_tree(snapshot),
        ]

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        placement = _placement(
            position=command.position,
            after_id=command.after_id,
            before_id=command.before_id,
            top=command.top,
            bottom=False,
        )
        with _service(settings) as service:
            task = service.create_task(
                job_id=command.job_id,
                title=command.title,
                actor=command.actor or settings.actor.actor_id,
                parent_id=command.parent_id,
                placement=placement,
                status=command.status or "new_task",
            )
        if command.as_json:
            return _json_lines(task.to_payload())
        return [f"Task created: {_task_line(task)}"]

    def move_task(self, command: TaskMoveCommand) -> list[str]:
        if command.to_root and command.parent_id is not None:
            raise ValidationError(
                "Use either --parent-id or --to-root, not both.",
                field="parent_id",
            )
        settings = _settings(command.db_path)
        placement = _placement(
            position=command.position,
            after_id=command.after_id,
            before_id=command.before_id,
            top=command.top,
            bottom=command.bottom,
        )
        with _service(settings) as service:
            task = service.move_task(
                task_id=command.task_id,
                placement=placement,
                actor=command.actor or settings.actor.actor_id,
                parent_id=command.parent_id,
                change_parent=command.to_root or command.parent_id is not None,
                expected_version=command.expected_version,
            )
        if command.as_json:
            return _json_lines({"ok": True, **task.to_payload()})
        return [f"Task moved: {_task_line(task)}"]

    def update_task(self, command: TaskUpdateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            task = service.update_task(
                task_id=command.task_id,
                actor=command.actor or settings.actor.actor_id,
                title=command.title,
                status=command.status,
                expected_version=command.expected_version,
            )
        if command.as_json:
            return _json_lines(task.to_payload())
        return [f"Task updated: {_task_line(task)}"]

    def delete_task(self, command: TaskDeleteCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            task = service.delete_task(
                task_id=command.task_id,
                actor=command.actor or settings.actor.actor_id,
                expected_version=command.expected_version,
            )
        if command.as_json:
            return _json_lines({"ok": True, "id": task.task_id, "version": task.version})
        return [f"Task deleted: {task.task_id} version={task.version}"]

    def history(self, command: TaskHistoryCommand) -> list[str]:
        if command.task_id is None and command.job_id is None:
            raise ValidationError("Pass a task id or --job-id.", field="task_id")
        settings = _settings(command.db_path)
        with _service(settings) as service:
            events = service.history(task_id=command.task_id, job_id=command.job_id)
        if command.as_json:
            return _json_lines(
                {
                    "events": [
                        {
                            "id": event.event_id,
                            "job_id": event.job_id,
                            "task_id": event.task_id,
                            "actor_id": event.actor_id,
                            "event_type": event.event_type,
                            "created_at": event.created_at.isoformat(),
                            "details": event.details,
                        }
                        for event in events
                    ],
                },
            )
        lines = [f"Events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"task={event.task_id or '-'} actor={event.actor_id} "
                f"{json.dumps(event.details, sort_keys=True, ensure_ascii=False)}",
            )
        return lines

    def batch(self, command: TaskBatchCommand) -> list[str]:
        settings = _settings(command.db_path)
        job_version, moves = parse_batch_document(command.document)
        with _service(settings) as service:
            result = service.batch_reorder(
                job_id=command.job_id,
                moves=moves,
                actor=command.actor or settings.actor.actor_id,
                job_expected_version=job_version,
            )
        if command.as_json:
            return _json_lines(result.to_payload())
        lines = [
            f"Batch committed: job={result.snapshot.job_id} "
            f"version={result.snapshot.job_version} moved={result.moved}",
        ]
        if result.rebalanced_groups:
            groups = ", ".join(group or "<root>" for group in result.rebalanced_groups)
            lines.append(f"Rebalanced groups: {groups}")
        lines.extend(render_tree(result.snapshot))
        return lines

    def rebalance(self, command: TaskRebalanceCommand) -> list[str]:
        if command.all_groups and command.parent_id is not None:
            raise ValidationError(
                "Use either --parent-id or --all-groups, not both.",
                field="parent_id",
            )
        settings = _settings(command.db_path)
        actor = command.actor or settings.actor.actor_id
        with _service(settings) as service:
            if command.all_groups:
                results = service.rebalance_all(
                    job_id=command.job_id,
                    actor=actor,
                    spacing=command.spacing,
                    force=command.force,
                )
            else:
                results = [
                    service.rebalance(
                        job_id=command.job_id,
                        actor=actor,
                        parent_id=command.parent_id,
                        spacing=command.spacing,
                        force=command.force,
                    ),
                ]
        if command.as_json:
            return _json_lines({"results": [result.to_payload() for result in results]})
        lines = []
        for result in results:
            lines.append(
                f"Group {result.parent_id or '<root>'}: "
                f"rebalanced={str(result.rebalanced).lower()} "
                f"count={result.count} updated={result.updated} "
                f"reasons={','.join(result.reasons) or '-'}",
            )
        return lines


def parse_batch_document(document: str) -> tuple[int | None, list[BatchMove]]:
    """Parse ``{"mode", "job_version", "items"}`` into batch directives.

    Absolute items carry ``position``; relative items carry one of
    ``before_id``/``after_id`` (``before_task_id``/``after_task_id`` also
    accepted) or ``position: "first" | "last"``. A ``parent_id`` key, even
    ``null``, requests a parent change.
    """

    try:
        payload = json.loads(document)
    except json.JSONDecodeError as error:
        raise ValidationError(f"Batch document is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValidationError("Batch document must be a JSON object.")

    mode = payload.get("mode", "absolute")
    if mode not in {"absolute", "relative"}:
        raise ValidationError(f"Unknown batch mode: {mode!r}", field="mode")
    job_version = _optional_int(payload.get("job_version"), field="job_version")
    items = payload.get("items")
    if not isinstance(items, list):
        raise ValidationError("Batch document needs an 'items' list.", field="items")

    moves: list[BatchMove] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("id"):
            raise ValidationError("Each batch item needs an 'id'.", field="items")
        task_id = str(item["id"])
        parent_id = item.get("parent_id")
        expected_version = _optional_int(
            item.get("version", item.get("expected_version")),
            field="version",
        )
        if mode == "absolute":
            position = item.get("position")
            if isinstance(position, bool) or not isinstance(position, int):
                raise ValidationError(
                    f"Absolute item {task_id} needs an integer position.",
                    field="position",
                )
            moves.append(
                AbsoluteMove(
                    task_id=task_id,
                    position=position,
                    parent_id=parent_id,
                    change_parent="parent_id" in item,
                    expected_version=expected_version,
                ),
            )
            continue
        moves.append(
            RelativeMove(
                task_id=task_id,
                before_id=item.get("before_id", item.get("before_task_id")),
                after_id=item.get("after_id", item.get("after_task_id")),
                edge=_parse_edge(item.get("edge", item.get("position"))),
                parent_id=parent_id,
                change_parent="parent_id" in item,
                expected_version=expected_version,
            ),
        )
    return job_version, moves


def render_tree(snapshot: JobSnapshot) -> list[str]:
    """Indented outline of the job's live tasks in display order."""

    children: dict[str | None, list[TaskView]] = {}
    for task in snapshot.tasks:
        children.setdefault(task.parent_id, []).append(task)

    lines: list[str] = []

    def walk(parent_id: str | None, depth: int) -> None:
        for task in sorted(children.get(parent_id, []), key=lambda t: (t.position, t.task_id)):
            lines.append(f"{'  ' * (depth + 1)}- {_task_line(task)}")
            walk(task.task_id, depth + 1)

    walk(None, 0)
    return lines


def _placement(
    *,
    position: int | None,
    after_id: str | None,
    before_id: str | None,
    top: bool,
    bottom: bool,
) -> PlacementRequest:
    chosen = [
        value
        for value in (position, after_id, before_id, top or None, bottom or None)
        if value is not None
    ]
    if len(chosen) > 1:
        raise ValidationError(
            "Choose one of --position, --after, --before, --top or --bottom.",
            field="placement",
        )
    if position is not None:
        return PlacementRequest.absolute(position)
    if after_id is not None:
        return PlacementRequest.after(after_id)
    if before_id is not None:
        return PlacementRequest.before(before_id)
    if top:
        return PlacementRequest.top()
    return PlacementRequest.bottom()


def _parse_edge(value: Any) -> Edge | None:
    if value is None:
        return None
    try:
        return Edge(value)
    except ValueError as error:
        raise ValidationError(
            f"Relative position must be 'first' or 'last', got {value!r}.",
            field="position",
        ) from error


def _optional_int(value: Any, *, field: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer, got {value!r}.", field=field)
    return value


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} [{task.status.value}] pos={task.position} "
        f"v={task.version} {task.title}"
    )


def _json_lines(payload: dict[str, Any]) -> list[str]:
    return [json.dumps(payload, indent=2, ensure_ascii=False)]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _service(settings: Settings) -> Iterator[TaskOrderingService]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    ordering = settings.ordering
    try:
        yield TaskOrderingService(
            repository=repository,
            allocator=PositionAllocator(spacing=ordering.spacing),
            rebalance_policy=RebalancePolicy(
                spacing=ordering.spacing,
                min_gap=ordering.rebalance_min_gap,
                max_gap_ratio=ordering.rebalance_max_gap_ratio,
                ceiling=ordering.rebalance_ceiling,
            ),
            auto_rebalance=ordering.auto_rebalance,
            auto_rebalance_min_siblings=ordering.auto_rebalance_min_siblings,
        )
    finally:
        repository.close()
