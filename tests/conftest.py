"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from jobtasks.ordering.models import PlacementRequest, TaskView
from jobtasks.ordering.repository import TaskRepository
from jobtasks.ordering.services import TaskOrderingService

ACTOR = "user-1"


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "jobtasks.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def service(repository: TaskRepository) -> TaskOrderingService:
    return TaskOrderingService(repository=repository)


@pytest.fixture()
def job_id(service: TaskOrderingService) -> str:
    return service.create_job(title="Kitchen remodel", actor=ACTOR).job_id


def seed_tasks(
    service: TaskOrderingService,
    job_id: str,
    positions: list[int],
    *,
    parent_id: str | None = None,
    prefix: str = "Task",
) -> list[TaskView]:
    """Create one task per absolute position, in the given order."""

    return [
        service.create_task(
            job_id=job_id,
            title=f"{prefix} {index}",
            actor=ACTOR,
            parent_id=parent_id,
            placement=PlacementRequest.absolute(position),
        )
        for index, position in enumerate(positions, start=1)
    ]


def positions_by_id(service: TaskOrderingService, job_id: str) -> dict[str, int]:
    return {task.task_id: task.position for task in service.snapshot(job_id).tasks}


def versions_by_id(service: TaskOrderingService, job_id: str) -> dict[str, int]:
    return {task.task_id: task.version for task in service.snapshot(job_id).tasks}
