"""Parent assignment checks that keep every job's task tree acyclic."""

from __future__ import annotations

import logging

from sqlmodel import Session

from jobtasks.ordering.errors import CycleError, NotFoundError
from jobtasks.ordering.repository import TaskRepository
from jobtasks.storage.sqlmodel_models import Task

logger = logging.getLogger(__name__)


class HierarchyValidator:
    """Server-side guard for parent changes.

    A new parent must exist, be live, belong to the same job, differ from the
    moved task, and must not be one of its descendants.
    """

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def validate_parent(
        self,
        session: Session,
        *,
        job_id: str,
        task: Task | None,
        parent_id: str | None,
        actor: str,
    ) -> Task | None:
        """Return the validated parent row (``None`` for the root group).

        ``task`` is ``None`` when the parent is checked for a task that is
        being created and therefore cannot have descendants yet.
        """

        if parent_id is None:
            return None
        if task is not None and parent_id == task.task_id:
            self._reject(task_id=task.task_id, parent_id=parent_id, actor=actor)
            raise CycleError(
                f"Task {task.task_id} cannot be its own parent.",
                task_id=task.task_id,
                parent_id=parent_id,
            )

        parent = self.repository.find_task(session, parent_id)
        if parent is None or parent.deleted_at is not None or parent.job_id != job_id:
            raise NotFoundError(
                f"Parent task not found in job {job_id}: {parent_id}",
                entity_type="parent",
                entity_id=parent_id,
            )
        if task is None:
            return parent

        if self._is_descendant(session, job_id=job_id, task_id=task.task_id, candidate=parent):
            self._reject(task_id=task.task_id, parent_id=parent_id, actor=actor)
            raise CycleError(
                f"Moving task {task.task_id} under {parent_id} "
                "would create a circular reference.",
                task_id=task.task_id,
                parent_id=parent_id,
            )
        return parent

    def _is_descendant(
        self,
        session: Session,
        *,
        job_id: str,
        task_id: str,
        candidate: Task,
    ) -> bool:
        # A chain longer than the job's task count can only be a pre-existing loop.
        bound = self.repository.count_job_tasks(session, job_id=job_id)
        current: Task | None = candidate
        steps = 0
        while current is not None and current.parent_id is not None:
            if current.parent_id == task_id:
                return True
            steps += 1
            if steps > bound:
                logger.error("Ancestor walk for %s exceeded %d steps", candidate.task_id, bound)
                return True
            current = self.repository.find_task(session, current.parent_id)
        return False

    @staticmethod
    def _reject(*, task_id: str, parent_id: str, actor: str) -> None:
        logger.warning(
            "Rejected parent change: task=%s parent=%s actor=%s",
            task_id,
            parent_id,
            actor,
        )
