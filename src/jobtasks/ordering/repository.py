"""Versioned persistence for jobs and task trees backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from jobtasks.ordering.errors import (
    ConflictError,
    NotFoundError,
    TaskOrderingError,
    TransactionError,
)
from jobtasks.ordering.models import (
    JobSnapshot,
    JobView,
    SiblingPosition,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from jobtasks.storage.alembic_runner import upgrade_head
from jobtasks.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from jobtasks.storage.sqlmodel_models import Job, Task, TaskEvent

logger = logging.getLogger(__name__)


class TaskRepository:
    """Transactional store with per-row version counters.

    Methods taking a ``session`` run inside the caller's transaction
    (see :meth:`transaction`); the rest open and close their own session.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One all-or-nothing unit of work; any raised error rolls everything back."""

        with Session(self.engine) as session:
            try:
                yield session
                session.commit()
            except TaskOrderingError:
                session.rollback()
                raise
            except SQLAlchemyError as error:
                session.rollback()
                logger.exception("Task store transaction rolled back")
                raise TransactionError("Failed to persist task changes.") from error

    def insert_job(self, session: Session, *, title: str) -> Job:
        now = to_db_datetime(utc_now())
        row = Job(job_id=str(uuid4()), title=title, version=0, created_at=now, updated_at=now)
        session.add(row)
        session.flush()
        return row

    def get_job(self, session: Session, job_id: str) -> Job:
        row = session.exec(
            select(Job)
            .where(Job.job_id == job_id)
            .execution_options(populate_existing=True),
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Job not found: {job_id}", entity_type="job", entity_id=job_id)
        return row

    def advance_job_version(self, session: Session, *, job_id: str, loaded_version: int) -> int:
        """Bump the job version if nobody else committed a structural change first."""

        result = session.exec(
            sa_update(Job)
            .where(col(Job.job_id) == job_id, col(Job.version) == loaded_version)
            .values(version=loaded_version + 1, updated_at=to_db_datetime(utc_now())),
        )
        if result.rowcount != 1:
            current = self.get_job(session, job_id)
            raise ConflictError(
                "Job has been modified by another user.",
                entity_type="job",
                entity_id=job_id,
                current_version=current.version,
            )
        return loaded_version + 1

    def touch_job(self, session: Session, *, job_id: str) -> None:
        session.exec(
            sa_update(Job)
            .where(col(Job.job_id) == job_id)
            .values(updated_at=to_db_datetime(utc_now())),
        )

    def find_task(self, session: Session, task_id: str) -> Task | None:
        return session.exec(
            select(Task)
            .where(Task.task_id == task_id)
            .execution_options(populate_existing=True),
        ).one_or_none()

    def get_task(
        self,
        session: Session,
        *,
        task_id: str,
        job_id: str | None = None,
        include_deleted: bool = False,
        entity_type: str = "task",
    ) -> Task:
        row = self.find_task(session, task_id)
        if (
            row is None
            or (job_id is not None and row.job_id != job_id)
            or (row.deleted_at is not None and not include_deleted)
        ):
            raise NotFoundError(
                f"{entity_type.capitalize()} not found: {task_id}",
                entity_type=entity_type,
                entity_id=task_id,
            )
        return row

    def list_siblings(
        self,
        session: Session,
        *,
        job_id: str,
        parent_id: str | None,
        include_deleted: bool = False,
        exclude_task_id: str | None = None,
    ) -> list[Task]:
        """Sibling group ordered for display: position, then task id."""

        statement = select(Task).where(Task.job_id == job_id)
        if parent_id is None:
            statement = statement.where(col(Task.parent_id).is_(None))
        else:
            statement = statement.where(Task.parent_id == parent_id)
        if not include_deleted:
            statement = statement.where(col(Task.deleted_at).is_(None))
        if exclude_task_id is not None:
            statement = statement.where(Task.task_id != exclude_task_id)
        statement = statement.order_by(col(Task.position).asc(), col(Task.task_id).asc())
        return list(session.exec(statement.execution_options(populate_existing=True)).all())

    def sibling_positions(
        self,
        session: Session,
        *,
        job_id: str,
        parent_id: str | None,
        exclude_task_id: str | None = None,
    ) -> list[SiblingPosition]:
        return [
            SiblingPosition(task_id=row.task_id, position=row.position)
            for row in self.list_siblings(
                session,
                job_id=job_id,
                parent_id=parent_id,
                exclude_task_id=exclude_task_id,
            )
        ]

    def list_parent_scopes(self, session: Session, *, job_id: str) -> list[str | None]:
        """Distinct parent references among live tasks of a job."""

        rows = session.exec(
            select(Task.parent_id)
            .where(Task.job_id == job_id, col(Task.deleted_at).is_(None))
            .distinct(),
        ).all()
        return sorted(rows, key=lambda value: (value is not None, value or ""))

    def count_job_tasks(self, session: Session, *, job_id: str) -> int:
        return int(
            session.exec(
                select(func.count()).select_from(Task).where(Task.job_id == job_id),
            ).one(),
        )

    def count_live_children(self, session: Session, *, task_id: str) -> int:
        return int(
            session.exec(
                select(func.count())
                .select_from(Task)
                .where(Task.parent_id == task_id, col(Task.deleted_at).is_(None)),
            ).one(),
        )

    def insert_task(  # noqa: PLR0913
        self,
        session: Session,
        *,
        job_id: str,
        parent_id: str | None,
        title: str,
        status: TaskStatus,
        position: int,
    ) -> Task:
        now = to_db_datetime(utc_now())
        row = Task(
            task_id=str(uuid4()),
            job_id=job_id,
            parent_id=parent_id,
            title=title,
            status=status.value,
            position=position,
            version=0,
            reordered_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        return row

    def update_task(self, session: Session, *, task: Task, **values: Any) -> Task:
        """Compare-and-swap write that advances the row version by exactly one."""

        loaded_version = task.version
        result = session.exec(
            sa_update(Task)
            .where(col(Task.task_id) == task.task_id, col(Task.version) == loaded_version)
            .values(
                version=loaded_version + 1,
                updated_at=to_db_datetime(utc_now()),
                **values,
            ),
        )
        if result.rowcount != 1:
            current = self.find_task(session, task.task_id)
            raise ConflictError(
                "Task has been modified by another user.",
                entity_type="task",
                entity_id=task.task_id,
                current_version=current.version if current is not None else None,
            )
        return self.get_task(session, task_id=task.task_id, include_deleted=True)

    def add_event(  # noqa: PLR0913
        self,
        session: Session,
        *,
        job_id: str,
        task_id: str | None,
        actor_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                job_id=job_id,
                task_id=task_id,
                actor_id=actor_id,
                event_type=event_type,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )

    def job_view(self, job_id: str) -> JobView:
        with Session(self.engine) as session:
            return to_job_view(self.get_job(session, job_id))

    def job_snapshot(self, job_id: str) -> JobSnapshot:
        """Fresh read of the job version and all of its live tasks."""

        with Session(self.engine) as session:
            job = self.get_job(session, job_id)
            rows = session.exec(
                select(Task)
                .where(Task.job_id == job_id, col(Task.deleted_at).is_(None))
                .order_by(col(Task.position).asc(), col(Task.task_id).asc()),
            ).all()
            return JobSnapshot(
                job_id=job.job_id,
                job_version=job.version,
                tasks=[to_task_view(row) for row in rows],
            )

    def task_view(self, task_id: str) -> TaskView:
        with Session(self.engine) as session:
            return to_task_view(self.get_task(session, task_id=task_id, include_deleted=True))

    def list_events(
        self,
        *,
        job_id: str | None = None,
        task_id: str | None = None,
        limit: int = 100,
    ) -> list[TaskEventView]:
        """Audit events, oldest first."""

        with Session(self.engine) as session:
            statement = select(TaskEvent)
            if job_id is not None:
                statement = statement.where(TaskEvent.job_id == job_id)
            if task_id is not None:
                statement = statement.where(TaskEvent.task_id == task_id)
            rows = session.exec(
                statement.order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc())
                .limit(limit),
            ).all()

        events: list[TaskEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    task_id=row.task_id,
                    actor_id=row.actor_id,
                    event_type=row.event_type,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events


def to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        title=row.title,
        version=row.version,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        job_id=row.job_id,
        parent_id=row.parent_id,
        title=row.title,
        status=TaskStatus(row.status),
        position=row.position,
        version=row.version,
        reordered_at=(
            to_utc_aware_datetime(row.reordered_at) if row.reordered_at is not None else None
        ),
        deleted_at=to_utc_aware_datetime(row.deleted_at) if row.deleted_at is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
