"""SQLModel ORM tables for jobs and their task trees."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    title: str
    version: int = Field(default=0, nullable=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_scope_position", "job_id", "parent_id", "position"),
    )

    task_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.task_id"), nullable=True, index=True),
    )
    title: str
    status: str = Field(default="new_task")
    position: int = Field(nullable=False)
    version: int = Field(default=0, nullable=False)
    reordered_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    deleted_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    actor_id: str
    event_type: str
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
