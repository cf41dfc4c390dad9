"""CLI entrypoint for jobtasks."""

import json
from collections.abc import Callable
from pathlib import Path
from typing import TextIO

import rich_click as click

from jobtasks import __version__
from jobtasks.config import Settings
from jobtasks.logging_setup import setup_logging
from jobtasks.ordering.controllers import (
    JobCreateCommand,
    JobShowCommand,
    OrderingCliController,
    TaskAddCommand,
    TaskBatchCommand,
    TaskDeleteCommand,
    TaskHistoryCommand,
    TaskMoveCommand,
    TaskRebalanceCommand,
    TaskUpdateCommand,
)
from jobtasks.ordering.errors import TaskOrderingError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrderingCliController()

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
json_option = click.option(
    "--json",
    "as_json",
    is_flag=True,
    default=False,
    help="Print the JSON payload instead of text.",
)
actor_option = click.option(
    "--actor",
    default=None,
    help="Acting user id recorded in history. Defaults to JOBTASKS_ACTOR_ID.",
)
expected_version_option = click.option(
    "--expected-version",
    type=click.IntRange(min=0),
    default=None,
    help="Reject the change unless the task is still at this version.",
)


@click.group()
@click.version_option(version=__version__, prog_name="jobtasks")
def jobtasks() -> None:
    """Ordered, hierarchical job tasks with optimistic versioning."""

    try:
        settings = Settings.from_env()
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    setup_logging(settings.log_level)


@jobtasks.group()
def jobs() -> None:
    """Job commands."""


@jobs.command("create")
@db_path_option
@click.argument("title")
@actor_option
@json_option
def jobs_create(db_path: Path | None, title: str, actor: str | None, as_json: bool) -> None:
    """Create a job."""

    _emit_result(
        lambda: CONTROLLER.create_job(
            JobCreateCommand(db_path=db_path, title=title, actor=actor, as_json=as_json),
        ),
    )


@jobs.command("show")
@db_path_option
@click.argument("job_id")
@json_option
def jobs_show(db_path: Path | None, job_id: str, as_json: bool) -> None:
    """Show a job and its current version."""

    _emit_result(
        lambda: CONTROLLER.show_job(
            JobShowCommand(db_path=db_path, job_id=job_id, as_json=as_json),
        ),
    )


@jobtasks.group()
def tasks() -> None:
    """Task commands."""


@tasks.command("add")
@db_path_option
@click.argument("job_id")
@click.argument("title")
@click.option("--parent-id", default=None, help="Create the task under this parent.")
@click.option(
    "--position",
    type=click.IntRange(min=1),
    default=None,
    help="Absolute position to store as-is.",
)
@click.option("--after", "after_id", default=None, help="Place right after this sibling.")
@click.option("--before", "before_id", default=None, help="Place right before this sibling.")
@click.option("--top", is_flag=True, default=False, help="Place first in its group.")
@click.option(
    "--status",
    type=click.Choice(
        ["new_task", "in_progress", "paused", "successfully_completed", "cancelled"],
    ),
    default=None,
    help="Initial status (default new_task).",
)
@actor_option
@json_option
def tasks_add(  # noqa: PLR0913
    db_path: Path | None,
    job_id: str,
    title: str,
    parent_id: str | None,
    position: int | None,
    after_id: str | None,
    before_id: str | None,
    top: bool,
    status: str | None,
    actor: str | None,
    as_json: bool,
) -> None:
    """Add a task; it goes to the bottom of its group unless placed explicitly."""

    _emit_result(
        lambda: CONTROLLER.add_task(
            TaskAddCommand(
                db_path=db_path,
                job_id=job_id,
                title=title,
                parent_id=parent_id,
                position=position,
                after_id=after_id,
                before_id=before_id,
                top=top,
                status=status,
                actor=actor,
                as_json=as_json,
            ),
        ),
    )


@tasks.command("list")
@db_path_option
@click.argument("job_id")
@json_option
def tasks_list(db_path: Path | None, job_id: str, as_json: bool) -> None:
    """Print the job's live tasks as an indented tree."""

    _emit_result(
        lambda: CONTROLLER.list_tasks(
            JobShowCommand(db_path=db_path, job_id=job_id, as_json=as_json),
        ),
    )


@tasks.command("move")
@db_path_option
@click.argument("task_id")
@click.option(
    "--position",
    type=click.IntRange(min=1),
    default=None,
    help="Absolute position to store as-is.",
)
@click.option("--after", "after_id", default=None, help="Place right after this sibling.")
@click.option("--before", "before_id", default=None, help="Place right before this sibling.")
@click.option("--top", is_flag=True, default=False, help="Move to the top of the group.")
@click.option("--bottom", is_flag=True, default=False, help="Move to the bottom of the group.")
@click.option("--parent-id", default=None, help="Move under this parent.")
@click.option("--to-root", is_flag=True, default=False, help="Detach from the current parent.")
@expected_version_option
@actor_option
@json_option
def tasks_move(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    position: int | None,
    after_id: str | None,
    before_id: str | None,
    top: bool,
    bottom: bool,
    parent_id: str | None,
    to_root: bool,
    expected_version: int | None,
    actor: str | None,
    as_json: bool,
) -> None:
    """Move one task inside its group or under another parent."""

    _emit_result(
        lambda: CONTROLLER.move_task(
            TaskMoveCommand(
                db_path=db_path,
                task_id=task_id,
                position=position,
                after_id=after_id,
                before_id=before_id,
                top=top,
                bottom=bottom,
                parent_id=parent_id,
                to_root=to_root,
                expected_version=expected_version,
                actor=actor,
                as_json=as_json,
            ),
        ),
    )


@tasks.command("update")
@db_path_option
@click.argument("task_id")
@click.option("--title", default=None, help="New title.")
@click.option(
    "--status",
    type=click.Choice(
        ["new_task", "in_progress", "paused", "successfully_completed", "cancelled"],
    ),
    default=None,
    help="New status.",
)
@expected_version_option
@actor_option
@json_option
def tasks_update(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    title: str | None,
    status: str | None,
    expected_version: int | None,
    actor: str | None,
    as_json: bool,
) -> None:
    """Change a task's title or status."""

    _emit_result(
        lambda: CONTROLLER.update_task(
            TaskUpdateCommand(
                db_path=db_path,
                task_id=task_id,
                title=title,
                status=status,
                expected_version=expected_version,
                actor=actor,
                as_json=as_json,
            ),
        ),
    )


@tasks.command("delete")
@db_path_option
@click.argument("task_id")
@expected_version_option
@actor_option
@json_option
def tasks_delete(
    db_path: Path | None,
    task_id: str,
    expected_version: int | None,
    actor: str | None,
    as_json: bool,
) -> None:
    """Soft-delete a task without live subtasks."""

    _emit_result(
        lambda: CONTROLLER.delete_task(
            TaskDeleteCommand(
                db_path=db_path,
                task_id=task_id,
                expected_version=expected_version,
                actor=actor,
                as_json=as_json,
            ),
        ),
    )


@tasks.command("history")
@db_path_option
@click.argument("task_id", required=False)
@click.option("--job-id", default=None, help="Show the whole job's history instead.")
@json_option
def tasks_history(
    db_path: Path | None,
    task_id: str | None,
    job_id: str | None,
    as_json: bool,
) -> None:
    """Show the audit trail of a task or a job."""

    _emit_result(
        lambda: CONTROLLER.history(
            TaskHistoryCommand(db_path=db_path, task_id=task_id, job_id=job_id, as_json=as_json),
        ),
    )


@tasks.command("batch")
@db_path_option
@click.argument("job_id")
@click.argument("document", type=click.File("r", encoding="utf-8"))
@actor_option
@json_option
def tasks_batch(
    db_path: Path | None,
    job_id: str,
    document: TextIO,
    actor: str | None,
    as_json: bool,
) -> None:
    """Apply a batch reorder from a JSON file (`-` reads stdin), all or nothing.

    ```json
    {"mode": "relative", "job_version": 3,
     "items": [{"id": "...", "after_id": "..."}, {"id": "...", "position": "first"}]}
    ```
    """

    text = document.read()
    _emit_result(
        lambda: CONTROLLER.batch(
            TaskBatchCommand(
                db_path=db_path,
                job_id=job_id,
                document=text,
                actor=actor,
                as_json=as_json,
            ),
        ),
    )


@tasks.command("rebalance")
@db_path_option
@click.argument("job_id")
@click.option("--parent-id", default=None, help="Sibling group parent; root group if omitted.")
@click.option(
    "--spacing",
    type=click.IntRange(min=1),
    default=None,
    help="Gap between rewritten positions (default JOBTASKS_POSITION_SPACING).",
)
@click.option("--force", is_flag=True, default=False, help="Rebalance even if healthy.")
@click.option(
    "--all-groups",
    is_flag=True,
    default=False,
    help="Rebalance every sibling group of the job.",
)
@actor_option
@json_option
def tasks_rebalance(  # noqa: PLR0913
    db_path: Path | None,
    job_id: str,
    parent_id: str | None,
    spacing: int | None,
    force: bool,
    all_groups: bool,
    actor: str | None,
    as_json: bool,
) -> None:
    """Rewrite sibling positions to even multiples of the spacing."""

    _emit_result(
        lambda: CONTROLLER.rebalance(
            TaskRebalanceCommand(
                db_path=db_path,
                job_id=job_id,
                parent_id=parent_id,
                spacing=spacing,
                force=force,
                all_groups=all_groups,
                actor=actor,
                as_json=as_json,
            ),
        ),
    )


def _emit_result(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except TaskOrderingError as error:
        click.echo(json.dumps(error.to_payload(), indent=2, ensure_ascii=False))
        raise click.ClickException(error.message) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    jobtasks()
