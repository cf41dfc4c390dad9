"""Optimistic version checks for tasks and jobs."""

from __future__ import annotations

import logging

from jobtasks.ordering.errors import ConflictError

logger = logging.getLogger(__name__)


def check_version(
    *,
    entity_type: str,
    entity_id: str,
    current_version: int,
    expected_version: int | None,
) -> None:
    """Reject the mutation when the caller's expected version is stale.

    ``expected_version=None`` means the caller opted out of version checking.
    Versions are never advanced here, only by the write that follows.
    """

    if expected_version is None or expected_version == current_version:
        return
    logger.warning(
        "Stale %s version rejected: id=%s expected=%s current=%s",
        entity_type,
        entity_id,
        expected_version,
        current_version,
    )
    raise ConflictError(
        f"{entity_type.capitalize()} has been modified by another user.",
        entity_type=entity_type,
        entity_id=entity_id,
        current_version=current_version,
    )


class VersionBaseline:
    """Versions as first seen by one transaction.

    A batch may itself bump a task (for example through an in-transaction
    rebalance) before the directive naming that task runs; expected versions
    are therefore compared with the version the batch first observed.
    """

    def __init__(self) -> None:
        self._versions: dict[str, int] = {}

    def observe(self, task_id: str, version: int) -> int:
        return self._versions.setdefault(task_id, version)

    def check(self, *, task_id: str, current_version: int, expected_version: int | None) -> None:
        check_version(
            entity_type="task",
            entity_id=task_id,
            current_version=self.observe(task_id, current_version),
            expected_version=expected_version,
        )
