"""Restore even spacing across one sibling group."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from itertools import pairwise

from sqlmodel import Session

from jobtasks.ordering.errors import ValidationError
from jobtasks.ordering.guard import VersionBaseline
from jobtasks.ordering.models import (
    DEFAULT_SPACING,
    POSITION_CEILING,
    REBALANCE_CEILING,
    RebalanceResult,
)
from jobtasks.ordering.repository import TaskRepository
from jobtasks.storage.common import to_db_datetime, utc_now

logger = logging.getLogger(__name__)

REASON_PRECISION = "precision_exhausted"
REASON_SKEW = "skewed_distribution"
REASON_CEILING = "near_ceiling"


@dataclass(frozen=True, slots=True)
class RebalancePolicy:
    """Thresholds that decide when a sibling group has lost its headroom."""

    spacing: int = DEFAULT_SPACING
    min_gap: int = 2
    max_gap_ratio: int = 100
    ceiling: int = REBALANCE_CEILING


def rebalance_reasons(positions: Sequence[int], policy: RebalancePolicy) -> list[str]:
    """Heuristics over positions sorted in display order; empty means healthy."""

    reasons: list[str] = []
    gaps = [following - current for current, following in pairwise(positions)]
    if gaps:
        min_gap = min(gaps)
        max_gap = max(gaps)
        if min_gap < policy.min_gap:
            reasons.append(REASON_PRECISION)
        elif max_gap > min_gap * policy.max_gap_ratio:
            reasons.append(REASON_SKEW)
    if positions and positions[-1] > policy.ceiling:
        reasons.append(REASON_CEILING)
    return reasons


class RebalanceEngine:
    """Rewrites positions of one (job, parent) group to ``spacing * (index + 1)``."""

    def __init__(self, repository: TaskRepository, policy: RebalancePolicy | None = None) -> None:
        self.repository = repository
        self.policy = policy or RebalancePolicy()

    def rebalance_group(  # noqa: PLR0913
        self,
        session: Session,
        *,
        job_id: str,
        parent_id: str | None,
        actor: str,
        spacing: int | None = None,
        force: bool = False,
        baseline: VersionBaseline | None = None,
        exclude_task_id: str | None = None,
    ) -> RebalanceResult:
        """Rebalance inside the caller's transaction.

        Only rows whose position actually changes are written, so running it
        on an evenly spaced group performs no writes at all.

        ``exclude_task_id`` leaves out a task that is about to be placed anyway.
        """

        effective_spacing = self.policy.spacing if spacing is None else spacing
        siblings = self.repository.list_siblings(
            session,
            job_id=job_id,
            parent_id=parent_id,
            exclude_task_id=exclude_task_id,
        )
        _validate_spacing(effective_spacing, count=len(siblings))

        reasons = rebalance_reasons([row.position for row in siblings], self.policy)
        if not reasons and not force:
            return RebalanceResult(
                job_id=job_id,
                parent_id=parent_id,
                rebalanced=False,
                count=len(siblings),
                updated=0,
            )

        now = to_db_datetime(utc_now())
        updated = 0
        for index, row in enumerate(siblings):
            target = effective_spacing * (index + 1)
            if row.position == target:
                continue
            if baseline is not None:
                baseline.observe(row.task_id, row.version)
            self.repository.update_task(session, task=row, position=target, reordered_at=now)
            updated += 1

        if updated:
            self.repository.add_event(
                session,
                job_id=job_id,
                task_id=None,
                actor_id=actor,
                event_type="rebalanced",
                details={
                    "parent_id": parent_id,
                    "spacing": effective_spacing,
                    "count": len(siblings),
                    "updated": updated,
                    "reasons": reasons or ["forced"],
                },
            )
            logger.info(
                "Rebalanced job=%s parent=%s: %d of %d tasks rewritten (%s)",
                job_id,
                parent_id,
                updated,
                len(siblings),
                ",".join(reasons or ["forced"]),
            )
        return RebalanceResult(
            job_id=job_id,
            parent_id=parent_id,
            rebalanced=updated > 0,
            count=len(siblings),
            updated=updated,
            reasons=reasons,
        )


def _validate_spacing(spacing: int, *, count: int) -> None:
    if isinstance(spacing, bool) or not isinstance(spacing, int) or spacing <= 0:
        raise ValidationError(
            f"Spacing must be a positive integer, got {spacing!r}.",
            field="spacing",
        )
    if spacing * count > POSITION_CEILING:
        raise ValidationError(
            f"Spacing {spacing} cannot fit {count} tasks below {POSITION_CEILING}.",
            field="spacing",
        )
