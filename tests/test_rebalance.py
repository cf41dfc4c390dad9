from __future__ import annotations

import allure
import pytest

from conftest import ACTOR, positions_by_id, seed_tasks, versions_by_id
from jobtasks.ordering.errors import NotFoundError, ValidationError
from jobtasks.ordering.rebalance import (
    REASON_CEILING,
    REASON_PRECISION,
    REASON_SKEW,
    RebalancePolicy,
    rebalance_reasons,
)
from jobtasks.ordering.services import TaskOrderingService

pytestmark = [
    allure.epic("Task Ordering"),
    allure.feature("Rebalancing"),
]


@pytest.mark.parametrize(
    ("positions", "expected"),
    [
        ([], []),
        ([10_000], []),
        ([10_000, 20_000, 30_000], []),
        ([10, 11, 5_000], [REASON_PRECISION]),
        ([10, 20, 5_000], [REASON_SKEW]),
        ([10, 20, 1_010], []),
        ([2_000_000_001], [REASON_CEILING]),
        ([10, 20, 2_000_000_100], [REASON_SKEW, REASON_CEILING]),
    ],
)
def test_rebalance_heuristics(positions: list[int], expected: list[str]) -> None:
    assert rebalance_reasons(positions, RebalancePolicy()) == expected


def test_rebalance_rewrites_group_in_display_order(
    service: TaskOrderingService,
    job_id: str,
) -> None:
    first, second, third, fourth = seed_tasks(service, job_id, [3, 3_000_000, 3_000_001, 5])
    job_version = service.snapshot(job_id).job_version

    result = service.rebalance(job_id=job_id, actor=ACTOR, spacing=10)

    assert result.rebalanced is True
    assert result.count == 4
    assert result.updated == 4
    assert REASON_PRECISION in result.reasons
    assert positions_by_id(service, job_id) == {
        first.task_id: 10,
        fourth.task_id: 20,
        second.task_id: 30,
        third.task_id: 40,
    }
    assert service.snapshot(job_id).job_version == job_version + 1


def test_rebalance_of_even_group_is_a_no_op(
    service: TaskOrderingService,
    job_id: str,
) -> None:
    seed_tasks(service, job_id, [3, 3_000_000, 3_000_001, 5])
    service.rebalance(job_id=job_id, actor=ACTOR, spacing=10)
    before_positions = positions_by_id(service, job_id)
    before_versions = versions_by_id(service, job_id)
    job_version = service.snapshot(job_id).job_version

    result = service.rebalance(job_id=job_id, actor=ACTOR, spacing=10, force=True)

    assert result.rebalanced is False
    assert result.updated == 0
    assert positions_by_id(service, job_id) == before_positions
    assert versions_by_id(service, job_id) == before_versions
    assert service.snapshot(job_id).job_version == job_version


def test_healthy_group_is_left_alone_unless_forced(
    service: TaskOrderingService,
    job_id: str,
) -> None:
    tasks = seed_tasks(service, job_id, [10_000, 20_500, 30_000])

    result = service.rebalance(job_id=job_id, actor=ACTOR)

    assert result.rebalanced is False
    assert result.reasons == []
    assert positions_by_id(service, job_id)[tasks[1].task_id] == 20_500

    forced = service.rebalance(job_id=job_id, actor=ACTOR, force=True)

    assert forced.rebalanced is True
    assert forced.updated == 1
    assert positions_by_id(service, job_id)[tasks[1].task_id] == 20_000


def test_rebalance_touches_only_the_requested_group(
    service: TaskOrderingService,
    job_id: str,
) -> None:
    parent, sibling = seed_tasks(service, job_id, [1, 2])
    children = seed_tasks(service, job_id, [7, 8], parent_id=parent.task_id, prefix="Child")

    result = service.rebalance(job_id=job_id, actor=ACTOR, parent_id=parent.task_id)

    positions = positions_by_id(service, job_id)
    assert result.parent_id == parent.task_id
    assert [positions[child.task_id] for child in children] == [10_000, 20_000]
    assert positions[parent.task_id] == 1
    assert positions[sibling.task_id] == 2


def test_rebalance_all_runs_every_group(
    service: TaskOrderingService,
    job_id: str,
) -> None:
    parent, _ = seed_tasks(service, job_id, [1, 2])
    seed_tasks(service, job_id, [7, 8], parent_id=parent.task_id, prefix="Child")

    results = service.rebalance_all(job_id=job_id, actor=ACTOR)

    assert [result.parent_id for result in results] == [None, parent.task_id]
    assert all(result.rebalanced for result in results)
    assert sorted(positions_by_id(service, job_id).values()) == [10_000, 10_000, 20_000, 20_000]


@pytest.mark.parametrize("spacing", [0, -10, 1_500_000_000])
def test_rebalance_rejects_unusable_spacing(
    service: TaskOrderingService,
    job_id: str,
    spacing: int,
) -> None:
    seed_tasks(service, job_id, [1, 2])

    with pytest.raises(ValidationError, match="[Ss]pacing"):
        service.rebalance(job_id=job_id, actor=ACTOR, spacing=spacing, force=True)


def test_rebalance_unknown_parent_is_not_found(
    service: TaskOrderingService,
    job_id: str,
) -> None:
    with pytest.raises(NotFoundError) as error:
        service.rebalance(job_id=job_id, actor=ACTOR, parent_id="missing")

    assert error.value.entity_type == "parent"


def test_rebalance_records_history_event(
    service: TaskOrderingService,
    job_id: str,
) -> None:
    seed_tasks(service, job_id, [1, 2])

    service.rebalance(job_id=job_id, actor="planner")

    events = [
        event for event in service.history(job_id=job_id) if event.event_type == "rebalanced"
    ]
    assert len(events) == 1
    assert events[0].actor_id == "planner"
    assert events[0].details["updated"] == 2
