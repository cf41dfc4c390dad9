from __future__ import annotations

import allure
import pytest

from jobtasks.ordering.allocator import PositionAllocator
from jobtasks.ordering.errors import PlacementError, PositionsExhaustedError, ValidationError
from jobtasks.ordering.models import POSITION_CEILING, PlacementRequest, SiblingPosition

pytestmark = [
    allure.epic("Task Ordering"),
    allure.feature("Position Allocation"),
]


def _group(*positions: int) -> list[SiblingPosition]:
    return [
        SiblingPosition(task_id=f"t{index}", position=position)
        for index, position in enumerate(positions, start=1)
    ]


def test_empty_group_uses_spacing_for_any_edge() -> None:
    allocator = PositionAllocator()

    assert allocator.allocate([], PlacementRequest.top()) == 10_000
    assert allocator.allocate([], PlacementRequest.bottom()) == 10_000


def test_after_takes_integer_midpoint_to_next_sibling() -> None:
    allocator = PositionAllocator()

    assert allocator.allocate(_group(100, 110), PlacementRequest.after("t1")) == 105
    assert allocator.allocate(_group(100, 103), PlacementRequest.after("t1")) == 101


def test_after_adjacent_positions_signals_exhaustion() -> None:
    allocator = PositionAllocator()

    with pytest.raises(PositionsExhaustedError):
        allocator.allocate(_group(100, 101), PlacementRequest.after("t1"))


def test_after_last_sibling_appends_one_spacing() -> None:
    allocator = PositionAllocator()

    assert allocator.allocate(_group(10_000, 20_000), PlacementRequest.after("t2")) == 30_000


def test_before_first_sibling_goes_to_top() -> None:
    allocator = PositionAllocator()

    assert allocator.allocate(_group(30_000, 40_000), PlacementRequest.before("t1")) == 20_000


def test_before_middle_sibling_lands_between_neighbors() -> None:
    allocator = PositionAllocator()

    assert allocator.allocate(_group(10_000, 20_000), PlacementRequest.before("t2")) == 15_000


def test_top_uses_half_of_remaining_room_when_less_than_spacing() -> None:
    allocator = PositionAllocator()

    assert allocator.allocate(_group(5_000), PlacementRequest.top()) == 2_500
    assert allocator.allocate(_group(3), PlacementRequest.top()) == 1


def test_top_without_room_signals_exhaustion() -> None:
    allocator = PositionAllocator()

    with pytest.raises(PositionsExhaustedError):
        allocator.allocate(_group(1, 2), PlacementRequest.top())


def test_bottom_past_ceiling_signals_exhaustion() -> None:
    allocator = PositionAllocator()

    with pytest.raises(PositionsExhaustedError):
        allocator.allocate(_group(POSITION_CEILING - 5), PlacementRequest.bottom())


def test_neighbor_outside_group_is_placement_error() -> None:
    allocator = PositionAllocator()

    with pytest.raises(PlacementError) as error:
        allocator.allocate(_group(10, 20), PlacementRequest.after("elsewhere"))

    assert isinstance(error.value, ValidationError)
    assert error.value.neighbor_id == "elsewhere"


@pytest.mark.parametrize("position", [0, -5, POSITION_CEILING + 1])
def test_absolute_position_outside_range_is_rejected(position: int) -> None:
    allocator = PositionAllocator()

    with pytest.raises(ValidationError, match="outside"):
        allocator.allocate([], PlacementRequest.absolute(position))


def test_absolute_position_is_trusted_even_when_it_collides() -> None:
    allocator = PositionAllocator()

    assert allocator.allocate(_group(500), PlacementRequest.absolute(500)) == 500


def test_non_integer_position_is_rejected() -> None:
    allocator = PositionAllocator()

    with pytest.raises(ValidationError, match="integer"):
        allocator.validate_position(True)


def test_custom_spacing_is_honoured() -> None:
    allocator = PositionAllocator(spacing=10)

    assert allocator.allocate([], PlacementRequest.bottom()) == 10
    assert allocator.allocate(_group(10), PlacementRequest.bottom()) == 20
