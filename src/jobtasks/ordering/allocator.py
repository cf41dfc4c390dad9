"""Sparse integer position allocation inside one sibling group."""

from __future__ import annotations

from collections.abc import Sequence

from jobtasks.ordering.errors import PlacementError, PositionsExhaustedError, ValidationError
from jobtasks.ordering.models import (
    DEFAULT_SPACING,
    POSITION_CEILING,
    POSITION_FLOOR,
    PlacementKind,
    PlacementRequest,
    SiblingPosition,
)


class PositionAllocator:
    """Turn a placement request into a concrete position.

    ``siblings`` must be the live members of the target group, ordered by
    ``(position, task_id)``, and must not contain the task being placed.
    The allocator never touches storage: on failure nothing has changed.
    """

    def __init__(
        self,
        *,
        spacing: int = DEFAULT_SPACING,
        floor: int = POSITION_FLOOR,
        ceiling: int = POSITION_CEILING,
    ) -> None:
        if spacing <= 0:
            raise ValueError("spacing must be > 0")
        if floor >= ceiling:
            raise ValueError("floor must be below ceiling")
        self.spacing = spacing
        self.floor = floor
        self.ceiling = ceiling

    def allocate(self, siblings: Sequence[SiblingPosition], request: PlacementRequest) -> int:
        if request.kind is PlacementKind.ABSOLUTE:
            return self._absolute(request)
        if request.kind is PlacementKind.TOP:
            return self._top(siblings)
        if request.kind is PlacementKind.BOTTOM:
            return self._bottom(siblings)

        index = self._index_of(siblings, request.neighbor_id)
        if request.kind is PlacementKind.BEFORE:
            if index == 0:
                return self._top(siblings)
            return self._after_index(siblings, index - 1)
        return self._after_index(siblings, index)

    def validate_position(self, position: int) -> int:
        if isinstance(position, bool) or not isinstance(position, int):
            raise ValidationError(
                f"Position must be an integer, got {position!r}.",
                field="position",
            )
        if position < self.floor or position > self.ceiling:
            raise ValidationError(
                f"Position {position} is outside [{self.floor}, {self.ceiling}].",
                field="position",
            )
        return position

    def _absolute(self, request: PlacementRequest) -> int:
        if request.position is None:
            raise ValidationError("Absolute placement requires a position.", field="position")
        return self.validate_position(request.position)

    def _top(self, siblings: Sequence[SiblingPosition]) -> int:
        if not siblings:
            return self.spacing
        lowest = siblings[0].position
        candidate = lowest - self.spacing
        if candidate >= self.floor:
            return candidate
        # Not a full spacing left below the first sibling; take half of what remains.
        candidate = (self.floor - 1 + lowest) // 2
        if self.floor <= candidate < lowest:
            return candidate
        raise PositionsExhaustedError("No room left above the first sibling.")

    def _bottom(self, siblings: Sequence[SiblingPosition]) -> int:
        if not siblings:
            return self.spacing
        candidate = siblings[-1].position + self.spacing
        if candidate > self.ceiling:
            raise PositionsExhaustedError("Positions reached the ceiling below the last sibling.")
        return candidate

    def _after_index(self, siblings: Sequence[SiblingPosition], index: int) -> int:
        current = siblings[index].position
        if index + 1 >= len(siblings):
            candidate = current + self.spacing
            if candidate > self.ceiling:
                raise PositionsExhaustedError(
                    "Positions reached the ceiling below the last sibling.",
                )
            return candidate
        following = siblings[index + 1].position
        if following - current <= 1:
            raise PositionsExhaustedError(
                f"No room between positions {current} and {following}.",
            )
        return current + (following - current) // 2

    @staticmethod
    def _index_of(siblings: Sequence[SiblingPosition], neighbor_id: str | None) -> int:
        if neighbor_id is None:
            raise ValidationError("Relative placement requires a neighbor.", field="neighbor_id")
        for index, sibling in enumerate(siblings):
            if sibling.task_id == neighbor_id:
                return index
        raise PlacementError(
            f"Task {neighbor_id} is not a member of the target sibling group.",
            neighbor_id=neighbor_id,
        )
