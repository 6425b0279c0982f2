from __future__ import annotations

"""
Milestone ordering for project timelines.

Positions are zero-based and dense within a project: N milestones occupy
exactly positions 0..N-1. Planning (`plan_reorder`, `plan_compaction`) is pure
so it can be tested without a database; `MilestoneSequencer` reads the
current order from a store, applies a plan inside one store transaction, and
writes only the positions that actually changed.
"""

import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Protocol, Sequence

logger = logging.getLogger(__name__)


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class MilestonePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


OVERDUE_STATUS = "overdue"


class MilestoneNotFoundError(LookupError):
    """Raised when a milestone id is not part of the project's milestone set."""


class MilestoneOrderError(ValueError):
    """Raised when a reorder request cannot be applied as given."""


class MilestoneScheduleError(ValueError):
    """Raised when a milestone would end before it starts."""


@dataclass(frozen=True, slots=True)
class MilestoneSlot:
    """The part of a milestone the sequencer cares about."""

    id: str
    position: int


@dataclass(slots=True)
class ReorderPlan:
    """
    Result of planning a move.

    Attributes:
        ordering: Milestone ids in their new display order.
        updates: milestone id -> new position, only for changed milestones.
    """

    ordering: List[str]
    updates: Dict[str, int] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not self.updates


class MilestoneStore(Protocol):
    """Persistence operations the sequencer needs."""

    def atomic(self) -> AbstractContextManager[Any]:
        """Commit everything done inside the block together, or nothing."""
        ...

    def list_milestones(self, project_id: str) -> List[MilestoneSlot]:
        """Return the project's milestones ordered by position, locking the set."""
        ...

    def set_position(self, milestone_id: str, position: int) -> None:
        ...

    def insert_milestone(self, project_id: str, values: Mapping[str, Any], position: int) -> Any:
        ...

    def delete_milestone(self, milestone_id: str) -> None:
        ...

    def record_reorder(
        self, project_id: str, moved_id: str, target_index: int, updates: Mapping[str, int]
    ) -> None:
        """Record the move alongside the position writes it produced."""
        ...


def _assign_positions(ordering: Sequence[str], current: Mapping[str, int]) -> Dict[str, int]:
    return {
        milestone_id: index
        for index, milestone_id in enumerate(ordering)
        if current.get(milestone_id) != index
    }


def plan_reorder(milestones: Sequence[MilestoneSlot], moved_id: str, target_index: int) -> ReorderPlan:
    """
    Plan a single drag-and-drop move.

    `milestones` must already be sorted by position. The moved milestone is
    removed from its index and reinserted at `target_index`; every milestone
    then takes its list index as position. Positions that were already correct
    produce no update, so planning the same move twice yields an empty second
    plan.
    """
    ordering = [slot.id for slot in milestones]
    try:
        current_index = ordering.index(moved_id)
    except ValueError as exc:
        raise MilestoneNotFoundError(f"Milestone '{moved_id}' not found in project") from exc

    if not 0 <= target_index < len(ordering):
        raise MilestoneOrderError(
            f"Target index {target_index} is out of range for {len(ordering)} milestones"
        )

    if target_index != current_index:
        ordering.pop(current_index)
        ordering.insert(target_index, moved_id)

    current = {slot.id: slot.position for slot in milestones}
    return ReorderPlan(ordering=ordering, updates=_assign_positions(ordering, current))


def plan_compaction(milestones: Sequence[MilestoneSlot]) -> ReorderPlan:
    """Plan the writes that close gaps left in an ordered milestone list."""
    ordering = [slot.id for slot in milestones]
    current = {slot.id: slot.position for slot in milestones}
    return ReorderPlan(ordering=ordering, updates=_assign_positions(ordering, current))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_schedule(start_date: datetime | None, end_date: datetime | None) -> None:
    if start_date is None or end_date is None:
        return
    if _as_utc(end_date) < _as_utc(start_date):
        raise MilestoneScheduleError("Milestone end date must not be before its start date")


def derive_display_status(status: str, end_date: datetime | None, now: datetime | None = None) -> str:
    """
    Return the status shown to readers.

    Overdue is never stored: a milestone reads as overdue when it is not
    completed and its end date has passed. Naive timestamps are treated as UTC.
    """
    if status == MilestoneStatus.COMPLETED.value or end_date is None:
        return status

    reference = _as_utc(now or datetime.now(timezone.utc))
    if reference > _as_utc(end_date):
        return OVERDUE_STATUS
    return status


class MilestoneSequencer:
    """Applies ordering plans to a MilestoneStore atomically."""

    def __init__(self, store: MilestoneStore):
        self._store = store

    def reorder(self, project_id: str, moved_id: str, target_index: int) -> ReorderPlan:
        with self._store.atomic():
            milestones = self._store.list_milestones(project_id)
            plan = plan_reorder(milestones, moved_id, target_index)
            for milestone_id, position in plan.updates.items():
                self._store.set_position(milestone_id, position)
            if not plan.is_noop:
                self._store.record_reorder(project_id, moved_id, target_index, plan.updates)

        logger.info(
            {
                "event": "milestones_reordered",
                "project_id": project_id,
                "moved_id": moved_id,
                "target_index": target_index,
                "writes": len(plan.updates),
            }
        )
        return plan

    def append(self, project_id: str, values: Mapping[str, Any]) -> Any:
        """Insert a milestone at the end of the project's order."""
        with self._store.atomic():
            position = len(self._store.list_milestones(project_id))
            record = self._store.insert_milestone(project_id, values, position)

        logger.info({"event": "milestone_appended", "project_id": project_id, "position": position})
        return record

    def remove(self, project_id: str, milestone_id: str) -> ReorderPlan:
        """Delete a milestone and close the gap it leaves."""
        with self._store.atomic():
            milestones = self._store.list_milestones(project_id)
            if not any(slot.id == milestone_id for slot in milestones):
                raise MilestoneNotFoundError(f"Milestone '{milestone_id}' not found in project")

            self._store.delete_milestone(milestone_id)
            remaining = [slot for slot in milestones if slot.id != milestone_id]
            plan = plan_compaction(remaining)
            for remaining_id, position in plan.updates.items():
                self._store.set_position(remaining_id, position)

        logger.info(
            {
                "event": "milestone_removed",
                "project_id": project_id,
                "milestone_id": milestone_id,
                "writes": len(plan.updates),
            }
        )
        return plan
