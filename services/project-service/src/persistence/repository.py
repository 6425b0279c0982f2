"""Project, expense and milestone data access helpers."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from expense_ledger import ExpenseNotFoundError, compute_total, ensure_can_approve, to_money
from milestone_sequencer import MilestoneNotFoundError, MilestoneSlot, validate_schedule
from persistence.models import AuditEvent, Expense, Milestone, Project


class ProjectNotFoundError(LookupError):
    """Raised when a project id does not exist."""


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _plain(value: Any) -> Any:
    """Convert enum members to their values for storage."""
    if isinstance(value, Enum):
        return value.value
    return value


class _AuditMixin:
    _db: Session
    _actor_id: str | None
    _source_ip: str | None

    def _record_event(
        self,
        *,
        entity_type: str,
        entity_id: str,
        project_id: str | None,
        action: str,
        details: dict[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> None:
        event = AuditEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            project_id=project_id,
            action=action,
            actor_id=actor_id or self._actor_id,
            source_ip=self._source_ip,
            details=details,
        )
        self._db.add(event)


class ProjectRepository(_AuditMixin):
    """Thin repository that encapsulates project persistence."""

    def __init__(self, db: Session, *, actor_id: str | None = None, source_ip: str | None = None):
        self._db = db
        self._actor_id = actor_id
        self._source_ip = source_ip

    def create_project(self, values: Mapping[str, Any]) -> Project:
        record = Project(**{key: _plain(value) for key, value in values.items()})
        if record.status is None:
            record.status = ProjectStatus.ACTIVE.value
        self._db.add(record)
        self._db.flush()
        self._record_event(
            entity_type="project",
            entity_id=record.id,
            project_id=record.id,
            action="project_created",
            details={"name": record.name},
        )
        self._db.commit()
        self._db.refresh(record)
        return record

    def list_projects(self) -> list[Project]:
        return list(self._db.scalars(select(Project).order_by(Project.created_at, Project.id)))

    def get_project(self, project_id: str) -> Project | None:
        return self._db.get(Project, project_id)

    def require_project(self, project_id: str) -> Project:
        project = self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project '{project_id}' not found")
        return project


class ExpenseRepository(_AuditMixin):
    """Expense ledger persistence; every mutation writes an audit event."""

    def __init__(self, db: Session, *, actor_id: str | None = None, source_ip: str | None = None):
        self._db = db
        self._actor_id = actor_id
        self._source_ip = source_ip

    def create_expense(
        self,
        project_id: str,
        values: Mapping[str, Any],
        *,
        submitted_by: str,
        details: dict[str, Any] | None = None,
    ) -> Expense:
        ProjectRepository(self._db).require_project(project_id)

        amount = to_money(values["amount"])
        tax_amount = to_money(values.get("tax_amount"))
        record = Expense(
            project_id=project_id,
            category=_plain(values.get("category")) or "other",
            description=values["description"],
            vendor=values.get("vendor"),
            amount=amount,
            tax_amount=tax_amount,
            total_amount=compute_total(amount, tax_amount),
            date_incurred=values.get("date_incurred") or _utcnow(),
            submitted_by=submitted_by,
        )
        self._db.add(record)
        self._db.flush()
        self._record_event(
            entity_type="expense",
            entity_id=record.id,
            project_id=project_id,
            action="expense_created",
            details={"category": record.category, "total_amount": str(record.total_amount), **(details or {})},
            actor_id=submitted_by,
        )
        self._db.commit()
        self._db.refresh(record)
        return record

    def list_for_project(self, project_id: str) -> list[Expense]:
        ProjectRepository(self._db).require_project(project_id)
        statement = (
            select(Expense)
            .where(Expense.project_id == project_id)
            .order_by(Expense.created_at, Expense.id)
        )
        return list(self._db.scalars(statement))

    def get_expense(self, expense_id: str) -> Expense | None:
        return self._db.get(Expense, expense_id)

    def require_expense(self, expense_id: str) -> Expense:
        expense = self.get_expense(expense_id)
        if expense is None:
            raise ExpenseNotFoundError(f"Expense '{expense_id}' not found")
        return expense

    def update_expense(self, expense: Expense, changes: Mapping[str, Any]) -> Expense:
        """Apply a partial update; the total is recomputed from amount and tax."""
        previous_category = expense.category
        for key, value in changes.items():
            if key in ("amount", "tax_amount"):
                value = to_money(value)
            setattr(expense, key, _plain(value))
        expense.total_amount = compute_total(expense.amount, expense.tax_amount)

        self._db.add(expense)
        details: dict[str, Any] = {"fields": sorted(changes.keys())}
        if expense.category != previous_category:
            details["category_change"] = {"from": previous_category, "to": expense.category}
        self._record_event(
            entity_type="expense",
            entity_id=expense.id,
            project_id=expense.project_id,
            action="expense_updated",
            details=details,
        )
        self._db.commit()
        self._db.refresh(expense)
        return expense

    def approve_expense(self, expense_id: str, approver_id: str, *, now: datetime | None = None) -> Expense:
        """
        Approve an expense exactly once.

        The expense row is locked for the check-and-set, so two concurrent
        approvals cannot both succeed. A rejected attempt writes nothing.
        """
        statement = select(Expense).where(Expense.id == expense_id).with_for_update()
        expense = self._db.scalars(statement).one_or_none()
        if expense is None:
            self._db.rollback()
            raise ExpenseNotFoundError(f"Expense '{expense_id}' not found")

        try:
            ensure_can_approve(
                is_approved=expense.is_approved,
                submitted_by=expense.submitted_by,
                approver_id=approver_id,
            )
        except Exception:
            self._db.rollback()
            raise

        expense.is_approved = True
        expense.approved_by = approver_id
        expense.approved_at = now or _utcnow()
        self._db.add(expense)
        self._record_event(
            entity_type="expense",
            entity_id=expense.id,
            project_id=expense.project_id,
            action="expense_approved",
            details={"total_amount": str(expense.total_amount)},
            actor_id=approver_id,
        )
        self._db.commit()
        self._db.refresh(expense)
        return expense

    def count_events(self, entity_id: str, action: str) -> int:
        statement = (
            select(func.count())
            .select_from(AuditEvent)
            .where(AuditEvent.entity_id == entity_id, AuditEvent.action == action)
        )
        return int(self._db.scalar(statement) or 0)


class MilestoneRepository(_AuditMixin):
    """
    Milestone persistence; doubles as the store behind MilestoneSequencer.

    `list_milestones` locks the owning project row, so every position change
    for a project is serialized on that row until `atomic()` commits.
    """

    def __init__(self, db: Session, *, actor_id: str | None = None, source_ip: str | None = None):
        self._db = db
        self._actor_id = actor_id
        self._source_ip = source_ip

    @contextmanager
    def atomic(self) -> Iterator[Session]:
        try:
            yield self._db
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise

    def list_milestones(self, project_id: str) -> list[MilestoneSlot]:
        locked = self._db.execute(
            select(Project.id).where(Project.id == project_id).with_for_update()
        ).scalar_one_or_none()
        if locked is None:
            raise ProjectNotFoundError(f"Project '{project_id}' not found")

        rows = self._db.execute(
            select(Milestone.id, Milestone.position)
            .where(Milestone.project_id == project_id)
            .order_by(Milestone.position, Milestone.created_at, Milestone.id)
        )
        return [MilestoneSlot(id=row.id, position=row.position) for row in rows]

    def set_position(self, milestone_id: str, position: int) -> None:
        milestone = self._db.get(Milestone, milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(f"Milestone '{milestone_id}' not found")
        milestone.position = position
        self._db.add(milestone)

    def insert_milestone(self, project_id: str, values: Mapping[str, Any], position: int) -> Milestone:
        validate_schedule(values.get("start_date"), values.get("end_date"))
        record = Milestone(
            project_id=project_id,
            position=position,
            **{key: _plain(value) for key, value in values.items()},
        )
        self._db.add(record)
        self._db.flush()
        self._record_event(
            entity_type="milestone",
            entity_id=record.id,
            project_id=project_id,
            action="milestone_created",
            details={"position": position, "title": record.title},
        )
        return record

    def delete_milestone(self, milestone_id: str) -> None:
        milestone = self._db.get(Milestone, milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(f"Milestone '{milestone_id}' not found")
        self._record_event(
            entity_type="milestone",
            entity_id=milestone.id,
            project_id=milestone.project_id,
            action="milestone_deleted",
            details={"position": milestone.position, "title": milestone.title},
        )
        self._db.delete(milestone)
        self._db.flush()

    def get_milestone(self, milestone_id: str) -> Milestone | None:
        return self._db.get(Milestone, milestone_id)

    def require_milestone(self, milestone_id: str) -> Milestone:
        milestone = self.get_milestone(milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(f"Milestone '{milestone_id}' not found")
        return milestone

    def list_for_project(self, project_id: str) -> list[Milestone]:
        ProjectRepository(self._db).require_project(project_id)
        statement = (
            select(Milestone)
            .where(Milestone.project_id == project_id)
            .order_by(Milestone.position, Milestone.id)
            .execution_options(populate_existing=True)
        )
        return list(self._db.scalars(statement))

    def update_milestone(self, milestone: Milestone, changes: Mapping[str, Any]) -> Milestone:
        """Apply a partial update. Position is owned by the sequencer and is not editable here."""
        start_date = changes.get("start_date", milestone.start_date)
        end_date = changes.get("end_date", milestone.end_date)
        validate_schedule(start_date, end_date)

        for key, value in changes.items():
            setattr(milestone, key, _plain(value))
        self._db.add(milestone)
        self._record_event(
            entity_type="milestone",
            entity_id=milestone.id,
            project_id=milestone.project_id,
            action="milestone_updated",
            details={"fields": sorted(changes.keys())},
        )
        self._db.commit()
        self._db.refresh(milestone)
        return milestone

    def record_reorder(self, project_id: str, moved_id: str, target_index: int, updates: Mapping[str, int]) -> None:
        self._record_event(
            entity_type="milestone",
            entity_id=moved_id,
            project_id=project_id,
            action="milestones_reordered",
            details={"target_index": target_index, "updates": dict(updates)},
        )

    def refresh(self, milestone: Milestone) -> Milestone:
        self._db.refresh(milestone)
        return milestone
