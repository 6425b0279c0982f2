from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from expense_ledger import ExpenseAlreadyApprovedError, ExpenseNotFoundError, SelfApprovalError
from milestone_sequencer import MilestoneNotFoundError, MilestoneScheduleError, MilestoneSequencer
from persistence.database import build_engine
from persistence.models import AuditEvent, Base, Expense, Milestone
from persistence.repository import (
    ExpenseRepository,
    MilestoneRepository,
    ProjectNotFoundError,
    ProjectRepository,
)

START = datetime(2024, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def session_factory(tmp_path: Path):
    engine = build_engine(f"sqlite:///{tmp_path / 'projects.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture
def project_id(session_factory) -> str:
    with session_factory() as session:
        project = ProjectRepository(session, actor_id="manager-1").create_project({"name": "Harbor Street Duplex"})
        return project.id


def _milestone_values(title: str, days: int = 7) -> dict:
    return {"title": title, "start_date": START, "end_date": START + timedelta(days=days)}


def test_project_survives_new_engine(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'durable.db'}"
    engine_one = build_engine(url)
    Base.metadata.create_all(bind=engine_one)
    with sessionmaker(bind=engine_one, expire_on_commit=False, future=True)() as session:
        created = ProjectRepository(session).create_project({"name": "Depot Renovation", "budget": Decimal("125000.00")})
    engine_one.dispose()

    engine_two = build_engine(url)
    with sessionmaker(bind=engine_two, expire_on_commit=False, future=True)() as session:
        restored = ProjectRepository(session).get_project(created.id)

    assert restored is not None
    assert restored.name == "Depot Renovation"
    assert restored.status == "active"
    assert restored.budget == Decimal("125000.00")
    engine_two.dispose()


def test_expense_total_is_derived_and_recomputed(session_factory, project_id) -> None:
    with session_factory() as session:
        repo = ExpenseRepository(session)
        expense = repo.create_expense(
            project_id,
            {"description": "Framing lumber", "amount": Decimal("100.00"), "tax_amount": Decimal("8.25")},
            submitted_by="worker-1",
        )
        assert expense.total_amount == Decimal("108.25")
        assert expense.category == "other"

        updated = repo.update_expense(expense, {"amount": Decimal("200"), "category": "materials"})

        assert updated.total_amount == Decimal("208.25")
        assert updated.category == "materials"


def test_expense_for_unknown_project_is_rejected(session_factory) -> None:
    with session_factory() as session:
        with pytest.raises(ProjectNotFoundError):
            ExpenseRepository(session).create_expense(
                "missing", {"description": "x", "amount": 1}, submitted_by="worker-1"
            )


def test_second_approval_is_rejected_without_new_record(session_factory, project_id) -> None:
    with session_factory() as session:
        repo = ExpenseRepository(session)
        expense = repo.create_expense(
            project_id, {"description": "Concrete pour", "amount": 500}, submitted_by="worker-1"
        )

        approved = repo.approve_expense(expense.id, "manager-1")
        assert approved.is_approved is True
        assert approved.approved_by == "manager-1"
        assert approved.approved_at is not None
        first_approved_at = approved.approved_at

        with pytest.raises(ExpenseAlreadyApprovedError):
            repo.approve_expense(expense.id, "manager-2")

        assert repo.count_events(expense.id, "expense_approved") == 1
        reloaded = repo.get_expense(expense.id)
        assert reloaded.approved_by == "manager-1"
        assert reloaded.approved_at == first_approved_at


def test_submitter_cannot_approve_own_expense(session_factory, project_id) -> None:
    with session_factory() as session:
        repo = ExpenseRepository(session)
        expense = repo.create_expense(project_id, {"description": "Wages", "amount": 900}, submitted_by="worker-1")

        with pytest.raises(SelfApprovalError):
            repo.approve_expense(expense.id, "worker-1")

        assert repo.get_expense(expense.id).is_approved is False
        assert repo.count_events(expense.id, "expense_approved") == 0


def test_approving_unknown_expense_raises(session_factory) -> None:
    with session_factory() as session:
        with pytest.raises(ExpenseNotFoundError):
            ExpenseRepository(session).approve_expense("nope", "manager-1")


def test_milestone_reorder_is_persisted(session_factory, project_id) -> None:
    with session_factory() as session:
        repo = MilestoneRepository(session, actor_id="manager-1")
        sequencer = MilestoneSequencer(repo)
        ids = [sequencer.append(project_id, _milestone_values(title)).id for title in ("A", "B", "C")]

        plan = sequencer.reorder(project_id, ids[0], 2)

        assert len(plan.updates) == 3

    with session_factory() as session:
        ordered = MilestoneRepository(session).list_for_project(project_id)

    assert [milestone.title for milestone in ordered] == ["B", "C", "A"]
    assert [milestone.position for milestone in ordered] == [0, 1, 2]


def test_milestone_delete_compacts_positions(session_factory, project_id) -> None:
    with session_factory() as session:
        repo = MilestoneRepository(session)
        sequencer = MilestoneSequencer(repo)
        ids = [sequencer.append(project_id, _milestone_values(title)).id for title in ("A", "B", "C", "D")]

        sequencer.remove(project_id, ids[1])
        appended = sequencer.append(project_id, _milestone_values("E"))

        assert appended.position == 3

    with session_factory() as session:
        ordered = MilestoneRepository(session).list_for_project(project_id)
        deleted_events = session.scalars(
            select(AuditEvent).where(AuditEvent.action == "milestone_deleted")
        ).all()

    assert [(m.title, m.position) for m in ordered] == [("A", 0), ("C", 1), ("D", 2), ("E", 3)]
    assert len(deleted_events) == 1


def test_failed_append_leaves_no_row(session_factory, project_id) -> None:
    with session_factory() as session:
        sequencer = MilestoneSequencer(MilestoneRepository(session))
        bad_values = {"title": "Backwards", "start_date": START, "end_date": START - timedelta(days=1)}

        with pytest.raises(MilestoneScheduleError):
            sequencer.append(project_id, bad_values)

    with session_factory() as session:
        assert session.scalars(select(Milestone)).all() == []


def test_reorder_in_unknown_project_raises(session_factory) -> None:
    with session_factory() as session:
        with pytest.raises(ProjectNotFoundError):
            MilestoneSequencer(MilestoneRepository(session)).reorder("missing", "m1", 0)


def test_reorder_of_milestone_from_other_project_is_not_found(session_factory, project_id) -> None:
    with session_factory() as session:
        other = ProjectRepository(session).create_project({"name": "Other site"})
        sequencer = MilestoneSequencer(MilestoneRepository(session))
        foreign = sequencer.append(other.id, _milestone_values("Foreign"))
        sequencer.append(project_id, _milestone_values("Local"))

        with pytest.raises(MilestoneNotFoundError):
            sequencer.reorder(project_id, foreign.id, 0)


def test_audit_events_record_actor(session_factory, project_id) -> None:
    with session_factory() as session:
        repo = MilestoneRepository(session, actor_id="manager-9", source_ip="10.0.0.5")
        MilestoneSequencer(repo).append(project_id, _milestone_values("Excavation"))

        event = session.scalars(select(AuditEvent).where(AuditEvent.action == "milestone_created")).one()

    assert event.actor_id == "manager-9"
    assert event.source_ip == "10.0.0.5"
    assert event.project_id == project_id
    assert event.details["position"] == 0


def test_reorder_event_commits_with_positions(session_factory, project_id) -> None:
    with session_factory() as session:
        sequencer = MilestoneSequencer(MilestoneRepository(session, actor_id="manager-1"))
        ids = [sequencer.append(project_id, _milestone_values(title)).id for title in ("A", "B", "C")]

        sequencer.reorder(project_id, ids[2], 0)
        sequencer.reorder(project_id, ids[2], 0)

    with session_factory() as session:
        events = session.scalars(select(AuditEvent).where(AuditEvent.action == "milestones_reordered")).all()

    assert len(events) == 1
    assert events[0].entity_id == ids[2]
    assert events[0].details["updates"] == {ids[2]: 0, ids[0]: 1, ids[1]: 2}


class _FailingAuditRepository(MilestoneRepository):
    def record_reorder(self, project_id, moved_id, target_index, updates) -> None:
        super().record_reorder(project_id, moved_id, target_index, updates)
        raise RuntimeError("audit insert failed")


def test_failed_reorder_event_leaves_positions_untouched(session_factory, project_id) -> None:
    with session_factory() as session:
        sequencer = MilestoneSequencer(MilestoneRepository(session))
        ids = [sequencer.append(project_id, _milestone_values(title)).id for title in ("A", "B", "C")]

    with session_factory() as session:
        with pytest.raises(RuntimeError):
            MilestoneSequencer(_FailingAuditRepository(session)).reorder(project_id, ids[0], 2)

    with session_factory() as session:
        ordered = MilestoneRepository(session).list_for_project(project_id)
        events = session.scalars(select(AuditEvent).where(AuditEvent.action == "milestones_reordered")).all()

    assert [milestone.id for milestone in ordered] == ids
    assert events == []


def test_concurrent_appends_get_distinct_positions(session_factory, project_id) -> None:
    outcome: dict = {}

    def append_from_second_session() -> None:
        with session_factory() as session_b:
            created = MilestoneSequencer(MilestoneRepository(session_b)).append(project_id, _milestone_values("B"))
            outcome["position"] = created.position

    session_a = session_factory()
    repo_a = MilestoneRepository(session_a)
    worker = threading.Thread(target=append_from_second_session)
    try:
        with repo_a.atomic():
            position = len(repo_a.list_milestones(project_id))
            worker.start()
            worker.join(timeout=0.5)
            # The second append waits for this transaction to finish.
            assert worker.is_alive()
            repo_a.insert_milestone(project_id, _milestone_values("A"), position)
        worker.join(timeout=10)
    finally:
        session_a.close()

    assert not worker.is_alive()
    assert outcome["position"] == 1
    with session_factory() as session:
        ordered = MilestoneRepository(session).list_for_project(project_id)
    assert [(milestone.title, milestone.position) for milestone in ordered] == [("A", 0), ("B", 1)]


def test_concurrent_approval_sees_first_approval(session_factory, project_id) -> None:
    with session_factory() as session:
        expense = ExpenseRepository(session).create_expense(
            project_id, {"description": "Crane rental", "amount": 2400}, submitted_by="worker-1"
        )
    outcome: dict = {}

    def approve_from_second_session() -> None:
        with session_factory() as session_b:
            try:
                ExpenseRepository(session_b).approve_expense(expense.id, "manager-2")
                outcome["result"] = "approved"
            except ExpenseAlreadyApprovedError:
                outcome["result"] = "conflict"

    session_a = session_factory()
    repo_a = ExpenseRepository(session_a)
    worker = threading.Thread(target=approve_from_second_session)
    try:
        session_a.scalars(select(Expense).where(Expense.id == expense.id).with_for_update()).one()
        worker.start()
        worker.join(timeout=0.5)
        assert worker.is_alive()
        repo_a.approve_expense(expense.id, "manager-1")
        worker.join(timeout=10)
    finally:
        session_a.close()

    assert outcome["result"] == "conflict"
    with session_factory() as session:
        assert ExpenseRepository(session).count_events(expense.id, "expense_approved") == 1
