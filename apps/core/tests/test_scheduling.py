from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, time, timezone

import pytest
from sqlalchemy import event, select, update
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import ORMExecuteState, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from estatecrm import events, models  # noqa: F401
from estatecrm.core.clock import utcnow
from estatecrm.core.config import get_settings
from estatecrm.core.database import Base, create_engine_for
from estatecrm.core.events import event_bus
from estatecrm.crm.calendar import StubCalendarClient
from estatecrm.crm.errors import (
    ConflictError,
    InputValidationError,
    InvalidReferenceError,
    InvalidTransitionError,
    SchedulingConflictError,
)
from estatecrm.crm.models import Appointment, AvailabilitySlot, CalendarSyncLog, LeadActivity, SyncStatus
from estatecrm.crm.repositories import AppointmentRepository, ContactRepository
from estatecrm.crm.scheduling import AppointmentScheduler, overlaps
from estatecrm.crm.schemas import AppointmentCreate, AppointmentUpdate, AvailabilitySlotCreate
from estatecrm.platform.security import ForbiddenError, Principal, Role
from estatecrm.platform.security.models import User

DAY = date(2024, 5, 1)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine_for(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    events.published_events.clear()
    event_bus.clear()
    yield
    events.published_events.clear()
    event_bus.clear()


def _principal(session: Session, tenant_id: str, role: str) -> Principal:
    user_id = uuid.uuid4()
    session.add(User(id=user_id, tenant_id=tenant_id, role=role, name=role, email=f"{user_id}@example.com"))
    session.commit()
    return Principal(id=user_id, tenant_id=tenant_id, role=role)


@pytest.fixture()
def agent(db_session: Session) -> Principal:
    return _principal(db_session, "t1", Role.AGENT)


@pytest.fixture()
def contact_id(db_session: Session, agent: Principal) -> uuid.UUID:
    return ContactRepository().create(db_session, agent, {"name": "Visitor"}).id


def _book(
    scheduler: AppointmentScheduler,
    session: Session,
    principal: Principal,
    contact_id: uuid.UUID,
    start: time,
    *,
    day: date = DAY,
    duration: int = 60,
    status: str = "PENDING",
    slot_id: uuid.UUID | None = None,
) -> uuid.UUID:
    appointment = scheduler.create_with_validation(
        session,
        principal,
        AppointmentCreate(
            contact_id=contact_id,
            title=f"Viewing at {start.isoformat()}",
            date=day,
            start_time=start,
            estimated_duration=duration,
            status=status,
            availability_slot_id=slot_id,
        ),
    )
    return appointment.id


def _slot(
    scheduler: AppointmentScheduler, session: Session, principal: Principal, start: time, duration: int = 60
) -> uuid.UUID:
    slot = scheduler.open_slot(
        session, principal, AvailabilitySlotCreate(date=DAY, start_time=start, duration=duration)
    )
    return slot.id


def test_overlap_is_half_open() -> None:
    ten = datetime(2024, 5, 1, 10, 0)
    eleven = datetime(2024, 5, 1, 11, 0)
    noon = datetime(2024, 5, 1, 12, 0)
    assert overlaps(ten, eleven, datetime(2024, 5, 1, 10, 30), datetime(2024, 5, 1, 11, 30))
    assert not overlaps(ten, eleven, eleven, noon)
    assert not overlaps(eleven, noon, ten, eleven)


def test_overlapping_booking_is_rejected_with_context(
    db_session: Session, agent: Principal, contact_id: uuid.UUID
) -> None:
    scheduler = AppointmentScheduler()
    _slot(scheduler, db_session, agent, time(10, 0))
    afternoon = _slot(scheduler, db_session, agent, time(14, 0))
    _slot(scheduler, db_session, agent, time(16, 0), duration=30)
    first = _book(scheduler, db_session, agent, contact_id, time(10, 0), status="CONFIRMED")

    conflict = scheduler.check_conflicts(db_session, agent, agent.id, DAY, time(10, 30), 60)
    assert conflict.has_conflict
    assert [item.id for item in conflict.conflicting_appointments] == [first]
    assert [slot.id for slot in conflict.suggestions] == [afternoon]

    with pytest.raises(SchedulingConflictError) as exc_info:
        _book(scheduler, db_session, agent, contact_id, time(10, 30))

    assert [item.id for item in exc_info.value.conflict.conflicting_appointments] == [first]
    assert db_session.query(Appointment).count() == 1


def test_touching_appointments_do_not_conflict(
    db_session: Session, agent: Principal, contact_id: uuid.UUID
) -> None:
    scheduler = AppointmentScheduler()
    _book(scheduler, db_session, agent, contact_id, time(10, 0), status="CONFIRMED")

    assert not scheduler.check_conflicts(db_session, agent, agent.id, DAY, time(11, 0), 60).has_conflict
    assert not scheduler.check_conflicts(db_session, agent, agent.id, DAY, time(9, 0), 60).has_conflict
    _book(scheduler, db_session, agent, contact_id, time(11, 0))
    assert db_session.query(Appointment).count() == 2


def test_canceled_appointments_free_the_time(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler()
    first = _book(scheduler, db_session, agent, contact_id, time(10, 0))
    scheduler.update_status(db_session, agent, first, "CANCELED")

    assert not scheduler.check_conflicts(db_session, agent, agent.id, DAY, time(10, 0), 60).has_conflict


def test_booking_a_slot_reserves_it(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler()
    slot_id = _slot(scheduler, db_session, agent, time(9, 0))

    appointment_id = _book(scheduler, db_session, agent, contact_id, time(9, 0), slot_id=slot_id)

    slot = db_session.get(AvailabilitySlot, slot_id)
    assert slot is not None
    assert slot.status == "BOOKED"
    assert slot.appointment_id == appointment_id
    assert scheduler.get_available_slots(db_session, agent, agent.id, DAY) == []

    with pytest.raises(SchedulingConflictError):
        _book(scheduler, db_session, agent, contact_id, time(15, 0), slot_id=slot_id)

    activities = db_session.scalars(select(LeadActivity).where(LeadActivity.contact_id == contact_id)).all()
    assert [activity.type for activity in activities] == ["MEETING"]
    assert activities[0].appointment_id == appointment_id


def test_slot_must_match_agent_and_date(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler()
    slot_id = _slot(scheduler, db_session, agent, time(9, 0))

    with pytest.raises(InputValidationError):
        _book(scheduler, db_session, agent, contact_id, time(9, 0), day=date(2024, 5, 2), slot_id=slot_id)


def test_cancel_releases_the_slot(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler(clock=lambda: datetime(2024, 4, 30, 9, 0, tzinfo=timezone.utc))
    slot_id = _slot(scheduler, db_session, agent, time(9, 0))
    appointment_id = _book(scheduler, db_session, agent, contact_id, time(9, 0), slot_id=slot_id)
    events.published_events.clear()

    canceled = scheduler.update_status(db_session, agent, appointment_id, "CANCELED", notes="Client sick")

    assert canceled.status == "CANCELED"
    assert canceled.canceled_at is not None
    assert canceled.availability_slot_id is None
    slot = db_session.get(AvailabilitySlot, slot_id)
    assert slot is not None
    assert slot.status == "AVAILABLE"
    assert slot.appointment_id is None
    assert "appointment.canceled" in [envelope["event_type"] for envelope in events.published_events]
    assert "availability_slot.released" in [envelope["event_type"] for envelope in events.published_events]

    with pytest.raises(InvalidTransitionError):
        scheduler.update_status(db_session, agent, appointment_id, "CONFIRMED")


def test_completing_freezes_the_duration(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler()
    appointment_id = _book(scheduler, db_session, agent, contact_id, time(9, 0), duration=45)

    confirmed = scheduler.update_status(db_session, agent, appointment_id, "CONFIRMED")
    assert confirmed.status == "CONFIRMED"

    completed = scheduler.update_status(db_session, agent, appointment_id, "COMPLETED")
    assert completed.actual_duration == 45
    assert completed.completed_at is not None

    with pytest.raises(InputValidationError):
        scheduler.update_status(db_session, agent, appointment_id, "POSTPONED")


def test_reschedule_checks_the_new_time(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler()
    moving = _book(scheduler, db_session, agent, contact_id, time(10, 0))
    _book(scheduler, db_session, agent, contact_id, time(14, 0), status="CONFIRMED")

    with pytest.raises(SchedulingConflictError):
        scheduler.reschedule(db_session, agent, moving, DAY, time(14, 30))

    nudged = scheduler.reschedule(db_session, agent, moving, DAY, time(10, 30), reason="Traffic")
    assert nudged.start_time == time(10, 30)
    assert nudged.rescheduling_count == 1

    moved = scheduler.reschedule(db_session, agent, moving, date(2024, 5, 2), reason="Client request")
    assert moved.date == date(2024, 5, 2)
    assert moved.start_time == time(10, 30)
    assert moved.rescheduling_count == 2
    assert moved.last_rescheduled_at is not None

    notes = db_session.scalars(
        select(LeadActivity).where(LeadActivity.appointment_id == moving, LeadActivity.type == "NOTE")
    ).all()
    metadata = sorted((note.activity_metadata for note in notes), key=lambda item: item["new_date"])
    assert metadata[-1]["old_date"] == "2024-05-01"
    assert metadata[-1]["new_date"] == "2024-05-02"
    assert metadata[-1]["reason"] == "Client request"


def test_reschedule_releases_a_slot_it_leaves(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler()
    slot_id = _slot(scheduler, db_session, agent, time(9, 0))
    appointment_id = _book(scheduler, db_session, agent, contact_id, time(9, 0), slot_id=slot_id)

    moved = scheduler.reschedule(db_session, agent, appointment_id, date(2024, 5, 3))

    assert moved.availability_slot_id is None
    slot = db_session.get(AvailabilitySlot, slot_id)
    assert slot is not None
    assert slot.status == "AVAILABLE"


def test_finished_appointments_cannot_be_rescheduled(
    db_session: Session, agent: Principal, contact_id: uuid.UUID
) -> None:
    scheduler = AppointmentScheduler()
    appointment_id = _book(scheduler, db_session, agent, contact_id, time(9, 0))
    scheduler.update_status(db_session, agent, appointment_id, "COMPLETED")

    with pytest.raises(InvalidTransitionError):
        scheduler.reschedule(db_session, agent, appointment_id, date(2024, 5, 2))


def test_open_slot_rejects_overlap(db_session: Session, agent: Principal) -> None:
    scheduler = AppointmentScheduler()
    _slot(scheduler, db_session, agent, time(9, 0), duration=90)

    with pytest.raises(ConflictError):
        _slot(scheduler, db_session, agent, time(10, 0))
    with pytest.raises(InputValidationError):
        _slot(scheduler, db_session, agent, time(23, 30), duration=60)

    later = scheduler.open_slot(db_session, agent, AvailabilitySlotCreate(date=DAY, start_time=time(10, 30), duration=30))
    assert later.end_time == time(11, 0)


def test_unknown_contact_is_an_invalid_reference(db_session: Session, agent: Principal) -> None:
    with pytest.raises(InvalidReferenceError):
        _book(AppointmentScheduler(), db_session, agent, uuid.uuid4(), time(9, 0))


def test_tenant_admin_books_for_own_agents_only(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    admin = _principal(db_session, "t1", Role.TENANT_ADMIN)
    outsider = _principal(db_session, "t2", Role.AGENT)
    scheduler = AppointmentScheduler()

    booked = scheduler.create_with_validation(
        db_session,
        admin,
        AppointmentCreate(contact_id=contact_id, title="Admin booking", date=DAY, start_time=time(9, 0), agent_id=agent.id),
    )
    assert booked.agent_id == agent.id

    with pytest.raises(ForbiddenError):
        scheduler.check_conflicts(db_session, admin, outsider.id, DAY, time(9, 0), 60)


def test_successful_sync_records_the_external_id(
    db_session: Session, agent: Principal, contact_id: uuid.UUID
) -> None:
    client = StubCalendarClient()
    scheduler = AppointmentScheduler(calendar_client=client)
    appointment_id = _book(scheduler, db_session, agent, contact_id, time(9, 0))

    synced = scheduler.sync_with_external_calendar(db_session, agent, appointment_id)

    assert synced.sync_status == SyncStatus.SYNCED
    assert synced.sync_attempts == 1
    assert synced.last_sync_at is not None
    assert synced.sync_error is None
    assert synced.external_event_id == f"stub_{appointment_id}"
    assert [item.id for item in client.pushed] == [appointment_id]

    [log] = db_session.scalars(select(CalendarSyncLog).where(CalendarSyncLog.appointment_id == appointment_id)).all()
    assert (log.operation, log.direction, log.status) == ("CREATE", "OUTBOUND", "SUCCESS")
    assert "appointment.synced" in [envelope["event_type"] for envelope in events.published_events]


def test_failed_sync_is_recorded_not_raised(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler()
    appointment_id = _book(scheduler, db_session, agent, contact_id, time(9, 0))
    scheduler.sync_with_external_calendar(db_session, agent, appointment_id)

    failed = scheduler.sync_with_external_calendar(
        db_session, agent, appointment_id, client=StubCalendarClient(failure="calendar unavailable")
    )

    assert failed.sync_status == SyncStatus.FAILED
    assert failed.sync_attempts == 2
    assert failed.sync_error == "calendar unavailable"
    logs = db_session.scalars(
        select(CalendarSyncLog)
        .where(CalendarSyncLog.appointment_id == appointment_id)
        .order_by(CalendarSyncLog.created_at)
    ).all()
    assert [log.status for log in logs] == ["SUCCESS", "FAILED"]
    assert logs[1].operation == "UPDATE"
    assert logs[1].error == "calendar unavailable"
    assert "appointment.sync_failed" in [envelope["event_type"] for envelope in events.published_events]


def test_sync_in_flight_is_not_started_twice(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler()
    appointment_id = _book(scheduler, db_session, agent, contact_id, time(9, 0))
    db_session.execute(
        update(Appointment)
        .where(Appointment.id == appointment_id)
        .values(sync_status=SyncStatus.SYNCING, last_sync_at=utcnow())
    )
    db_session.commit()

    with pytest.raises(ConflictError):
        scheduler.sync_with_external_calendar(db_session, agent, appointment_id)


def test_stats_use_calendar_windows(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler(clock=lambda: datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc))
    done = _book(scheduler, db_session, agent, contact_id, time(10, 0), duration=45)
    dropped = _book(scheduler, db_session, agent, contact_id, time(10, 0), day=date(2024, 4, 28))
    _book(scheduler, db_session, agent, contact_id, time(9, 0), day=date(2024, 5, 20), duration=90)
    moved = _book(scheduler, db_session, agent, contact_id, time(9, 0), day=date(2024, 5, 2), duration=30)

    scheduler.update_status(db_session, agent, done, "COMPLETED")
    scheduler.update_status(db_session, agent, dropped, "CANCELED")
    scheduler.reschedule(db_session, agent, moved, date(2024, 5, 3))

    stats = scheduler.get_stats(db_session, agent)

    assert stats.total == 4
    assert stats.today == 1
    assert stats.this_week == 3
    assert stats.this_month == 3
    assert stats.by_status == {"PENDING": 2, "CONFIRMED": 0, "COMPLETED": 1, "CANCELED": 1}
    assert stats.by_type["VISIT"] == 4
    assert stats.by_priority["NORMAL"] == 4
    assert stats.average_duration == 45.0
    assert stats.completion_rate == 25.0
    assert stats.cancellation_rate == 25.0
    assert stats.rescheduling_rate == 25.0


def test_plain_updates_cannot_move_an_appointment(
    db_session: Session, agent: Principal, contact_id: uuid.UUID
) -> None:
    scheduler = AppointmentScheduler()
    appointment_id = _book(scheduler, db_session, agent, contact_id, time(9, 0))
    repository = scheduler.appointment_repository

    updated = repository.update(db_session, agent, appointment_id, AppointmentUpdate(notes="Bring the keys"))
    assert updated.notes == "Bring the keys"

    with pytest.raises(InputValidationError):
        repository.update(db_session, agent, appointment_id, {"start_time": time(15, 0)})
    with pytest.raises(InputValidationError):
        repository.update(db_session, agent, appointment_id, {"status": "COMPLETED"})


def test_appointment_must_fit_inside_its_slot(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler()
    slot_id = _slot(scheduler, db_session, agent, time(9, 0))

    with pytest.raises(InputValidationError):
        _book(scheduler, db_session, agent, contact_id, time(15, 0), slot_id=slot_id)
    with pytest.raises(InputValidationError):
        _book(scheduler, db_session, agent, contact_id, time(9, 30), slot_id=slot_id)

    slot = db_session.get(AvailabilitySlot, slot_id)
    assert slot is not None
    assert slot.status == "AVAILABLE"
    assert [item.id for item in scheduler.get_available_slots(db_session, agent, agent.id, DAY)] == [slot_id]
    assert db_session.query(Appointment).count() == 0

    _book(scheduler, db_session, agent, contact_id, time(9, 15), duration=45, slot_id=slot_id)
    assert db_session.get(AvailabilitySlot, slot_id).status == "BOOKED"


def test_appointments_cannot_run_past_midnight(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    scheduler = AppointmentScheduler()

    with pytest.raises(InputValidationError):
        _book(scheduler, db_session, agent, contact_id, time(23, 30), duration=120)
    with pytest.raises(InputValidationError):
        scheduler.check_conflicts(db_session, agent, agent.id, DAY, time(23, 30), 120)

    late = _book(scheduler, db_session, agent, contact_id, time(22, 0), duration=90)
    with pytest.raises(InputValidationError):
        scheduler.reschedule(db_session, agent, late, DAY, time(23, 0))
    assert db_session.query(Appointment).count() == 1


def test_booking_locks_the_agent_row(db_session: Session, agent: Principal, contact_id: uuid.UUID) -> None:
    statements: list[str] = []

    def capture(state: ORMExecuteState) -> None:
        statements.append(str(state.statement.compile(dialect=postgresql.dialect())))

    event.listen(db_session, "do_orm_execute", capture)
    scheduler = AppointmentScheduler()
    appointment_id = _book(scheduler, db_session, agent, contact_id, time(9, 0))
    scheduler.reschedule(db_session, agent, appointment_id, DAY, time(10, 0))
    event.remove(db_session, "do_orm_execute", capture)

    locks = [statement for statement in statements if "FOR UPDATE" in statement]
    assert len(locks) == 2
    assert all("app_user" in statement for statement in locks)


def test_active_start_times_are_unique_per_agent(
    db_session: Session, agent: Principal, contact_id: uuid.UUID
) -> None:
    repository = AppointmentRepository()
    values = {"contact_id": contact_id, "title": "Viewing", "date": DAY, "start_time": time(10, 0)}
    first = repository.create(db_session, agent, values)

    with pytest.raises(ConflictError):
        repository.create(db_session, agent, dict(values, title="Second viewing"))

    AppointmentScheduler().update_status(db_session, agent, first.id, "CANCELED")
    rebooked = repository.create(db_session, agent, dict(values, title="Rebooked viewing"))
    assert rebooked.status == "PENDING"


def test_each_scheduler_owns_its_repositories() -> None:
    first, second = AppointmentScheduler(), AppointmentScheduler()
    assert first.appointment_repository is not second.appointment_repository
    assert first.slot_repository is not second.slot_repository
    assert first.contact_repository is not second.contact_repository
