from __future__ import annotations

import logging
import uuid
from calendar import monthrange
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from estatecrm.core.clock import as_utc, utcnow
from estatecrm.core.config import get_settings
from estatecrm.core.database import transaction
from estatecrm.crm.activities import log_contact_activity
from estatecrm.crm.calendar import CalendarClient, StubCalendarClient
from estatecrm.crm.errors import (
    ConflictError,
    InputValidationError,
    InvalidReferenceError,
    InvalidTransitionError,
    NotFoundError,
    SchedulingConflictError,
)
from estatecrm.crm.models import (
    Appointment,
    AppointmentPriority,
    AppointmentStatus,
    AppointmentType,
    AvailabilitySlot,
    CalendarSyncLog,
    SlotStatus,
    SyncStatus,
)
from estatecrm.crm.repositories import AppointmentRepository, AvailabilitySlotRepository, ContactRepository
from estatecrm.crm.schemas import (
    AppointmentConflict,
    AppointmentCreate,
    AppointmentRead,
    AppointmentStats,
    AvailabilitySlotCreate,
    AvailabilitySlotRead,
)
from estatecrm.metrics import observe_calendar_sync, observe_scheduling_conflict
from estatecrm.otel import get_tracer, start_span
from estatecrm.platform.security.context import Principal, require_principal
from estatecrm.platform.security.models import User
from estatecrm.platform.security.scope import validate_scope_write

logger = logging.getLogger("estatecrm.scheduling")
tracer = get_tracer("estatecrm.scheduling")

ACTIVE_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)
TERMINAL_STATUSES = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELED})
MAX_SUGGESTIONS = 3
FALLBACK_DURATION_MINUTES = 60

_STATUS_EVENTS = {
    AppointmentStatus.CANCELED: "canceled",
    AppointmentStatus.COMPLETED: "completed",
    AppointmentStatus.CONFIRMED: "updated",
    AppointmentStatus.PENDING: "updated",
}


def appointment_window(day: date, start: time, duration: int) -> tuple[datetime, datetime]:
    begin = datetime.combine(day, start)
    return begin, begin + timedelta(minutes=duration)


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    """Half-open interval overlap: touching windows do not conflict."""

    return start < other_end and end > other_start


def _percent(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


@dataclass(slots=True)
class AppointmentScheduler:
    appointment_repository: AppointmentRepository = field(default_factory=AppointmentRepository)
    slot_repository: AvailabilitySlotRepository = field(default_factory=AvailabilitySlotRepository)
    contact_repository: ContactRepository = field(default_factory=ContactRepository)
    calendar_client: CalendarClient = field(default_factory=StubCalendarClient)
    clock: Callable[[], datetime] = utcnow

    # -- conflict detection ---------------------------------------------

    def check_conflicts(
        self,
        session: Session,
        principal: Principal | None,
        agent_id: uuid.UUID,
        day: date,
        start_time: time,
        duration: int,
        *,
        exclude_appointment_id: uuid.UUID | None = None,
    ) -> AppointmentConflict:
        """Report active appointments overlapping the candidate window, with alternatives.

        Read-only. Writers take the agent lock first so the answer holds until commit.
        """

        principal = require_principal(principal)
        if duration <= 0:
            raise InputValidationError("Duration must be positive")
        self._check_agent(session, principal, agent_id)

        with start_span(tracer, "appointment.check_conflicts", agent_id=str(agent_id)):
            start, end = appointment_window(day, start_time, duration)
            if end.date() != day:
                raise InputValidationError("Appointment must end on the day it starts")
            busy = self._active_appointments(session, principal, agent_id, day, exclude_appointment_id)
            conflicting = [
                appointment
                for appointment in busy
                if overlaps(start, end, *self._window_of(appointment))
            ]
            if not conflicting:
                return AppointmentConflict(has_conflict=False)

            suggestions = self._suggest_slots(session, principal, agent_id, day, duration, busy)
            return AppointmentConflict(
                has_conflict=True,
                conflicting_appointments=[AppointmentRead.model_validate(item) for item in conflicting],
                suggestions=suggestions,
            )

    def get_available_slots(
        self,
        session: Session,
        principal: Principal | None,
        agent_id: uuid.UUID,
        day: date,
        duration: int = FALLBACK_DURATION_MINUTES,
    ) -> list[AvailabilitySlotRead]:
        principal = require_principal(principal)
        return [AvailabilitySlotRead.model_validate(slot) for slot in self._open_slots(session, principal, agent_id, day, duration)]

    # -- writes ---------------------------------------------------------

    def open_slot(
        self,
        session: Session,
        principal: Principal | None,
        payload: AvailabilitySlotCreate,
        *,
        commit: bool = True,
    ) -> AvailabilitySlotRead:
        principal = require_principal(principal)
        agent_id = payload.agent_id or principal.id
        start, end = appointment_window(payload.date, payload.start_time, payload.duration)
        if end.date() != payload.date:
            raise InputValidationError("Availability slot must end on the day it starts")

        with transaction(session, commit=commit):
            self._lock_agent(session, agent_id)
            existing = session.scalars(
                self.slot_repository.scoped_query(principal).where(
                    AvailabilitySlot.agent_id == agent_id,
                    AvailabilitySlot.date == payload.date,
                )
            ).all()
            for slot in existing:
                if overlaps(start, end, *appointment_window(slot.date, slot.start_time, slot.duration)):
                    raise ConflictError(self.slot_repository.resource, "slot overlaps an existing slot")

            slot = self.slot_repository.create(
                session,
                principal,
                {
                    "agent_id": agent_id,
                    "date": payload.date,
                    "start_time": payload.start_time,
                    "end_time": end.time(),
                    "duration": payload.duration,
                    "status": SlotStatus.AVAILABLE,
                },
                commit=False,
            )
        return AvailabilitySlotRead.model_validate(slot)

    def create_with_validation(
        self,
        session: Session,
        principal: Principal | None,
        payload: AppointmentCreate,
        *,
        commit: bool = True,
    ) -> AppointmentRead:
        principal = require_principal(principal)
        agent_id = payload.agent_id or principal.id
        with start_span(tracer, "appointment.create_with_validation", agent_id=str(agent_id)):
            with transaction(session, commit=commit):
                self._check_contact(session, principal, payload.contact_id)
                self._lock_agent(session, agent_id)
                conflict = self.check_conflicts(
                    session, principal, agent_id, payload.date, payload.start_time, payload.estimated_duration
                )
                if conflict.has_conflict:
                    self._record_conflict("create", agent_id, conflict)
                    raise SchedulingConflictError(conflict)

                slot = None
                if payload.availability_slot_id is not None:
                    slot = self._bookable_slot(session, principal, payload, agent_id)

                values = payload.model_dump()
                values["agent_id"] = agent_id
                appointment = self.appointment_repository.create(session, principal, values, commit=False)
                if slot is not None:
                    self.slot_repository.book(session, principal, slot, appointment.id)

                log_contact_activity(
                    session,
                    principal,
                    contact_id=appointment.contact_id,
                    type="MEETING",
                    title="Appointment scheduled",
                    appointment_id=appointment.id,
                    metadata={"date": appointment.date, "start_time": appointment.start_time},
                )
            return AppointmentRead.model_validate(appointment)

    def update_status(
        self,
        session: Session,
        principal: Principal | None,
        appointment_id: uuid.UUID,
        status: AppointmentStatus | str,
        notes: str | None = None,
        *,
        commit: bool = True,
    ) -> AppointmentRead:
        principal = require_principal(principal)
        try:
            target = AppointmentStatus(status)
        except ValueError as exc:
            raise InputValidationError(f"Unknown appointment status '{status}'") from exc

        with start_span(tracer, "appointment.update_status", appointment_id=str(appointment_id)):
            with transaction(session, commit=commit):
                appointment = self.appointment_repository.find_by_id(session, principal, appointment_id)
                current = AppointmentStatus(appointment.status)
                if current in TERMINAL_STATUSES:
                    raise InvalidTransitionError(self.appointment_repository.resource, current.value, target.value)

                now = self.clock()
                values: dict[str, object] = {"status": target}
                if target == AppointmentStatus.COMPLETED:
                    values["actual_duration"] = appointment.estimated_duration
                    values["completed_at"] = now
                elif target == AppointmentStatus.CANCELED:
                    values["canceled_at"] = now
                    if appointment.availability_slot_id is not None:
                        self._release_slot(session, principal, appointment)
                        values["availability_slot_id"] = None

                self.appointment_repository.apply_changes(
                    session,
                    principal,
                    appointment,
                    values,
                    action=f"STATUS_{target.value}",
                    event_type=_STATUS_EVENTS[target],
                    event_payload={
                        "appointment_id": str(appointment.id),
                        "agent_id": str(appointment.agent_id),
                        "contact_id": str(appointment.contact_id),
                        "old_status": current.value,
                        "new_status": target.value,
                    },
                    description=notes,
                )
                log_contact_activity(
                    session,
                    principal,
                    contact_id=appointment.contact_id,
                    type="MEETING" if target == AppointmentStatus.COMPLETED else "NOTE",
                    title=f"Appointment {target.value.lower()}",
                    description=notes,
                    appointment_id=appointment.id,
                    metadata={"old_status": current.value, "new_status": target.value},
                )
            logger.info(
                "appointment status changed",
                extra={"appointment_id": str(appointment_id), "status": target.value},
            )
            return AppointmentRead.model_validate(appointment)

    def reschedule(
        self,
        session: Session,
        principal: Principal | None,
        appointment_id: uuid.UUID,
        new_date: date,
        new_start_time: time | None = None,
        reason: str | None = None,
        *,
        commit: bool = True,
    ) -> AppointmentRead:
        principal = require_principal(principal)
        with start_span(tracer, "appointment.reschedule", appointment_id=str(appointment_id)):
            with transaction(session, commit=commit):
                appointment = self.appointment_repository.find_by_id(session, principal, appointment_id)
                current = AppointmentStatus(appointment.status)
                if current not in ACTIVE_STATUSES:
                    raise InvalidTransitionError(self.appointment_repository.resource, current.value, "RESCHEDULED")

                self._lock_agent(session, appointment.agent_id)
                start_time = new_start_time or appointment.start_time
                conflict = self.check_conflicts(
                    session,
                    principal,
                    appointment.agent_id,
                    new_date,
                    start_time,
                    appointment.estimated_duration,
                    exclude_appointment_id=appointment.id,
                )
                if conflict.has_conflict:
                    self._record_conflict("reschedule", appointment.agent_id, conflict)
                    raise SchedulingConflictError(conflict)

                old_date = appointment.date
                old_start_time = appointment.start_time
                values: dict[str, object] = {
                    "date": new_date,
                    "start_time": start_time,
                    "rescheduling_count": appointment.rescheduling_count + 1,
                    "last_rescheduled_at": self.clock(),
                }
                moved = (new_date, start_time) != (old_date, old_start_time)
                if moved and appointment.availability_slot_id is not None:
                    self._release_slot(session, principal, appointment)
                    values["availability_slot_id"] = None

                self.appointment_repository.apply_changes(
                    session,
                    principal,
                    appointment,
                    values,
                    action="RESCHEDULED",
                    event_type="rescheduled",
                    event_payload={
                        "appointment_id": str(appointment.id),
                        "agent_id": str(appointment.agent_id),
                        "old_date": old_date.isoformat(),
                        "new_date": new_date.isoformat(),
                        "old_start_time": old_start_time.isoformat(),
                        "new_start_time": start_time.isoformat(),
                        "reason": reason,
                    },
                    description=reason,
                )
                log_contact_activity(
                    session,
                    principal,
                    contact_id=appointment.contact_id,
                    type="NOTE",
                    title="Appointment rescheduled",
                    description=reason,
                    appointment_id=appointment.id,
                    metadata={
                        "old_date": old_date,
                        "new_date": new_date,
                        "old_start_time": old_start_time,
                        "new_start_time": start_time,
                        "reason": reason,
                    },
                )
            return AppointmentRead.model_validate(appointment)

    def sync_with_external_calendar(
        self,
        session: Session,
        principal: Principal | None,
        appointment_id: uuid.UUID,
        client: CalendarClient | None = None,
    ) -> AppointmentRead:
        """Push the appointment to the external calendar and record the outcome.

        A failed push is stored on the appointment and in the sync log; it is
        not raised. Retrying is up to the caller.
        """

        principal = require_principal(principal)
        client = client or self.calendar_client
        with start_span(tracer, "appointment.sync_with_external_calendar", appointment_id=str(appointment_id)):
            with transaction(session):
                appointment = self.appointment_repository.find_by_id(session, principal, appointment_id)
                now = self.clock()
                if appointment.sync_status == SyncStatus.SYNCING and not self._sync_is_stale(appointment, now):
                    raise ConflictError(self.appointment_repository.resource, "a calendar sync is already running")
                self.appointment_repository.apply_changes(
                    session,
                    principal,
                    appointment,
                    {"sync_status": SyncStatus.SYNCING, "last_sync_at": now},
                    action="SYNC_STARTED",
                    event_type="sync_started",
                    event_payload={"appointment_id": str(appointment.id)},
                )
                snapshot = AppointmentRead.model_validate(appointment)

            # The remote call runs outside any open transaction.
            external_id: str | None = None
            error: str | None = None
            try:
                external_id = client.push_event(snapshot)
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__

            with transaction(session):
                appointment = self.appointment_repository.find_by_id(session, principal, appointment_id)
                values: dict[str, object] = {"sync_attempts": appointment.sync_attempts + 1}
                if error is None:
                    values.update(sync_status=SyncStatus.SYNCED, sync_error=None, external_event_id=external_id)
                    outcome = "synced"
                else:
                    values.update(sync_status=SyncStatus.FAILED, sync_error=error[:1000])
                    outcome = "sync_failed"
                self.appointment_repository.apply_changes(
                    session,
                    principal,
                    appointment,
                    values,
                    action=outcome.upper(),
                    event_type=outcome,
                    event_payload={
                        "appointment_id": str(appointment.id),
                        "external_event_id": external_id,
                        "error": error,
                        "attempts": appointment.sync_attempts + 1,
                    },
                )
                session.add(
                    CalendarSyncLog(
                        appointment_id=appointment.id,
                        operation="CREATE" if snapshot.external_event_id is None else "UPDATE",
                        direction="OUTBOUND",
                        status="SUCCESS" if error is None else "FAILED",
                        external_event_id=external_id,
                        error=error,
                        created_at=self.clock(),
                    )
                )
                session.flush()

            observe_calendar_sync(outcome)
            if error is not None:
                logger.warning(
                    "calendar sync failed",
                    extra={"appointment_id": str(appointment_id), "status": outcome, "error": error},
                )
            return AppointmentRead.model_validate(appointment)

    # -- statistics -----------------------------------------------------

    def get_stats(self, session: Session, principal: Principal | None) -> AppointmentStats:
        principal = require_principal(principal)
        with start_span(tracer, "appointment.get_stats"):
            appointments = list(session.scalars(self.appointment_repository.scoped_query(principal)).all())
            today = self.clock().date()
            week_start = today - timedelta(days=(today.weekday() + 1) % 7)
            week_end = week_start + timedelta(days=7)
            month_start = today.replace(day=1)
            month_end = today.replace(day=monthrange(today.year, today.month)[1])

            by_status = {status.value: 0 for status in AppointmentStatus}
            by_type = {kind.value: 0 for kind in AppointmentType}
            by_priority = {priority.value: 0 for priority in AppointmentPriority}
            for appointment in appointments:
                by_status[appointment.status] = by_status.get(appointment.status, 0) + 1
                by_type[appointment.type] = by_type.get(appointment.type, 0) + 1
                by_priority[appointment.priority] = by_priority.get(appointment.priority, 0) + 1

            completed = [item for item in appointments if item.status == AppointmentStatus.COMPLETED]
            durations = [
                item.actual_duration or item.estimated_duration or FALLBACK_DURATION_MINUTES for item in completed
            ]
            total = len(appointments)
            return AppointmentStats(
                total=total,
                today=sum(1 for item in appointments if item.date == today),
                this_week=sum(1 for item in appointments if week_start <= item.date < week_end),
                this_month=sum(1 for item in appointments if month_start <= item.date <= month_end),
                by_status=by_status,
                by_type=by_type,
                by_priority=by_priority,
                average_duration=round(sum(durations) / len(durations), 2) if durations else 0.0,
                completion_rate=_percent(by_status[AppointmentStatus.COMPLETED.value], total),
                cancellation_rate=_percent(by_status[AppointmentStatus.CANCELED.value], total),
                rescheduling_rate=_percent(sum(1 for item in appointments if item.rescheduling_count > 0), total),
            )

    # -- internals ------------------------------------------------------

    def _check_agent(self, session: Session, principal: Principal, agent_id: uuid.UUID) -> None:
        validate_scope_write(
            session,
            principal,
            self.appointment_repository.scope_fields,
            {"agent_id": agent_id},
            resource=self.appointment_repository.resource,
        )

    def _lock_agent(self, session: Session, agent_id: uuid.UUID) -> None:
        # Serialises check-then-book per agent. SQLite ignores FOR UPDATE.
        session.execute(select(User.id).where(User.id == agent_id).with_for_update())

    def _check_contact(self, session: Session, principal: Principal, contact_id: uuid.UUID) -> None:
        try:
            self.contact_repository.find_by_id(session, principal, contact_id)
        except NotFoundError as exc:
            raise InvalidReferenceError(
                self.appointment_repository.resource, f"contact '{contact_id}' does not exist"
            ) from exc

    def _active_appointments(
        self,
        session: Session,
        principal: Principal,
        agent_id: uuid.UUID,
        day: date,
        exclude_appointment_id: uuid.UUID | None,
    ) -> list[Appointment]:
        query = self.appointment_repository.scoped_query(principal).where(
            Appointment.agent_id == agent_id,
            Appointment.date == day,
            Appointment.status.in_(ACTIVE_STATUSES),
        )
        if exclude_appointment_id is not None:
            query = query.where(Appointment.id != exclude_appointment_id)
        return list(session.scalars(query.order_by(Appointment.start_time)).all())

    def _open_slots(
        self, session: Session, principal: Principal, agent_id: uuid.UUID, day: date, duration: int
    ) -> list[AvailabilitySlot]:
        return list(
            session.scalars(
                self.slot_repository.scoped_query(principal)
                .where(
                    AvailabilitySlot.agent_id == agent_id,
                    AvailabilitySlot.date == day,
                    AvailabilitySlot.status == SlotStatus.AVAILABLE,
                    AvailabilitySlot.duration >= duration,
                )
                .order_by(AvailabilitySlot.start_time)
            ).all()
        )

    def _suggest_slots(
        self,
        session: Session,
        principal: Principal,
        agent_id: uuid.UUID,
        day: date,
        duration: int,
        busy: list[Appointment],
    ) -> list[AvailabilitySlotRead]:
        busy_windows = [self._window_of(appointment) for appointment in busy]
        suggestions: list[AvailabilitySlotRead] = []
        for slot in self._open_slots(session, principal, agent_id, day, duration):
            start, end = appointment_window(slot.date, slot.start_time, duration)
            if any(overlaps(start, end, *window) for window in busy_windows):
                continue
            suggestions.append(AvailabilitySlotRead.model_validate(slot))
            if len(suggestions) == MAX_SUGGESTIONS:
                break
        return suggestions

    def _bookable_slot(
        self, session: Session, principal: Principal, payload: AppointmentCreate, agent_id: uuid.UUID
    ) -> AvailabilitySlot:
        slot = self.slot_repository.find_by_id(session, principal, payload.availability_slot_id)
        if slot.agent_id != agent_id or slot.date != payload.date:
            raise InputValidationError("Availability slot does not belong to this agent and date")
        if slot.status != SlotStatus.AVAILABLE:
            conflict = AppointmentConflict(
                has_conflict=True,
                suggestions=self.get_available_slots(
                    session, principal, agent_id, payload.date, payload.estimated_duration
                )[:MAX_SUGGESTIONS],
            )
            self._record_conflict("book_slot", agent_id, conflict)
            raise SchedulingConflictError(conflict)
        start, end = appointment_window(payload.date, payload.start_time, payload.estimated_duration)
        slot_start, slot_end = appointment_window(slot.date, slot.start_time, slot.duration)
        if start < slot_start or end > slot_end:
            raise InputValidationError("Appointment does not fit inside the availability slot")
        return slot

    def _release_slot(self, session: Session, principal: Principal, appointment: Appointment) -> None:
        slot = session.get(AvailabilitySlot, appointment.availability_slot_id)
        if slot is not None and slot.appointment_id == appointment.id:
            self.slot_repository.release(session, principal, slot)

    def _sync_is_stale(self, appointment: Appointment, now: datetime) -> bool:
        if appointment.last_sync_at is None:
            return True
        stale_after = timedelta(seconds=get_settings().calendar_sync_stale_after_seconds)
        return now - as_utc(appointment.last_sync_at) >= stale_after

    def _record_conflict(self, operation: str, agent_id: uuid.UUID, conflict: AppointmentConflict) -> None:
        observe_scheduling_conflict(operation)
        logger.info(
            "scheduling conflict",
            extra={
                "agent_id": str(agent_id),
                "action": operation,
                "status": f"{len(conflict.conflicting_appointments)} conflicting",
            },
        )

    @staticmethod
    def _window_of(appointment: Appointment) -> tuple[datetime, datetime]:
        return appointment_window(
            appointment.date,
            appointment.start_time,
            appointment.estimated_duration or FALLBACK_DURATION_MINUTES,
        )
