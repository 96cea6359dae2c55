from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from estatecrm.core.clock import utcnow
from estatecrm.crm.errors import InputValidationError, InvalidReferenceError, NotFoundError
from estatecrm.crm.models import (
    Appointment,
    AvailabilitySlot,
    Contact,
    ContactCategory,
    Deal,
    DealStatus,
    LeadStage,
    Property,
    SlotStatus,
)
from estatecrm.crm.stages import is_closed
from estatecrm.models.audit import ActivityLog
from estatecrm.platform.security.context import Principal
from estatecrm.platform.security.repository import EntityRepository
from estatecrm.platform.security.scope import ScopeFields

MIN_LEAD_SCORE = 0
MAX_LEAD_SCORE = 100


def clamp_score(score: int) -> int:
    return max(MIN_LEAD_SCORE, min(MAX_LEAD_SCORE, int(score)))


class PropertyRepository(EntityRepository[Property]):
    model = Property
    resource = "property"
    scope_fields = ScopeFields(tenant="tenant_id", owner="agent_id")


class ContactRepository(EntityRepository[Contact]):
    model = Contact
    resource = "contact"
    scope_fields = ScopeFields(owner="agent_id")
    protected_fields = frozenset(
        {"lead_score", "lead_stage", "category", "interaction_count", "last_interaction_at"}
    )

    def _prepare_create(self, session: Session, principal: Principal, data: dict[str, Any]) -> dict[str, Any]:
        data["lead_score"] = clamp_score(data.get("lead_score") or 0)
        stage = data.get("lead_stage") or LeadStage.NEW
        if stage == LeadStage.CONVERTED:
            data["category"] = ContactCategory.CLIENT
        elif data.get("category") == ContactCategory.CLIENT:
            raise InputValidationError("Only converted leads can be created as clients")
        return data


class DealRepository(EntityRepository[Deal]):
    model = Deal
    resource = "deal"
    scope_fields = ScopeFields(owner="agent_id")
    protected_fields = frozenset({"stage", "status", "closed_at"})

    def __init__(
        self,
        contact_repository: ContactRepository | None = None,
        property_repository: PropertyRepository | None = None,
    ) -> None:
        self.contact_repository = contact_repository or ContactRepository()
        self.property_repository = property_repository or PropertyRepository()

    def _prepare_create(self, session: Session, principal: Principal, data: dict[str, Any]) -> dict[str, Any]:
        self._check_value(data.get("value"))
        if data.get("client_id") is None:
            raise InputValidationError("Deal requires a client contact")
        self._check_visible(session, principal, self.contact_repository, data["client_id"], "client")
        if data.get("property_id") is not None:
            self._check_visible(session, principal, self.property_repository, data["property_id"], "property")

        if is_closed(data.get("stage") or "LEAD_IN"):
            data["status"] = DealStatus.CLOSED
            data["closed_at"] = utcnow()
        else:
            data["status"] = DealStatus.ACTIVE
            data["closed_at"] = None
        return data

    def _prepare_update(
        self, session: Session, principal: Principal, record: Deal, data: dict[str, Any]
    ) -> dict[str, Any]:
        if "value" in data:
            self._check_value(data["value"])
        if data.get("client_id") is not None:
            self._check_visible(session, principal, self.contact_repository, data["client_id"], "client")
        if data.get("property_id") is not None:
            self._check_visible(session, principal, self.property_repository, data["property_id"], "property")
        return data

    @staticmethod
    def _check_value(value: Any) -> None:
        if value is None or Decimal(value) <= 0:
            raise InputValidationError("Deal value must be greater than zero")

    def _check_visible(
        self,
        session: Session,
        principal: Principal,
        repository: EntityRepository[Any],
        entity_id: uuid.UUID,
        label: str,
    ) -> None:
        try:
            repository.find_by_id(session, principal, entity_id)
        except NotFoundError as exc:
            raise InvalidReferenceError(self.resource, f"{label} '{entity_id}' does not exist") from exc


class AvailabilitySlotRepository(EntityRepository[AvailabilitySlot]):
    model = AvailabilitySlot
    resource = "availability_slot"
    scope_fields = ScopeFields(owner="agent_id")
    protected_fields = frozenset({"status", "appointment_id"})

    def book(
        self, session: Session, principal: Principal, slot: AvailabilitySlot, appointment_id: uuid.UUID
    ) -> AvailabilitySlot:
        """Flip an available slot to booked; a concurrent booking loses with a conflict."""

        return self.apply_changes(
            session,
            principal,
            slot,
            {"status": SlotStatus.BOOKED, "appointment_id": appointment_id},
            action="BOOKED",
            event_type="booked",
            conditions=(AvailabilitySlot.status == SlotStatus.AVAILABLE,),
        )

    def release(self, session: Session, principal: Principal, slot: AvailabilitySlot) -> AvailabilitySlot:
        return self.apply_changes(
            session,
            principal,
            slot,
            {"status": SlotStatus.AVAILABLE, "appointment_id": None},
            action="RELEASED",
            event_type="released",
        )


class AppointmentRepository(EntityRepository[Appointment]):
    model = Appointment
    resource = "appointment"
    scope_fields = ScopeFields(owner="agent_id")
    protected_fields = frozenset(
        {
            "status",
            "date",
            "start_time",
            "estimated_duration",
            "actual_duration",
            "availability_slot_id",
            "rescheduling_count",
            "last_rescheduled_at",
            "completed_at",
            "canceled_at",
            "sync_status",
            "sync_attempts",
            "last_sync_at",
            "sync_error",
            "external_event_id",
        }
    )

    def __init__(self, slot_repository: AvailabilitySlotRepository | None = None) -> None:
        self.slot_repository = slot_repository or AvailabilitySlotRepository()

    def _before_delete(self, session: Session, principal: Principal, record: Appointment) -> None:
        if record.availability_slot_id is None:
            return
        slot = session.get(AvailabilitySlot, record.availability_slot_id)
        if slot is not None and slot.appointment_id == record.id:
            self.slot_repository.release(session, principal, slot)


class ActivityLogRepository(EntityRepository[ActivityLog]):
    model = ActivityLog
    resource = "activity_log"
    scope_fields = ScopeFields(user="actor_id")
