from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from estatecrm.core.clock import as_utc, utcnow
from estatecrm.core.database import transaction
from estatecrm.crm.activities import log_contact_activity
from estatecrm.crm.models import Appointment, Contact, Deal, DealStatus, LeadStage
from estatecrm.crm.repositories import ContactRepository, clamp_score
from estatecrm.crm.schemas import ContactRead
from estatecrm.metrics import observe_lead_score_update
from estatecrm.otel import get_tracer, start_span
from estatecrm.platform.security.context import Principal, require_principal

logger = logging.getLogger("estatecrm.scoring")
tracer = get_tracer("estatecrm.scoring")

BASE_SCORE = 10
STAGE_POINTS: dict[LeadStage, int] = {
    LeadStage.NEW: 0,
    LeadStage.CONTACTED: 15,
    LeadStage.QUALIFIED: 25,
    LeadStage.INTERESTED: 35,
    LeadStage.NEGOTIATING: 40,
    LeadStage.CONVERTED: 50,
    LeadStage.LOST: -50,
}
POINTS_PER_INTERACTION = 2
MAX_INTERACTION_POINTS = 20
QUALIFIED_BONUS = 10
BUDGET_BONUS = 10
ACTIVE_DEAL_BONUS = 15
APPOINTMENT_BONUS = 10
INACTIVITY_THRESHOLDS_DAYS = (30, 60, 90)
INACTIVITY_PENALTY = 10
RECALCULATION_REASON = "automatic recalculation"


def compute_lead_score(
    *,
    lead_stage: LeadStage | str,
    interaction_count: int,
    is_qualified: bool,
    has_budget: bool,
    has_active_deal: bool,
    has_appointment: bool,
    days_since_interaction: int | None,
) -> int:
    score = BASE_SCORE + STAGE_POINTS.get(LeadStage(lead_stage), 0)
    score += min(POINTS_PER_INTERACTION * max(interaction_count, 0), MAX_INTERACTION_POINTS)
    if is_qualified:
        score += QUALIFIED_BONUS
    if has_budget:
        score += BUDGET_BONUS
    if has_active_deal:
        score += ACTIVE_DEAL_BONUS
    if has_appointment:
        score += APPOINTMENT_BONUS
    if days_since_interaction is not None:
        for threshold in INACTIVITY_THRESHOLDS_DAYS:
            if days_since_interaction > threshold:
                score -= INACTIVITY_PENALTY
    return clamp_score(score)


@dataclass(slots=True)
class LeadScoringEngine:
    contact_repository: ContactRepository = field(default_factory=ContactRepository)
    clock: Callable[[], datetime] = utcnow

    def update_score(
        self,
        session: Session,
        principal: Principal | None,
        contact_id: uuid.UUID,
        score: int,
        reason: str | None = None,
        *,
        source: str = "manual",
        commit: bool = True,
    ) -> ContactRead:
        principal = require_principal(principal)
        with start_span(tracer, "lead.update_score", contact_id=str(contact_id)):
            with transaction(session, commit=commit):
                contact = self.contact_repository.find_by_id(session, principal, contact_id)
                previous = contact.lead_score
                new_score = clamp_score(score)
                self.contact_repository.apply_changes(
                    session,
                    principal,
                    contact,
                    {"lead_score": new_score},
                    action="SCORE_UPDATED",
                    event_type="score_updated",
                    event_payload={
                        "id": str(contact.id),
                        "previous_score": previous,
                        "score": new_score,
                        "reason": reason,
                    },
                    description=reason,
                )
                log_contact_activity(
                    session,
                    principal,
                    contact_id=contact.id,
                    type="SCORE_UPDATED",
                    title=f"Lead score updated to {new_score}",
                    description=reason,
                    metadata={"previous_score": previous, "score": new_score, "reason": reason},
                )
            observe_lead_score_update(source)
            logger.info(
                "lead score updated",
                extra={"contact_id": str(contact_id), "action": source, "status": str(new_score)},
            )
            return ContactRead.model_validate(contact)

    def adjust_score(
        self,
        session: Session,
        principal: Principal | None,
        contact_id: uuid.UUID,
        delta: int,
        reason: str,
        *,
        commit: bool = True,
    ) -> ContactRead:
        principal = require_principal(principal)
        contact = self.contact_repository.find_by_id(session, principal, contact_id)
        return self.update_score(
            session,
            principal,
            contact_id,
            contact.lead_score + delta,
            reason,
            source="adjustment",
            commit=commit,
        )

    def recalculate(
        self,
        session: Session,
        principal: Principal | None,
        contact_id: uuid.UUID,
        *,
        commit: bool = True,
    ) -> ContactRead:
        """Derive the score from the contact's current state and persist it."""

        principal = require_principal(principal)
        with start_span(tracer, "lead.recalculate", contact_id=str(contact_id)):
            with transaction(session, commit=commit):
                contact = self.contact_repository.find_by_id(session, principal, contact_id)
                score = compute_lead_score(
                    lead_stage=contact.lead_stage,
                    interaction_count=contact.interaction_count,
                    is_qualified=contact.is_qualified,
                    has_budget=self._has_budget(contact),
                    has_active_deal=self._has_active_deal(session, contact),
                    has_appointment=self._has_appointment(session, contact),
                    days_since_interaction=self._days_since_interaction(contact),
                )
                result = self.update_score(
                    session,
                    principal,
                    contact.id,
                    score,
                    RECALCULATION_REASON,
                    source="recalculation",
                    commit=False,
                )
            return result

    @staticmethod
    def _has_budget(contact: Contact) -> bool:
        return contact.budget is not None and Decimal(contact.budget) != 0

    @staticmethod
    def _has_active_deal(session: Session, contact: Contact) -> bool:
        # The contact was already read through scope; related rows hang off it.
        return bool(
            session.scalar(
                select(exists().where(Deal.client_id == contact.id, Deal.status == DealStatus.ACTIVE))
            )
        )

    @staticmethod
    def _has_appointment(session: Session, contact: Contact) -> bool:
        return bool(session.scalar(select(exists().where(Appointment.contact_id == contact.id))))

    def _days_since_interaction(self, contact: Contact) -> int | None:
        if contact.last_interaction_at is None:
            return None
        return max((self.clock() - as_utc(contact.last_interaction_at)).days, 0)
