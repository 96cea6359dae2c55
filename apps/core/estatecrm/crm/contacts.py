from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from estatecrm.core.clock import utcnow
from estatecrm.core.database import transaction
from estatecrm.crm.activities import log_contact_activity
from estatecrm.crm.errors import InputValidationError
from estatecrm.crm.models import ContactCategory, LeadActivity, LeadStage
from estatecrm.crm.repositories import ContactRepository
from estatecrm.crm.schemas import ContactRead, LeadActivityRead
from estatecrm.otel import get_tracer, start_span
from estatecrm.platform.security.context import Principal, require_principal

tracer = get_tracer("estatecrm.contacts")


@dataclass(slots=True)
class ContactService:
    contact_repository: ContactRepository = field(default_factory=ContactRepository)
    clock: Callable[[], datetime] = utcnow

    def change_lead_stage(
        self,
        session: Session,
        principal: Principal | None,
        contact_id: uuid.UUID,
        stage: LeadStage | str,
        notes: str | None = None,
        *,
        commit: bool = True,
    ) -> ContactRead:
        """Move a lead through its funnel; converting a lead makes it a client."""

        principal = require_principal(principal)
        try:
            target = LeadStage(stage)
        except ValueError as exc:
            raise InputValidationError(f"Unknown lead stage '{stage}'") from exc

        with start_span(tracer, "contact.change_lead_stage", contact_id=str(contact_id)):
            with transaction(session, commit=commit):
                contact = self.contact_repository.find_by_id(session, principal, contact_id)
                previous = contact.lead_stage
                values: dict[str, Any] = {"lead_stage": target, "last_interaction_at": self.clock()}
                if target == LeadStage.QUALIFIED:
                    values["is_qualified"] = True
                if target == LeadStage.CONVERTED:
                    values["category"] = ContactCategory.CLIENT

                self.contact_repository.apply_changes(
                    session,
                    principal,
                    contact,
                    values,
                    action="STAGE_CHANGED",
                    event_type="stage_changed",
                    event_payload={
                        "contact_id": str(contact.id),
                        "from_stage": previous,
                        "to_stage": target.value,
                        "notes": notes,
                    },
                    description=notes,
                )
                log_contact_activity(
                    session,
                    principal,
                    contact_id=contact.id,
                    type="STAGE_CHANGE",
                    title=f"Lead stage changed from {previous} to {target.value}",
                    description=notes,
                    metadata={"from_stage": previous, "to_stage": target.value},
                )
            return ContactRead.model_validate(contact)

    def log_interaction(
        self,
        session: Session,
        principal: Principal | None,
        contact_id: uuid.UUID,
        type: str,
        title: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        commit: bool = True,
    ) -> ContactRead:
        principal = require_principal(principal)
        if not type or not title:
            raise InputValidationError("Interaction type and title are required")
        with transaction(session, commit=commit):
            contact = self.contact_repository.find_by_id(session, principal, contact_id)
            self.contact_repository.apply_changes(
                session,
                principal,
                contact,
                {
                    "interaction_count": contact.interaction_count + 1,
                    "last_interaction_at": self.clock(),
                },
                action="INTERACTION_LOGGED",
                event_type="interaction_logged",
                event_payload={"contact_id": str(contact.id), "type": type, "title": title},
            )
            log_contact_activity(
                session,
                principal,
                contact_id=contact.id,
                type=type,
                title=title,
                description=description,
                metadata=metadata,
            )
        return ContactRead.model_validate(contact)

    def list_activities(
        self, session: Session, principal: Principal | None, contact_id: uuid.UUID
    ) -> list[LeadActivityRead]:
        principal = require_principal(principal)
        contact = self.contact_repository.find_by_id(session, principal, contact_id)
        rows = session.scalars(
            select(LeadActivity)
            .where(LeadActivity.contact_id == contact.id)
            .order_by(LeadActivity.created_at, LeadActivity.id)
        ).all()
        return [LeadActivityRead.model_validate(row) for row in rows]
