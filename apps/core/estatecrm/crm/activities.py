from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from estatecrm.core.clock import utcnow
from estatecrm.crm.models import LeadActivity
from estatecrm.metrics import observe_audit_write_failure
from estatecrm.platform.security.context import Principal
from estatecrm.platform.security.repository import serialize_value

logger = logging.getLogger("estatecrm.activities")


def log_contact_activity(
    session: Session,
    principal: Principal,
    *,
    contact_id: uuid.UUID,
    type: str,
    title: str,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
    appointment_id: uuid.UUID | None = None,
    deal_id: uuid.UUID | None = None,
) -> LeadActivity | None:
    """Append a contact activity row inside a savepoint; failures are logged, not raised."""

    activity = LeadActivity(
        contact_id=contact_id,
        type=type,
        title=title,
        description=description,
        activity_metadata={key: serialize_value(value) for key, value in (metadata or {}).items()},
        appointment_id=appointment_id,
        deal_id=deal_id,
        performed_by_id=principal.id,
        created_at=utcnow(),
    )
    try:
        with session.begin_nested():
            session.add(activity)
            session.flush()
    except SQLAlchemyError as exc:
        observe_audit_write_failure("contact_activity")
        logger.exception(
            "contact activity write failed",
            extra={"contact_id": str(contact_id), "action": type, "error": str(exc)},
        )
        return None
    return activity
