from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from estatecrm.context import get_correlation_id
from estatecrm.metrics import observe_audit_write_failure
from estatecrm.models.audit import ActivityLog

logger = logging.getLogger("estatecrm.audit")


def record(
    session: Session,
    *,
    actor_id: uuid.UUID,
    entity_type: str,
    entity_id: uuid.UUID | str,
    action: str,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> ActivityLog | None:
    """Append an audit row inside a savepoint.

    Failures are logged and counted; the caller's transaction is left intact.
    """

    entry_metadata = dict(metadata or {})
    correlation_id = get_correlation_id()
    if correlation_id:
        entry_metadata.setdefault("correlation_id", correlation_id)

    entry = ActivityLog(
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        description=description,
        event_metadata=entry_metadata,
    )
    try:
        with session.begin_nested():
            session.add(entry)
            session.flush()
    except SQLAlchemyError as exc:
        observe_audit_write_failure("audit")
        logger.exception(
            "audit write failed",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action,
                "actor_id": str(actor_id),
                "error": str(exc),
            },
        )
        return None
    return entry
