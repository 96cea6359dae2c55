from __future__ import annotations

import logging
import uuid
from collections import deque
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction

from estatecrm.context import get_correlation_id
from estatecrm.core.clock import utcnow
from estatecrm.core.events import event_bus

logger = logging.getLogger("estatecrm.events")

_PENDING_KEY = "estatecrm.pending_events"

PUBLISHED_EVENTS_LIMIT = 1000

# Recent envelopes only; subscribers on event_bus are the delivery path.
published_events: deque[dict[str, Any]] = deque(maxlen=PUBLISHED_EVENTS_LIMIT)


def build_envelope(
    event_type: str,
    *,
    actor: Any,
    payload: dict[str, Any],
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": utcnow().isoformat(),
        "actor_user_id": str(actor.id),
        "actor": {"id": str(actor.id), "tenant_id": actor.tenant_id, "role": str(actor.role)},
        "payload": payload,
        "correlation_id": get_correlation_id(),
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def enqueue(session: Session, envelope: dict[str, Any]) -> None:
    """Hold an event until the session's transaction commits."""

    session.info.setdefault(_PENDING_KEY, []).append(envelope)


def publish_pending(session: Session) -> None:
    pending: list[dict[str, Any]] = session.info.pop(_PENDING_KEY, [])
    for envelope in pending:
        try:
            publish(envelope)
        except Exception:
            # The mutation is already committed; a subscriber failure must not surface as one.
            logger.exception(
                "event subscriber failed",
                extra={"event_name": envelope.get("event_type")},
            )


def discard_pending(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)


@event.listens_for(Session, "after_soft_rollback")
def _discard_on_rollback(session: Session, previous_transaction: SessionTransaction) -> None:
    # Savepoint rollbacks keep the outer transaction, and its queued events, alive.
    if previous_transaction.parent is None:
        discard_pending(session)
