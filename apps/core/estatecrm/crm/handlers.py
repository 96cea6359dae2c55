from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from estatecrm.core.events import EventHandler, InProcessEventBus, InternalEvent
from estatecrm.crm.scoring import LeadScoringEngine
from estatecrm.platform.security.context import Principal

logger = logging.getLogger("estatecrm.handlers")

DEAL_STAGE_CHANGED = "deal.stage_changed"


def principal_from_envelope(envelope: dict[str, Any]) -> Principal:
    actor = envelope["actor"]
    return Principal(id=uuid.UUID(actor["id"]), tenant_id=actor["tenant_id"], role=actor["role"])


def make_deal_stage_score_handler(
    session_factory: sessionmaker[Session],
    scoring: LeadScoringEngine,
) -> EventHandler:
    def handle(event: InternalEvent) -> None:
        payload = event.payload.get("payload", {})
        delta = int(payload.get("score_delta") or 0)
        if delta == 0:
            return

        session = session_factory()
        try:
            scoring.adjust_score(
                session,
                principal_from_envelope(event.payload),
                uuid.UUID(payload["client_id"]),
                delta,
                reason=f"Deal moved to {payload.get('to_stage')}",
            )
        except Exception:
            logger.exception(
                "deal stage score adjustment failed",
                extra={
                    "event_name": event.name,
                    "entity_id": payload.get("deal_id"),
                    "contact_id": payload.get("client_id"),
                },
            )
        finally:
            session.close()

    return handle


def register_handlers(
    bus: InProcessEventBus,
    session_factory: sessionmaker[Session],
    scoring: LeadScoringEngine | None = None,
) -> dict[str, EventHandler]:
    """Wire the cross-entity reactions onto ``bus`` and return them by event name."""

    handlers = {
        DEAL_STAGE_CHANGED: make_deal_stage_score_handler(session_factory, scoring or LeadScoringEngine()),
    }
    for event_name, handler in handlers.items():
        bus.subscribe(event_name, handler)
    return handlers
