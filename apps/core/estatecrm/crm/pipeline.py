from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from estatecrm import events
from estatecrm.core.clock import as_utc, days_between, months_between, utcnow
from estatecrm.core.database import transaction
from estatecrm.crm import stages
from estatecrm.crm.errors import InputValidationError, InvalidTransitionError
from estatecrm.crm.models import Deal, DealStage, DealStageHistory, DealStatus
from estatecrm.crm.repositories import DealRepository
from estatecrm.crm.schemas import DealForecast, DealRead, DealStats, StageHistoryRead, StageStats
from estatecrm.metrics import observe_invalid_transition, observe_stage_transition
from estatecrm.otel import get_tracer, start_span
from estatecrm.platform.security.context import Principal, require_principal
from estatecrm.platform.security.repository import serialize_value

logger = logging.getLogger("estatecrm.pipeline")
tracer = get_tracer("estatecrm.pipeline")

_RISK_RANK = {"low": 0, "medium": 1, "high": 2}

STAGE_RECOMMENDATIONS: dict[DealStage, str] = {
    DealStage.LEAD_IN: "Schedule a qualification meeting",
    DealStage.QUALIFICATION: "Prepare a tailored proposal",
    DealStage.PROPOSAL: "Follow up on the proposal sent",
    DealStage.NEGOTIATION: "Identify and resolve the final objections",
}


def _parse_stage(value: DealStage | str) -> DealStage:
    try:
        return DealStage(value)
    except ValueError as exc:
        raise InputValidationError(f"Unknown deal stage '{value}'") from exc


def _percent(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


@dataclass(slots=True)
class DealPipelineEngine:
    deal_repository: DealRepository = field(default_factory=DealRepository)
    clock: Callable[[], datetime] = utcnow

    def move_to_stage(
        self,
        session: Session,
        principal: Principal | None,
        deal_id: uuid.UUID,
        new_stage: DealStage | str,
        reason: str | None = None,
        *,
        expected_version: int | None = None,
        commit: bool = True,
    ) -> DealRead:
        principal = require_principal(principal)
        target = _parse_stage(new_stage)
        with start_span(tracer, "deal.move_to_stage", deal_id=str(deal_id), to_stage=target.value):
            with transaction(session, commit=commit):
                deal = self.deal_repository.find_by_id(session, principal, deal_id)
                current = DealStage(deal.stage)
                if not stages.can_transition(current, target):
                    observe_invalid_transition()
                    logger.info(
                        "deal transition rejected",
                        extra={
                            "entity_id": str(deal.id),
                            "from_stage": current.value,
                            "to_stage": target.value,
                        },
                    )
                    raise InvalidTransitionError(self.deal_repository.resource, current.value, target.value)

                now = self.clock()
                days_in_stage = days_between(self._stage_entered_at(session, deal), now)

                values: dict[str, object] = {"stage": target}
                if stages.is_closed(target):
                    values["status"] = DealStatus.CLOSED
                    values["closed_at"] = now
                elif stages.is_closed(current):
                    values["status"] = DealStatus.ACTIVE
                    values["closed_at"] = None

                self.deal_repository.apply_changes(
                    session,
                    principal,
                    deal,
                    values,
                    action="STAGE_CHANGED",
                    event_type="stage_changed",
                    event_payload={
                        "deal_id": str(deal.id),
                        "client_id": str(deal.client_id),
                        "from_stage": current.value,
                        "to_stage": target.value,
                        "days_in_stage": days_in_stage,
                        "score_delta": stages.score_delta(target),
                        "reason": reason,
                    },
                    expected_version=expected_version,
                    description=reason,
                )
                session.add(
                    DealStageHistory(
                        deal_id=deal.id,
                        from_stage=current,
                        to_stage=target,
                        changed_at=now,
                        changed_by=principal.id,
                        days_in_stage=days_in_stage,
                        reason=reason,
                    )
                )
                session.flush()

                if target in (DealStage.WON, DealStage.LOST):
                    events.enqueue(
                        session,
                        events.build_envelope(
                            f"deal.{target.value.lower()}",
                            actor=principal,
                            payload={
                                "deal_id": str(deal.id),
                                "value": serialize_value(deal.value),
                                "client_id": str(deal.client_id),
                                "property_id": serialize_value(deal.property_id),
                                "agent_id": str(deal.agent_id),
                            },
                        ),
                    )

            observe_stage_transition(current.value, target.value)
            logger.info(
                "deal stage changed",
                extra={
                    "entity_id": str(deal_id),
                    "from_stage": current.value,
                    "to_stage": target.value,
                    "actor_id": str(principal.id),
                },
            )
            return DealRead.model_validate(deal)

    def update_value(
        self,
        session: Session,
        principal: Principal | None,
        deal_id: uuid.UUID,
        value: Decimal,
        reason: str | None = None,
        *,
        commit: bool = True,
    ) -> DealRead:
        principal = require_principal(principal)
        if Decimal(value) <= 0:
            raise InputValidationError("Deal value must be greater than zero")
        with transaction(session, commit=commit):
            deal = self.deal_repository.find_by_id(session, principal, deal_id)
            previous = deal.value
            self.deal_repository.apply_changes(
                session,
                principal,
                deal,
                {"value": Decimal(value)},
                action="VALUE_UPDATED",
                event_type="value_updated",
                event_payload={
                    "deal_id": str(deal.id),
                    "previous_value": serialize_value(previous),
                    "value": serialize_value(Decimal(value)),
                    "reason": reason,
                },
                description=reason,
            )
        return DealRead.model_validate(deal)

    def get_stage_history(
        self, session: Session, principal: Principal | None, deal_id: uuid.UUID
    ) -> list[StageHistoryRead]:
        principal = require_principal(principal)
        deal = self.deal_repository.find_by_id(session, principal, deal_id)
        rows = session.scalars(
            select(DealStageHistory)
            .where(DealStageHistory.deal_id == deal.id)
            .order_by(DealStageHistory.changed_at, DealStageHistory.id)
        ).all()
        return [StageHistoryRead.model_validate(row) for row in rows]

    def get_forecast(
        self,
        session: Session,
        principal: Principal | None,
        deal_id: uuid.UUID | None = None,
    ) -> list[DealForecast]:
        """Forecast one deal, or every open deal in scope."""

        principal = require_principal(principal)
        with start_span(tracer, "deal.get_forecast"):
            if deal_id is not None:
                deals = [self.deal_repository.find_by_id(session, principal, deal_id)]
            else:
                deals = list(
                    session.scalars(
                        self.deal_repository.scoped_query(principal)
                        .where(Deal.status == DealStatus.ACTIVE)
                        .order_by(Deal.created_at, Deal.id)
                    ).all()
                )
            now = self.clock()
            return [self._forecast(deal, now) for deal in deals if not stages.is_closed(deal.stage)]

    def get_stats(self, session: Session, principal: Principal | None) -> DealStats:
        principal = require_principal(principal)
        with start_span(tracer, "deal.get_stats"):
            deals = list(session.scalars(self.deal_repository.scoped_query(principal)).all())
            now = self.clock()

            by_stage = {stage.value: StageStats() for stage in DealStage}
            for deal in deals:
                bucket = by_stage[DealStage(deal.stage).value]
                bucket.count += 1
                bucket.value += deal.value

            total = len(deals)
            total_value = sum((deal.value for deal in deals), Decimal("0"))
            won = [deal for deal in deals if deal.stage == DealStage.WON]
            lost = [deal for deal in deals if deal.stage == DealStage.LOST]
            open_deals = [deal for deal in deals if not stages.is_closed(deal.stage)]
            closed_count = len(won) + len(lost)

            month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
            closed_this_month = [
                deal for deal in won if deal.closed_at is not None and as_utc(deal.closed_at) >= month_start
            ]

            won_with_close = [deal for deal in won if deal.closed_at is not None]
            average_days_to_close = (
                sum(days_between(deal.created_at, deal.closed_at) for deal in won_with_close) / len(won_with_close)
                if won_with_close
                else 0.0
            )

            if deals:
                oldest = min(as_utc(deal.created_at) for deal in deals)
                months = max(1, months_between(oldest, now))
            else:
                months = 1

            return DealStats(
                total=total,
                total_value=total_value,
                average_value=(total_value / total).quantize(Decimal("0.01")) if total else Decimal("0"),
                by_stage=by_stage,
                conversion_rate=_percent(len(won), total),
                win_rate=_percent(len(won), closed_count),
                lost_rate=_percent(len(lost), closed_count),
                active_deals=len(open_deals),
                expected_revenue=sum(
                    (stages.expected_value(deal.value, deal.stage) for deal in open_deals), Decimal("0")
                ),
                closed_this_month=len(closed_this_month),
                closed_this_month_value=sum((deal.value for deal in closed_this_month), Decimal("0")),
                average_days_to_close=round(average_days_to_close, 2),
                velocity=round(len(won) / months, 2),
            )

    def _stage_entered_at(self, session: Session, deal: Deal) -> datetime:
        last_change = session.scalar(
            select(func.max(DealStageHistory.changed_at)).where(DealStageHistory.deal_id == deal.id)
        )
        return last_change if last_change is not None else deal.created_at

    def _forecast(self, deal: Deal, now: datetime) -> DealForecast:
        stage = DealStage(deal.stage)
        days_in_pipeline = days_between(deal.created_at, now)
        today = now.date()
        risk = "low"
        recommendations: list[str] = []

        def raise_risk(level: str, message: str) -> None:
            nonlocal risk
            if _RISK_RANK[level] > _RISK_RANK[risk]:
                risk = level
            recommendations.append(message)

        if days_in_pipeline > 90:
            raise_risk("high", "Deal has been in the pipeline for more than 90 days")
        elif days_in_pipeline > 60:
            raise_risk("medium", "Consider speeding up the sales process")

        if stage == DealStage.LEAD_IN and days_in_pipeline > 30:
            raise_risk("high", "Lead still not qualified after 30 days; qualify within 30 days")

        if deal.expected_close_date is not None:
            days_until_close = (deal.expected_close_date - today).days
            if days_until_close < 0:
                raise_risk("high", "Expected close date has passed")
            elif days_until_close <= 7 and stage != DealStage.NEGOTIATION:
                raise_risk("medium", "Close date is near but the deal is not in negotiation")

        if stage in STAGE_RECOMMENDATIONS:
            recommendations.append(STAGE_RECOMMENDATIONS[stage])

        return DealForecast(
            deal_id=deal.id,
            title=deal.title,
            stage=stage.value,
            value=deal.value,
            probability=stages.win_probability(stage),
            expected_value=stages.expected_value(deal.value, stage),
            days_in_pipeline=days_in_pipeline,
            expected_close_date=deal.expected_close_date,
            estimated_close_date=deal.expected_close_date or self._estimate_close_date(stage, today),
            risk=risk,
            recommendations=recommendations,
        )

    @staticmethod
    def _estimate_close_date(stage: DealStage, today: date) -> date:
        return today + timedelta(days=stages.STAGE_CLOSE_OFFSET_DAYS.get(stage, 30))
