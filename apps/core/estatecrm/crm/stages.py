"""Deal pipeline state machine and stage-derived numbers.

Everything here is a pure function of the stage; no I/O.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from estatecrm.crm.models import DealStage


VALID_DEAL_TRANSITIONS: dict[DealStage, frozenset[DealStage]] = {
    DealStage.LEAD_IN: frozenset({DealStage.QUALIFICATION, DealStage.LOST}),
    DealStage.QUALIFICATION: frozenset({DealStage.PROPOSAL, DealStage.LOST}),
    DealStage.PROPOSAL: frozenset({DealStage.NEGOTIATION, DealStage.LOST}),
    DealStage.NEGOTIATION: frozenset({DealStage.WON, DealStage.LOST, DealStage.PROPOSAL}),
    DealStage.WON: frozenset(),
    DealStage.LOST: frozenset({DealStage.LEAD_IN}),
}

STAGE_PROBABILITY: dict[DealStage, int] = {
    DealStage.LEAD_IN: 10,
    DealStage.QUALIFICATION: 25,
    DealStage.PROPOSAL: 50,
    DealStage.NEGOTIATION: 75,
    DealStage.WON: 100,
    DealStage.LOST: 0,
}

STAGE_SCORE_DELTA: dict[DealStage, int] = {
    DealStage.QUALIFICATION: 10,
    DealStage.PROPOSAL: 20,
    DealStage.NEGOTIATION: 30,
    DealStage.WON: 50,
    DealStage.LOST: -20,
}

# Days added to today when a deal carries no expected close date.
STAGE_CLOSE_OFFSET_DAYS: dict[DealStage, int] = {
    DealStage.LEAD_IN: 60,
    DealStage.QUALIFICATION: 45,
    DealStage.PROPOSAL: 30,
    DealStage.NEGOTIATION: 15,
}

CLOSED_STAGES = frozenset({DealStage.WON, DealStage.LOST})

_CENT = Decimal("0.01")


def can_transition(current: DealStage | str, target: DealStage | str) -> bool:
    return DealStage(target) in VALID_DEAL_TRANSITIONS[DealStage(current)]


def win_probability(stage: DealStage | str) -> int:
    return STAGE_PROBABILITY[DealStage(stage)]


def expected_value(value: Decimal, stage: DealStage | str) -> Decimal:
    return (Decimal(value) * win_probability(stage) / 100).quantize(_CENT, rounding=ROUND_HALF_UP)


def score_delta(stage: DealStage | str) -> int:
    return STAGE_SCORE_DELTA.get(DealStage(stage), 0)


def is_closed(stage: DealStage | str) -> bool:
    return DealStage(stage) in CLOSED_STAGES
