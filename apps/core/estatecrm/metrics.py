from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest


scope_denied_total = Counter(
    "scope_denied_total",
    "Total scope denials by resource and reason",
    ["resource", "reason"],
)

repository_mutations_total = Counter(
    "repository_mutations_total",
    "Total repository mutations by resource and action",
    ["resource", "action"],
)

deal_stage_transitions_total = Counter(
    "deal_stage_transitions_total",
    "Total deal stage transitions",
    ["from_stage", "to_stage"],
)

deal_invalid_transitions_total = Counter(
    "deal_invalid_transitions_total",
    "Total rejected deal stage transitions",
)

scheduling_conflicts_total = Counter(
    "scheduling_conflicts_total",
    "Total scheduling conflicts detected by operation",
    ["operation"],
)

calendar_sync_total = Counter(
    "calendar_sync_total",
    "Total calendar sync attempts by outcome",
    ["status"],
)

lead_score_updates_total = Counter(
    "lead_score_updates_total",
    "Total lead score writes by source",
    ["source"],
)

audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Total best-effort audit and activity write failures",
    ["kind"],
)


def observe_scope_denied(resource: str, reason: str) -> None:
    scope_denied_total.labels(resource=resource, reason=reason).inc()


def observe_repository_mutation(resource: str, action: str) -> None:
    repository_mutations_total.labels(resource=resource, action=action).inc()


def observe_stage_transition(from_stage: str, to_stage: str) -> None:
    deal_stage_transitions_total.labels(from_stage=from_stage, to_stage=to_stage).inc()


def observe_invalid_transition() -> None:
    deal_invalid_transitions_total.inc()


def observe_scheduling_conflict(operation: str) -> None:
    scheduling_conflicts_total.labels(operation=operation).inc()


def observe_calendar_sync(status: str) -> None:
    calendar_sync_total.labels(status=status).inc()


def observe_lead_score_update(source: str) -> None:
    lead_score_updates_total.labels(source=source).inc()


def observe_audit_write_failure(kind: str) -> None:
    audit_write_failures_total.labels(kind=kind).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
