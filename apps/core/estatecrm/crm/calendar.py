from __future__ import annotations

from typing import Protocol

from opentelemetry import trace

from estatecrm.context import get_correlation_id
from estatecrm.crm.errors import ExternalSyncFailure
from estatecrm.crm.schemas import AppointmentRead


tracer = trace.get_tracer("estatecrm.crm.calendar")


class CalendarClient(Protocol):
    def push_event(self, appointment: AppointmentRead) -> str: ...


class StubCalendarClient:
    """In-process calendar used until a real provider is wired in.

    ``failure`` makes every push raise, which is how callers exercise the
    failed-sync path.
    """

    def __init__(self, failure: str | None = None) -> None:
        self.failure = failure
        self.pushed: list[AppointmentRead] = []

    def push_event(self, appointment: AppointmentRead) -> str:
        with tracer.start_as_current_span("calendar.push_event") as span:
            span.set_attribute("appointment_id", str(appointment.id))
            correlation_id = get_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)
            if self.failure is not None:
                raise ExternalSyncFailure(self.failure)
            self.pushed.append(appointment)
            external_id = appointment.external_event_id or f"stub_{appointment.id}"
            span.set_attribute("external_event_id", external_id)
            return external_id
