from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from estatecrm.crm.schemas import AppointmentConflict


class NotFoundError(Exception):
    """Raised when a record is absent or outside the caller's scope."""

    def __init__(self, resource: str, entity_id: uuid.UUID | str) -> None:
        self.resource = resource
        self.entity_id = str(entity_id)
        super().__init__(f"{resource} '{entity_id}' not found")


class ConflictError(Exception):
    """Uniqueness violation or stale row version."""

    def __init__(self, resource: str, detail: str) -> None:
        self.resource = resource
        self.detail = detail
        super().__init__(f"Conflict on {resource}: {detail}")


class InvalidReferenceError(Exception):
    def __init__(self, resource: str, detail: str) -> None:
        self.resource = resource
        self.detail = detail
        super().__init__(f"Invalid reference on {resource}: {detail}")


class InvalidTransitionError(Exception):
    def __init__(self, resource: str, current: str, target: str) -> None:
        self.resource = resource
        self.current = current
        self.target = target
        super().__init__(f"Invalid {resource} transition from {current} to {target}")


class SchedulingConflictError(Exception):
    """Raised with the overlapping appointments and suggested free slots."""

    def __init__(self, conflict: AppointmentConflict) -> None:
        self.conflict = conflict
        super().__init__(
            f"Time slot overlaps {len(conflict.conflicting_appointments)} existing appointment(s)"
        )


class InputValidationError(Exception):
    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


class ExternalSyncFailure(Exception):
    """Raised by calendar clients; recorded on the appointment, never propagated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)
