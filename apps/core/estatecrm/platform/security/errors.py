from __future__ import annotations


class UnauthenticatedError(Exception):
    """Raised before any I/O when no principal can be resolved for the call."""


class AuthorizationError(Exception):
    """Base authorization error for scope enforcement failures."""


class ForbiddenError(AuthorizationError):
    """Raised when a write would place a record outside the principal's scope."""

    def __init__(self, resource: str, detail: str) -> None:
        self.resource = resource
        self.detail = detail
        super().__init__(f"Forbidden on resource '{resource}': {detail}")
