from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import ColumnElement, false, select, true
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from estatecrm.metrics import observe_scope_denied
from estatecrm.platform.security.context import Principal, Role
from estatecrm.platform.security.errors import ForbiddenError
from estatecrm.platform.security.models import User

logger = logging.getLogger("estatecrm.security")


@dataclass(frozen=True, slots=True)
class ScopeFields:
    """Columns through which an entity type is scoped.

    ``tenant`` is a direct tenant column, ``owner`` the assigned agent and
    ``user`` the acting user for user-scoped types such as the audit log.
    """

    tenant: str | None = None
    owner: str | None = None
    user: str | None = None

    @property
    def principal_column(self) -> str | None:
        return self.owner or self.user


def tenant_user_ids(tenant_id: str) -> Select[tuple[uuid.UUID]]:
    return select(User.id).where(User.tenant_id == tenant_id)


def resolve_scope(principal: Principal, model: type[Any], fields: ScopeFields, *, resource: str) -> ColumnElement[bool]:
    """Return the visibility predicate for ``principal`` over ``model``."""

    role = principal.role
    if role == Role.SUPER_ADMIN:
        return true()

    if role == Role.TENANT_ADMIN:
        if fields.tenant is not None:
            return getattr(model, fields.tenant) == principal.tenant_id
        column = fields.principal_column
        if column is not None:
            return getattr(model, column).in_(tenant_user_ids(principal.tenant_id))
        return _deny(principal, resource, "no_scope_field")

    if role == Role.AGENT:
        column = fields.principal_column
        if column is not None:
            return getattr(model, column) == principal.id
        return _deny(principal, resource, "no_scope_field")

    return _deny(principal, resource, "unknown_role")


def validate_scope_write(
    session: Session,
    principal: Principal,
    fields: ScopeFields,
    values: dict[str, Any],
    *,
    resource: str,
) -> None:
    """Reject writes that would move a record outside the principal's scope."""

    role = principal.role
    if role == Role.SUPER_ADMIN:
        return
    if role not in (Role.TENANT_ADMIN, Role.AGENT):
        _record_denial(principal, resource, "unknown_role")
        raise ForbiddenError(resource, "role has no write scope")

    if fields.tenant is not None and values.get(fields.tenant) not in (None, principal.tenant_id):
        _record_denial(principal, resource, "foreign_tenant")
        raise ForbiddenError(resource, "record belongs to another tenant")

    column = fields.principal_column
    if column is None:
        return
    assignee = values.get(column)
    if assignee is None or assignee == principal.id:
        return

    if role == Role.AGENT:
        _record_denial(principal, resource, "foreign_owner")
        raise ForbiddenError(resource, "agents may only write their own records")

    in_tenant = session.scalar(
        select(User.id).where(User.id == assignee, User.tenant_id == principal.tenant_id)
    )
    if in_tenant is None:
        _record_denial(principal, resource, "foreign_owner")
        raise ForbiddenError(resource, "assignee does not belong to the tenant")


def _deny(principal: Principal, resource: str, reason: str) -> ColumnElement[bool]:
    _record_denial(principal, resource, reason)
    return false()


def _record_denial(principal: Principal, resource: str, reason: str) -> None:
    observe_scope_denied(resource=resource, reason=reason)
    logger.warning(
        "scope denied",
        extra={
            "resource": resource,
            "actor_id": str(principal.id),
            "tenant_id": principal.tenant_id,
            "role": principal.role,
            "error": reason,
        },
    )
