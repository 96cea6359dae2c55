from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import StrEnum

from estatecrm.platform.security.errors import UnauthenticatedError


class Role(StrEnum):
    SUPER_ADMIN = "SUPER_ADMIN"
    TENANT_ADMIN = "TENANT_ADMIN"
    AGENT = "AGENT"


@dataclass(frozen=True, slots=True)
class Principal:
    """The acting identity, supplied per call by the identity provider.

    ``role`` is kept as a plain string so that an unrecognised role coming from
    upstream survives until scope resolution, where it matches nothing.
    """

    id: uuid.UUID
    tenant_id: str
    role: str


def require_principal(principal: Principal | None) -> Principal:
    if principal is None or not isinstance(principal, Principal):
        raise UnauthenticatedError("No active principal")
    if principal.id is None or not principal.tenant_id:
        raise UnauthenticatedError("Principal is missing id or tenant")
    return principal
