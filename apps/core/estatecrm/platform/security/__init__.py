from estatecrm.platform.security.context import Principal, Role, require_principal
from estatecrm.platform.security.errors import AuthorizationError, ForbiddenError, UnauthenticatedError
from estatecrm.platform.security.repository import EntityRepository
from estatecrm.platform.security.scope import ScopeFields, resolve_scope, validate_scope_write

__all__ = [
    "AuthorizationError",
    "EntityRepository",
    "ForbiddenError",
    "Principal",
    "Role",
    "ScopeFields",
    "UnauthenticatedError",
    "require_principal",
    "resolve_scope",
    "validate_scope_write",
]
