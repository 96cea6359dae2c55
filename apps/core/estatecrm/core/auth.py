import uuid

from jose import JWTError, jwt
from starlette.requests import Request

from estatecrm.core.config import get_settings
from estatecrm.platform.security.context import Principal
from estatecrm.platform.security.errors import UnauthenticatedError


def principal_from_token(token: str | None) -> Principal:
    """Decode a bearer token issued by the identity provider into a Principal."""

    if not token:
        raise UnauthenticatedError("Missing bearer token")

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise UnauthenticatedError("Invalid bearer token") from exc

    subject = payload.get("sub")
    tenant_id = payload.get("tenant_id")
    role = payload.get("role")
    if not subject or not tenant_id or not role:
        raise UnauthenticatedError("Token is missing sub, tenant_id or role")
    try:
        principal_id = uuid.UUID(str(subject))
    except ValueError as exc:
        raise UnauthenticatedError("Token subject is not a valid id") from exc
    return Principal(id=principal_id, tenant_id=str(tenant_id), role=str(role))


async def get_current_principal(request: Request) -> Principal:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "", 1) if auth_header.startswith("Bearer ") else ""
    return principal_from_token(token)
