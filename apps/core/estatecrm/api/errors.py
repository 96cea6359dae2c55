from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from estatecrm.context import get_correlation_id
from estatecrm.crm.errors import (
    ConflictError,
    InputValidationError,
    InvalidReferenceError,
    InvalidTransitionError,
    NotFoundError,
    SchedulingConflictError,
)
from estatecrm.platform.security.errors import AuthorizationError, UnauthenticatedError


def _error_response(status_code: int, code: str, detail: str, **extra: object) -> JSONResponse:
    body: dict[str, object] = {"code": code, "detail": detail, "correlation_id": get_correlation_id()}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(UnauthenticatedError)
    async def _unauthenticated(_: Request, exc: UnauthenticatedError) -> JSONResponse:
        return _error_response(status.HTTP_401_UNAUTHORIZED, "unauthenticated", str(exc))

    @app.exception_handler(AuthorizationError)
    async def _forbidden(_: Request, exc: AuthorizationError) -> JSONResponse:
        return _error_response(status.HTTP_403_FORBIDDEN, "forbidden", str(exc))

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(status.HTTP_404_NOT_FOUND, "not_found", str(exc), resource=exc.resource)

    @app.exception_handler(ConflictError)
    async def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return _error_response(status.HTTP_409_CONFLICT, "conflict", exc.detail, resource=exc.resource)

    @app.exception_handler(InvalidTransitionError)
    async def _invalid_transition(_: Request, exc: InvalidTransitionError) -> JSONResponse:
        return _error_response(
            status.HTTP_409_CONFLICT,
            "invalid_transition",
            str(exc),
            current=exc.current,
            target=exc.target,
        )

    @app.exception_handler(SchedulingConflictError)
    async def _scheduling_conflict(_: Request, exc: SchedulingConflictError) -> JSONResponse:
        return _error_response(
            status.HTTP_409_CONFLICT,
            "scheduling_conflict",
            str(exc),
            conflict=exc.conflict.model_dump(mode="json"),
        )

    @app.exception_handler(InvalidReferenceError)
    async def _invalid_reference(_: Request, exc: InvalidReferenceError) -> JSONResponse:
        return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_reference", exc.detail)

    @app.exception_handler(InputValidationError)
    async def _invalid_input(_: Request, exc: InputValidationError) -> JSONResponse:
        return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "validation_error", exc.detail)
