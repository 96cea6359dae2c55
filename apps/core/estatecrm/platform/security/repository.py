from __future__ import annotations

import enum
import operator
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Callable, ClassVar, Generic, NoReturn, TypeVar

from pydantic import BaseModel
from sqlalchemy import ColumnElement, func, inspect, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from estatecrm import audit, events
from estatecrm.core.clock import utcnow
from estatecrm.core.config import get_settings
from estatecrm.core.database import Base, transaction
from estatecrm.crm.errors import ConflictError, InputValidationError, InvalidReferenceError, NotFoundError
from estatecrm.metrics import observe_repository_mutation
from estatecrm.platform.security.context import Principal, require_principal
from estatecrm.platform.security.scope import ScopeFields, resolve_scope, validate_scope_write

ModelT = TypeVar("ModelT", bound=Base)
Values = dict[str, Any] | BaseModel

_FILTER_OPERATORS: dict[str, Callable[[Any, Any], ColumnElement[bool]]] = {
    "gte": operator.ge,
    "lte": operator.le,
    "gt": operator.gt,
    "lt": operator.lt,
    "in": lambda column, value: column.in_(list(value)),
}

_BOOKKEEPING_FIELDS = frozenset({"id", "created_at", "updated_at", "row_version"})


def serialize_value(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def serialize_record(record: Base) -> dict[str, Any]:
    mapper = inspect(type(record))
    return {attr.key: serialize_value(getattr(record, attr.key)) for attr in mapper.column_attrs}


class EntityRepository(Generic[ModelT]):
    """Scope-enforcing CRUD for one entity type.

    Every read, update and delete is filtered through :func:`resolve_scope`; a
    record outside the caller's scope is reported as not found.
    """

    model: ClassVar[type[Any]]
    resource: ClassVar[str] = ""
    scope_fields: ClassVar[ScopeFields] = ScopeFields()
    protected_fields: ClassVar[frozenset[str]] = frozenset()

    # -- scoping ---------------------------------------------------------

    def scope_filter(self, principal: Principal) -> ColumnElement[bool]:
        return resolve_scope(principal, self.model, self.scope_fields, resource=self.resource)

    def scoped_query(self, principal: Principal) -> Select[Any]:
        return select(self.model).where(self.scope_filter(principal))

    # -- reads -----------------------------------------------------------

    def find_all(
        self,
        session: Session,
        principal: Principal | None,
        filters: dict[str, Any] | None = None,
        *,
        limit: int | None = None,
        offset: int = 0,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> tuple[list[ModelT], int]:
        principal = require_principal(principal)
        settings = get_settings()
        page_size = settings.default_page_size if limit is None else limit
        if page_size < 1 or offset < 0:
            raise InputValidationError("limit must be positive and offset non-negative")
        page_size = min(page_size, settings.max_page_size)

        query = self.scoped_query(principal)
        for clause in self._filter_clauses(filters or {}):
            query = query.where(clause)

        total = session.scalar(select(func.count()).select_from(query.subquery())) or 0

        order_column = self._column(order_by)
        ordering = order_column.desc() if descending else order_column.asc()
        rows = session.scalars(query.order_by(ordering, self.model.id).limit(page_size).offset(offset)).all()
        return list(rows), int(total)

    def find_by_id(self, session: Session, principal: Principal | None, entity_id: uuid.UUID) -> ModelT:
        principal = require_principal(principal)
        record = session.scalar(self.scoped_query(principal).where(self.model.id == entity_id))
        if record is None:
            raise NotFoundError(self.resource, entity_id)
        return record

    # -- writes ----------------------------------------------------------

    def create(
        self,
        session: Session,
        principal: Principal | None,
        values: Values,
        *,
        commit: bool = True,
    ) -> ModelT:
        principal = require_principal(principal)
        with transaction(session, commit=commit):
            record = self._insert(session, principal, values)
        return record

    def create_many(
        self,
        session: Session,
        principal: Principal | None,
        items: list[Values],
        *,
        commit: bool = True,
    ) -> list[ModelT]:
        """Create every item or none of them."""

        principal = require_principal(principal)
        with transaction(session, commit=commit):
            records = [self._insert(session, principal, values) for values in items]
        return records

    def update(
        self,
        session: Session,
        principal: Principal | None,
        entity_id: uuid.UUID,
        patch: Values,
        *,
        expected_version: int | None = None,
        commit: bool = True,
    ) -> ModelT:
        principal = require_principal(principal)
        with transaction(session, commit=commit):
            record = self.find_by_id(session, principal, entity_id)
            data = self._checked_values(patch, allow_protected=False)
            readonly = sorted(_BOOKKEEPING_FIELDS & data.keys())
            if readonly:
                raise InputValidationError(f"Fields cannot be patched: {', '.join(readonly)}")
            validate_scope_write(session, principal, self.scope_fields, data, resource=self.resource)
            data = self._prepare_update(session, principal, record, data)
            if data:
                record = self.apply_changes(
                    session, principal, record, data, expected_version=expected_version
                )
        return record

    def delete(
        self,
        session: Session,
        principal: Principal | None,
        entity_id: uuid.UUID,
        *,
        commit: bool = True,
    ) -> None:
        principal = require_principal(principal)
        with transaction(session, commit=commit):
            record = self.find_by_id(session, principal, entity_id)
            self._before_delete(session, principal, record)
            snapshot = serialize_record(record)
            try:
                with session.begin_nested():
                    session.delete(record)
                    session.flush()
            except IntegrityError as exc:
                self._raise_integrity_error(exc, action="delete")

            self._after_mutation(session, principal, entity_id, "DELETED", "deleted", snapshot)

    def apply_changes(
        self,
        session: Session,
        principal: Principal,
        record: ModelT,
        values: dict[str, Any],
        *,
        action: str = "UPDATED",
        conditions: tuple[ColumnElement[bool], ...] = (),
        event_type: str | None = None,
        event_payload: dict[str, Any] | None = None,
        expected_version: int | None = None,
        description: str | None = None,
    ) -> ModelT:
        """Write ``values`` guarded by the row version the caller last saw."""

        seen_version = record.row_version if expected_version is None else expected_version
        statement_values = dict(values)
        statement_values["updated_at"] = utcnow()
        statement_values["row_version"] = seen_version + 1

        statement = (
            update(self.model)
            .where(self.model.id == record.id, self.model.row_version == seen_version, *conditions)
            .values(**statement_values)
            .execution_options(synchronize_session=False)
        )
        try:
            with session.begin_nested():
                result = session.execute(statement)
        except IntegrityError as exc:
            self._raise_integrity_error(exc, action="update")
        if result.rowcount == 0:
            raise ConflictError(self.resource, "record was modified by another request")

        session.refresh(record)
        payload = event_payload
        if payload is None:
            payload = {
                "id": str(record.id),
                "changes": {key: serialize_value(value) for key, value in values.items()},
            }
        self._after_mutation(
            session,
            principal,
            record.id,
            action,
            event_type or "updated",
            payload,
            description=description,
        )
        return record

    def translate_integrity_error(self, exc: IntegrityError, *, action: str) -> Exception | None:
        message = str(exc.orig).lower()
        if "unique" in message or "duplicate key" in message:
            return ConflictError(self.resource, "a record with the same unique values already exists")
        if "foreign key" in message:
            if action == "delete":
                return ConflictError(self.resource, "record is still referenced by other records")
            return InvalidReferenceError(self.resource, "a referenced record does not exist")
        return None

    def _raise_integrity_error(self, exc: IntegrityError, *, action: str) -> NoReturn:
        translated = self.translate_integrity_error(exc, action=action)
        if translated is None:
            raise exc
        raise translated from exc

    # -- hooks -----------------------------------------------------------

    def _prepare_create(self, session: Session, principal: Principal, data: dict[str, Any]) -> dict[str, Any]:
        return data

    def _prepare_update(
        self, session: Session, principal: Principal, record: ModelT, data: dict[str, Any]
    ) -> dict[str, Any]:
        return data

    def _before_delete(self, session: Session, principal: Principal, record: ModelT) -> None:
        return None

    # -- internals -------------------------------------------------------

    def _insert(self, session: Session, principal: Principal, values: Values) -> ModelT:
        data = self._checked_values(values, allow_protected=True)
        fields = self.scope_fields
        if fields.tenant is not None and data.get(fields.tenant) is None:
            data[fields.tenant] = principal.tenant_id
        owner_column = fields.principal_column
        if owner_column is not None and data.get(owner_column) is None:
            data[owner_column] = principal.id
        validate_scope_write(session, principal, fields, data, resource=self.resource)
        data = self._prepare_create(session, principal, data)

        now = utcnow()
        data.setdefault("id", uuid.uuid4())
        data["created_at"] = now
        data["updated_at"] = now
        record = self.model(**data)
        try:
            with session.begin_nested():
                session.add(record)
                session.flush()
        except IntegrityError as exc:
            self._raise_integrity_error(exc, action="create")

        self._after_mutation(session, principal, record.id, "CREATED", "created", serialize_record(record))
        return record

    def _after_mutation(
        self,
        session: Session,
        principal: Principal,
        entity_id: uuid.UUID,
        action: str,
        event_suffix: str,
        payload: dict[str, Any],
        *,
        description: str | None = None,
    ) -> None:
        audit.record(
            session,
            actor_id=principal.id,
            entity_type=self.resource,
            entity_id=entity_id,
            action=action,
            description=description,
        )
        event_type = event_suffix if "." in event_suffix else f"{self.resource}.{event_suffix}"
        events.enqueue(session, events.build_envelope(event_type, actor=principal, payload=payload))
        observe_repository_mutation(resource=self.resource, action=action.lower())

    def _checked_values(self, values: Values, *, allow_protected: bool) -> dict[str, Any]:
        if isinstance(values, BaseModel):
            values = values.model_dump(exclude_unset=True)
        known = set(inspect(self.model).column_attrs.keys())
        data: dict[str, Any] = {}
        for key, value in values.items():
            if key not in known:
                raise InputValidationError(f"Unknown field '{key}' for {self.resource}")
            if not allow_protected and key in self.protected_fields:
                raise InputValidationError(f"Field '{key}' of {self.resource} cannot be patched directly")
            data[key] = value
        return data

    def _column(self, name: str) -> Any:
        if name not in inspect(self.model).column_attrs.keys():
            raise InputValidationError(f"Unknown field '{name}' for {self.resource}")
        return getattr(self.model, name)

    def _filter_clauses(self, filters: dict[str, Any]) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        for key, value in filters.items():
            name, _, suffix = key.partition("__")
            column = self._column(name)
            if not suffix:
                clauses.append(column.is_(None) if value is None else column == value)
                continue
            compare = _FILTER_OPERATORS.get(suffix)
            if compare is None:
                raise InputValidationError(f"Unsupported filter operator '{suffix}' on '{name}'")
            clauses.append(compare(column, value))
        return clauses
