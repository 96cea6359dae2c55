from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from estatecrm import events
from estatecrm.core.config import get_settings


class Base(DeclarativeBase):
    pass


def create_engine_for(url: str, **kwargs: Any) -> Engine:
    """Create an engine; SQLite gets foreign keys and working SAVEPOINTs."""

    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, _connection_record):  # type: ignore[no-untyped-def]
            # pysqlite's implicit BEGIN breaks SAVEPOINT; take over transaction control.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(connection):  # type: ignore[no-untyped-def]
            connection.exec_driver_sql("BEGIN")

    return engine


@lru_cache
def get_engine() -> Engine:
    return create_engine_for(get_settings().database_url, pool_pre_ping=True)


@lru_cache
def get_session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=get_engine(), autoflush=False)


@contextmanager
def transaction(session: Session, *, commit: bool = True) -> Iterator[Session]:
    """Unit of work: commit on success, roll back on error, then publish queued events.

    With ``commit=False`` the caller owns the outer transaction and nothing is
    committed or published here.
    """

    if not commit:
        yield session
        return

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        events.discard_pending(session)
        raise
    events.publish_pending(session)
