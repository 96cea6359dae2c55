from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from estatecrm import models  # noqa: F401
from estatecrm.core.config import get_settings
from estatecrm.core.database import Base, create_engine_for
from estatecrm.core.events import event_bus
from estatecrm.crm.errors import SchedulingConflictError
from estatecrm.crm.repositories import ContactRepository
from estatecrm.crm.scheduling import AppointmentScheduler
from estatecrm.crm.schemas import AppointmentCreate
from estatecrm.main import create_app
from estatecrm.platform.security import Principal, Role
from estatecrm.platform.security.models import User


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine_for(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autoflush=False)
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    event_bus.clear()
    yield
    get_settings.cache_clear()
    event_bus.clear()


@pytest.fixture()
def client(session_factory: sessionmaker[Session]) -> Generator[TestClient, None, None]:
    with TestClient(create_app(session_factory)) as test_client:
        yield test_client


def _double_book(session: Session) -> None:
    user_id = uuid.uuid4()
    session.add(User(id=user_id, tenant_id="t1", role=Role.AGENT, name="Agent", email="agent@example.com"))
    session.commit()
    agent = Principal(id=user_id, tenant_id="t1", role=Role.AGENT)
    contact_id = ContactRepository().create(session, agent, {"name": "Metric Lead"}).id

    scheduler = AppointmentScheduler()
    for start in (time(10, 0), time(10, 15)):
        payload = AppointmentCreate(contact_id=contact_id, title="Viewing", date=date(2024, 6, 3), start_time=start)
        try:
            scheduler.create_with_validation(session, agent, payload)
        except SchedulingConflictError:
            pass


def test_metrics_endpoint_exposes_domain_metrics(
    client: TestClient, session_factory: sessionmaker[Session]
) -> None:
    health = client.get("/healthz")
    assert health.status_code == 200

    session = session_factory()
    try:
        _double_book(session)
    finally:
        session.close()

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")
    body = metrics.text

    assert "scope_denied_total" in body
    assert "deal_stage_transitions_total" in body
    assert "calendar_sync_total" in body
    assert 'repository_mutations_total{resource="contact",action="created"}' in body
    assert 'scheduling_conflicts_total{operation="create"}' in body


def test_metrics_endpoint_is_absent_when_disabled(
    monkeypatch: pytest.MonkeyPatch, session_factory: sessionmaker[Session]
) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    with TestClient(create_app(session_factory)) as test_client:
        assert test_client.get("/metrics").status_code == 404
