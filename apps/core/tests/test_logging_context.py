from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from estatecrm import models  # noqa: F401
from estatecrm.context import reset_correlation_id, set_correlation_id
from estatecrm.core.config import get_settings
from estatecrm.core.database import Base, create_engine_for
from estatecrm.core.events import event_bus
from estatecrm.crm.repositories import ContactRepository
from estatecrm.crm.scoring import LeadScoringEngine
from estatecrm.logging import JsonLogFormatter
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    event_bus.clear()
    yield
    get_settings.cache_clear()
    event_bus.clear()


@pytest.fixture()
def client(session_factory: sessionmaker[Session]) -> Generator[TestClient, None, None]:
    with TestClient(create_app(session_factory)) as test_client:
        yield test_client


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/me", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 401

    records = [
        record
        for record in caplog.records
        if record.name == "estatecrm.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/me"
        and getattr(record, "status_code", None) == 401
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_domain_logs_carry_correlation_and_fields(
    session_factory: sessionmaker[Session], caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO)
    session = session_factory()
    user_id = uuid.uuid4()
    session.add(User(id=user_id, tenant_id="t1", role=Role.AGENT, name="Agent", email="agent@example.com"))
    session.commit()
    agent = Principal(id=user_id, tenant_id="t1", role=Role.AGENT)
    contact_id = ContactRepository().create(session, agent, {"name": "Logged Lead"}).id

    token = set_correlation_id("log-corr-1")
    try:
        LeadScoringEngine().update_score(session, agent, contact_id, 55, "Viewing booked")
    finally:
        reset_correlation_id(token)
    session.close()

    score_records = [record for record in caplog.records if record.name == "estatecrm.scoring"]
    assert score_records
    record = score_records[-1]
    assert getattr(record, "correlation_id", None) == "log-corr-1"
    assert getattr(record, "contact_id", None) == str(contact_id)

    rendered = json.loads(JsonLogFormatter().format(record))
    assert rendered["logger"] == "estatecrm.scoring"
    assert rendered["correlation_id"] == "log-corr-1"
    assert rendered["fields"]["contact_id"] == str(contact_id)
    assert rendered["fields"]["status"] == "55"
