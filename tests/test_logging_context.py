from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmflow.automation.rules import AutomationTrigger
from crmflow.automation.schemas import BatchAutomationItem
from crmflow.automation.service import DealStageAutomationService
from crmflow.core.config import get_settings
from crmflow.core.database import Base, get_db
from crmflow.logging import JsonLogFormatter
from crmflow.main import app
from crmflow.store import SqlEntityStore
from crmflow.store.models import Company, Deal, Pipeline, Stage


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_deal(session: Session) -> str:
    company = Company(name="Log Co")
    pipeline = Pipeline(name="Sales")
    session.add_all([company, pipeline])
    session.flush()
    prospecting = Stage(pipeline_id=pipeline.id, name="Prospecting", position=0)
    proposal = Stage(pipeline_id=pipeline.id, name="Proposal", position=1)
    session.add_all([prospecting, proposal])
    session.flush()
    deal = Deal(title="Log deal", company_id=company.id, stage_id=prospecting.id)
    session.add(deal)
    session.commit()
    return deal.id


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/invoices/inv-1", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "crmflow.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/invoices/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_automation_logs_carry_deal_context(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    deal_id = _seed_deal(db_session)

    response = client.post(
        f"/api/deals/{deal_id}/automation",
        json={"trigger": "quote_created"},
        headers={"X-Correlation-Id": "automation-corr-1"},
    )
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "crmflow.automation"]
    assert any(
        record.getMessage() == "automation.stage_changed"
        and getattr(record, "deal_id", None) == deal_id
        and getattr(record, "trigger", None) == "quote_created"
        and getattr(record, "from_stage", None) == "Prospecting"
        and getattr(record, "to_stage", None) == "Proposal"
        and getattr(record, "correlation_id", None) == "automation-corr-1"
        for record in records
    )

    requests = [record for record in caplog.records if record.name == "crmflow.request" and record.getMessage() == "http.request"]
    assert any(
        getattr(record, "path", None) == "/api/deals/{id}/automation" and getattr(record, "deal_id", None) == deal_id
        for record in requests
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "crmflow.automation",
            "levelname": "INFO",
            "msg": "automation.stage_changed",
            "deal_id": "deal-1",
            "to_stage": "Won",
            "password": "hunter2",
            "correlation_id": "corr-9",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "automation.stage_changed"
    assert payload["correlation_id"] == "corr-9"
    assert payload["fields"] == {"deal_id": "deal-1", "to_stage": "Won"}


def test_batch_summary_logs_counts_as_fields(db_session: Session, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="crmflow.automation")
    service = DealStageAutomationService.from_store(SqlEntityStore(db_session))

    service.batch_automate_deal_stages(
        [
            BatchAutomationItem(deal_id="missing-1", trigger=AutomationTrigger.ORDER_CREATED),
            BatchAutomationItem(deal_id="missing-2", trigger=AutomationTrigger.INVOICE_PAID),
        ]
    )

    record = next(record for record in caplog.records if record.getMessage() == "automation.batch_completed")
    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["fields"] == {"success": 0, "failed": 2}
