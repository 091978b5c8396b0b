from __future__ import annotations

from collections.abc import Generator
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmflow.activity.service import ActivityLogService
from crmflow.automation.service import DealStageAutomationService
from crmflow.core.config import Settings
from crmflow.core.database import Base
from crmflow.documents.conversion import ConversionService
from crmflow.documents.lifecycle import DocumentLifecycleService
from crmflow.documents.schemas import DocumentLineCreate, InvoiceCreate, OrderCreate, PaymentCreate, QuoteCreate
from crmflow.documents.service import DocumentService
from crmflow.errors import EntityNotFoundError, StoreError
from crmflow.store import SqlEntityStore
from crmflow.store.client import InsertResult, Row
from crmflow.store.models import Activity, Company, Deal, Order, Payment, Pipeline, Project, Stage


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


def _lifecycle(store: SqlEntityStore) -> DocumentLifecycleService:
    documents = DocumentService(store)
    activity_log = ActivityLogService(store)
    automation = DealStageAutomationService.from_store(store)
    conversions = ConversionService(
        store=store,
        documents=documents,
        activity_log=activity_log,
        automation=automation,
        settings=Settings(),
    )
    return DocumentLifecycleService(
        store=store,
        documents=documents,
        conversions=conversions,
        activity_log=activity_log,
        automation=automation,
    )


def _seed(session: Session, stage: str) -> dict[str, str]:
    company = Company(name="Acme ApS", payment_days=10)
    pipeline = Pipeline(name="Sales")
    session.add_all([company, pipeline])
    session.flush()
    ids = {"company": company.id}
    for position, name in enumerate(["Prospecting", "Proposal", "Negotiation", "Won", "Lost"]):
        row = Stage(pipeline_id=pipeline.id, name=name, position=position)
        session.add(row)
        session.flush()
        ids[name] = row.id
    deal = Deal(title="Support retainer", company_id=company.id, stage_id=ids[stage], expected_value_minor=10000)
    session.add(deal)
    session.commit()
    ids["deal"] = deal.id
    return ids


def _lines() -> list[DocumentLineCreate]:
    return [
        DocumentLineCreate(description="Retainer", qty=Decimal("1"), unit_minor=8000, tax_rate_pct=Decimal("25")),
        DocumentLineCreate(description="Onboarding", qty=Decimal("1"), unit_minor=2000, tax_rate_pct=Decimal("25")),
    ]


def _deal_stage(session: Session, deal_id: str) -> str:
    session.expire_all()
    return session.scalar(select(Deal.stage_id).where(Deal.id == deal_id))


def _invoice(service: DocumentLifecycleService, ids: dict[str, str], **overrides) -> str:
    values = {
        "status": "sent",
        "currency": "DKK",
        "issue_date": date.today(),
        "due_date": date.today() + timedelta(days=10),
        "company_id": ids["company"],
        "deal_id": ids["deal"],
        "subtotal_minor": 10000,
        "tax_minor": 2500,
        "total_minor": 12500,
        "paid_minor": 0,
        "balance_minor": 12500,
    }
    values.update(overrides)
    return service.documents.create_invoice(InvoiceCreate(**values)).id


def test_deal_to_order_scenario(db_session: Session) -> None:
    ids = _seed(db_session, "Prospecting")
    service = _lifecycle(SqlEntityStore(db_session))

    quote = service.documents.create_quote(
        QuoteCreate(
            currency="DKK",
            issue_date=date.today(),
            company_id=ids["company"],
            deal_id=ids["deal"],
            subtotal_minor=10000,
            tax_minor=2500,
            total_minor=12500,
            lines=_lines(),
        )
    )
    service.automation.trigger_deal_stage_automation("quote_created", ids["deal"], quote.model_dump(mode="json"))
    assert _deal_stage(db_session, ids["deal"]) == ids["Proposal"]

    result = service.update_quote_status(quote.id, "accepted")

    assert result.status == "accepted"
    assert result.converted_id is not None
    assert all(outcome.ok for outcome in result.side_effects)
    order = service.documents.fetch_order(result.converted_id)
    assert order.quote_id == quote.id
    assert [line.description for line in order.lines] == ["Retainer", "Onboarding"]
    with pytest.raises(EntityNotFoundError):
        service.documents.fetch_quote(quote.id)
    assert _deal_stage(db_session, ids["deal"]) == ids["Won"]

    stage_changes = db_session.scalars(select(Activity).where(Activity.type == "stage_changed")).all()
    assert [(row.meta["fromStage"], row.meta["toStage"]) for row in stage_changes] == [
        ("Prospecting", "Proposal"),
        ("Proposal", "Won"),
    ]


def test_declined_quote_moves_deal_to_lost_and_cancels_project(db_session: Session) -> None:
    ids = _seed(db_session, "Proposal")
    db_session.add(Project(deal_id=ids["deal"], name="Support"))
    db_session.commit()
    service = _lifecycle(SqlEntityStore(db_session))
    quote = service.documents.create_quote(
        QuoteCreate(currency="DKK", issue_date=date.today(), company_id=ids["company"], deal_id=ids["deal"])
    )

    result = service.update_quote_status(quote.id, "declined")

    assert result.converted_id is None
    assert [(outcome.name, outcome.ok) for outcome in result.side_effects] == [("automation.quote_declined", True)]
    assert _deal_stage(db_session, ids["deal"]) == ids["Lost"]
    assert db_session.scalar(select(Project.status).where(Project.deal_id == ids["deal"])) == "cancelled"


def test_sent_quote_has_no_side_effects(db_session: Session) -> None:
    ids = _seed(db_session, "Proposal")
    service = _lifecycle(SqlEntityStore(db_session))
    quote = service.documents.create_quote(
        QuoteCreate(currency="DKK", issue_date=date.today(), company_id=ids["company"], deal_id=ids["deal"])
    )

    result = service.update_quote_status(quote.id, "sent")

    assert result.side_effects == []
    assert _deal_stage(db_session, ids["deal"]) == ids["Proposal"]


def test_failed_conversion_keeps_accepted_status(db_session: Session) -> None:
    ids = _seed(db_session, "Proposal")

    class NoOrders(SqlEntityStore):
        def insert(self, resource: str, row: Row) -> InsertResult:
            if resource == "orders":
                raise StoreError("orders is read-only", status_code=403)
            return super().insert(resource, row)

    service = _lifecycle(NoOrders(db_session))
    quote = service.documents.create_quote(
        QuoteCreate(currency="DKK", issue_date=date.today(), company_id=ids["company"], deal_id=ids["deal"])
    )

    result = service.update_quote_status(quote.id, "accepted")

    assert result.status == "accepted"
    assert result.converted_id is None
    outcome = result.side_effects[0]
    assert (outcome.name, outcome.ok) == ("conversion.quote_to_order", False)
    assert "Failed to create order from quote" in (outcome.error or "")
    assert service.documents.fetch_quote(quote.id).status == "accepted"
    assert _deal_stage(db_session, ids["deal"]) == ids["Proposal"]


def test_invoiced_order_creates_invoice_once(db_session: Session) -> None:
    ids = _seed(db_session, "Negotiation")
    service = _lifecycle(SqlEntityStore(db_session))
    order = service.documents.create_order(
        OrderCreate(
            status="accepted",
            currency="DKK",
            order_date=date.today(),
            company_id=ids["company"],
            deal_id=ids["deal"],
            total_minor=12500,
            lines=_lines(),
        )
    )

    first = service.update_order_status(order.id, "invoiced")
    second = service.update_order_status(order.id, "invoiced")

    assert first.converted_id is not None
    assert second.converted_id == first.converted_id
    invoice = service.get_invoice(first.converted_id)
    assert invoice.due_date == date.today() + timedelta(days=10)
    assert invoice.balance_minor == 12500
    assert invoice.effective_status == "draft"
    assert _deal_stage(db_session, ids["deal"]) == ids["Won"]


def test_cancelled_order_moves_deal_back_to_negotiation(db_session: Session) -> None:
    ids = _seed(db_session, "Won")
    service = _lifecycle(SqlEntityStore(db_session))
    order = service.documents.create_order(
        OrderCreate(status="accepted", currency="DKK", order_date=date.today(), company_id=ids["company"], deal_id=ids["deal"])
    )

    result = service.update_order_status(order.id, "cancelled")

    assert [(outcome.name, outcome.ok) for outcome in result.side_effects] == [("automation.order_cancelled", True)]
    assert _deal_stage(db_session, ids["deal"]) == ids["Negotiation"]
    db_session.expire_all()
    assert db_session.get(Order, order.id).status == "cancelled"


def test_partial_then_full_payment(db_session: Session) -> None:
    ids = _seed(db_session, "Negotiation")
    service = _lifecycle(SqlEntityStore(db_session))
    invoice_id = _invoice(service, ids)

    partial = service.record_payment(invoice_id, PaymentCreate(amount_minor=5000, payment_date=date.today()))

    assert (partial.paid_minor, partial.balance_minor) == (5000, 7500)
    assert partial.status == "sent"
    assert partial.effective_status == "partial"
    assert _deal_stage(db_session, ids["deal"]) == ids["Negotiation"]

    settled = service.record_payment(
        invoice_id,
        PaymentCreate(amount_minor=7500, payment_date=date.today(), method="card", note="final"),
    )

    assert (settled.paid_minor, settled.balance_minor) == (12500, 0)
    assert settled.status == "paid"
    assert settled.effective_status == "paid"
    assert _deal_stage(db_session, ids["deal"]) == ids["Won"]

    payments = db_session.scalars(select(Payment).where(Payment.invoice_id == invoice_id)).all()
    assert sorted(payment.amount_minor for payment in payments) == [5000, 7500]
    recorded = db_session.scalars(select(Activity).where(Activity.type == "payment_recorded")).all()
    assert len(recorded) == 2


def test_overpayment_clamps_balance_at_zero(db_session: Session) -> None:
    ids = _seed(db_session, "Negotiation")
    service = _lifecycle(SqlEntityStore(db_session))
    invoice_id = _invoice(service, ids)

    invoice = service.record_payment(invoice_id, PaymentCreate(amount_minor=20000, payment_date=date.today()))

    assert invoice.paid_minor == 20000
    assert invoice.balance_minor == 0
    assert invoice.effective_status == "paid"


def test_overdue_invoice_is_reported_as_overdue(db_session: Session) -> None:
    ids = _seed(db_session, "Negotiation")
    service = _lifecycle(SqlEntityStore(db_session))
    invoice_id = _invoice(
        service,
        ids,
        issue_date=date.today() - timedelta(days=40),
        due_date=date.today() - timedelta(days=10),
    )

    invoice = service.get_invoice(invoice_id)

    assert invoice.status == "sent"
    assert invoice.effective_status == "overdue"


def test_payment_on_already_paid_invoice_does_not_fire_automation(db_session: Session) -> None:
    ids = _seed(db_session, "Negotiation")
    service = _lifecycle(SqlEntityStore(db_session))
    invoice_id = _invoice(service, ids, status="paid", paid_minor=12500, balance_minor=0)

    service.record_payment(invoice_id, PaymentCreate(amount_minor=100, payment_date=date.today()))

    assert _deal_stage(db_session, ids["deal"]) == ids["Negotiation"]
