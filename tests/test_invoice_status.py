from __future__ import annotations

from datetime import date

import pytest

from crmflow.documents.lifecycle import derive_invoice_status
from crmflow.documents.schemas import InvoiceRead


TODAY = date(2026, 10, 19)


@pytest.mark.parametrize(
    ("invoice", "expected"),
    [
        ({"balance_minor": 0}, "paid"),
        ({"balance_minor": 0, "status": "overdue", "due_date": "2026-01-01"}, "paid"),
        ({"balance_minor": 7500, "paid_minor": 5000, "due_date": "2026-11-30"}, "partial"),
        ({"balance_minor": 7500, "paid_minor": 0, "due_date": "2026-10-01"}, "overdue"),
        ({"balance_minor": 7500, "paid_minor": 5000, "due_date": "2026-10-18"}, "overdue"),
        ({"balance_minor": 12500, "paid_minor": 0, "status": "draft"}, "draft"),
        ({"balance_minor": 12500, "paid_minor": 0, "status": "sent", "due_date": "2026-10-19"}, "sent"),
        ({"balance_minor": 12500, "status": "paid"}, "sent"),
    ],
)
def test_derive_invoice_status(invoice: dict, expected: str) -> None:
    assert derive_invoice_status(invoice, today=TODAY) == expected


def test_derive_invoice_status_from_read_model() -> None:
    invoice = InvoiceRead(
        id="inv-1",
        currency="DKK",
        company_id="company-1",
        status="sent",
        due_date=date(2026, 9, 30),
        total_minor=12500,
        paid_minor=0,
        balance_minor=12500,
    )

    assert derive_invoice_status(invoice, today=TODAY) == "overdue"
