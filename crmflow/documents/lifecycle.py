from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any

from pydantic import BaseModel

from crmflow.activity.service import ActivityLogService
from crmflow.automation.rules import AutomationTrigger
from crmflow.automation.service import DealStageAutomationService
from crmflow.documents.conversion import ConversionService
from crmflow.documents.schemas import (
    EffectiveInvoiceStatus,
    InvoiceRead,
    OrderStatus,
    PaymentCreate,
    QuoteStatus,
    StatusChangeResult,
)
from crmflow.documents.service import DocumentService
from crmflow.errors import ConversionError
from crmflow.metrics import observe_side_effect_failure
from crmflow.side_effects import SideEffectOutcome, run_side_effect
from crmflow.store.client import EntityStore


logger = logging.getLogger("crmflow.documents")


def derive_invoice_status(invoice: InvoiceRead | Mapping[str, Any], today: date | None = None) -> EffectiveInvoiceStatus:
    """Effective status from balances and due date; the persisted status is only trusted for draft."""
    data = invoice.model_dump() if isinstance(invoice, BaseModel) else dict(invoice)
    balance = int(data.get("balance_minor") or 0)
    paid = int(data.get("paid_minor") or 0)
    if balance == 0:
        return "paid"

    due = data.get("due_date")
    if isinstance(due, str):
        due = date.fromisoformat(due[:10])
    if due is not None and due < (today or date.today()) and balance > 0:
        return "overdue"
    if paid > 0:
        return "partial"
    if data.get("status") == "draft":
        return "draft"
    return "sent"


@dataclass(slots=True)
class DocumentLifecycleService:
    store: EntityStore
    documents: DocumentService
    conversions: ConversionService
    activity_log: ActivityLogService
    automation: DealStageAutomationService

    def update_quote_status(self, quote_id: str, status: QuoteStatus) -> StatusChangeResult:
        """Persist the status, then run the flow it implies.

        ``declined`` fires ``quote_declined`` automation and ``accepted`` converts the quote
        into an order. A failed conversion keeps the new status and is reported as a side effect.
        """
        quote = self.documents.update_quote_header(quote_id, {"status": status})
        result = StatusChangeResult(id=quote.id, status=quote.status)

        if status == "declined":
            result.side_effects.append(
                self.automation.trigger_deal_stage_automation(
                    AutomationTrigger.QUOTE_DECLINED,
                    quote.deal_id,
                    quote.model_dump(mode="json"),
                )
            )
        elif status == "accepted":
            try:
                conversion = self.conversions.ensure_order_for_quote(quote.id)
            except ConversionError as exc:
                result.side_effects.append(self._failed_conversion("conversion.quote_to_order", exc, quote_id=quote.id))
            else:
                result.converted_id = conversion.id
                result.side_effects.extend(conversion.side_effects)
        return result

    def update_order_status(self, order_id: str, status: OrderStatus) -> StatusChangeResult:
        order = self.documents.update_order_header(order_id, {"status": status})
        result = StatusChangeResult(id=order.id, status=order.status)

        if status == "invoiced":
            try:
                conversion = self.conversions.ensure_invoice_for_order(order.id)
            except ConversionError as exc:
                result.side_effects.append(self._failed_conversion("conversion.order_to_invoice", exc, order_id=order.id))
            else:
                result.converted_id = conversion.id
                result.side_effects.extend(conversion.side_effects)
        elif status == "cancelled":
            result.side_effects.append(
                self.automation.trigger_deal_stage_automation(
                    AutomationTrigger.ORDER_CANCELLED,
                    order.deal_id,
                    order.model_dump(mode="json"),
                )
            )
        return result

    def delete_quote(self, quote_id: str) -> SideEffectOutcome:
        """Soft delete a quote so the deal can be quoted again; lines stay for the record."""
        quote = self.documents.fetch_quote(quote_id)
        self.documents.soft_delete("quote", quote.id)
        return run_side_effect(
            "activity.doc_deleted",
            lambda: self.activity_log.log_activity("doc_deleted", quote.deal_id, {"docType": "quote", "id": quote.id}),
            quote_id=quote.id,
        )

    def get_invoice(self, invoice_id: str) -> InvoiceRead:
        invoice = self.documents.fetch_invoice(invoice_id)
        return invoice.model_copy(update={"effective_status": derive_invoice_status(invoice)})

    def record_payment(self, invoice_id: str, payment: PaymentCreate) -> InvoiceRead:
        invoice = self.documents.fetch_invoice(invoice_id)
        self.store.insert(
            "payments",
            {
                "invoice_id": invoice.id,
                "amount_minor": payment.amount_minor,
                "payment_date": payment.payment_date.isoformat(),
                "method": payment.method,
                "note": payment.note,
            },
        )

        paid = invoice.paid_minor + payment.amount_minor
        balance = max(invoice.total_minor - paid, 0)
        patch: dict[str, Any] = {"paid_minor": paid, "balance_minor": balance}
        if balance == 0:
            patch["status"] = "paid"
        updated = self.documents.update_invoice_header(invoice.id, patch)
        logger.info(
            "invoice.payment_recorded",
            extra={"invoice_id": invoice.id, "deal_id": invoice.deal_id, "status": updated.status},
        )

        run_side_effect(
            "activity.payment_recorded",
            lambda: self.activity_log.log_activity(
                "payment_recorded",
                invoice.deal_id,
                {"invoiceId": invoice.id, "amountMinor": payment.amount_minor, "method": payment.method},
            ),
            invoice_id=invoice.id,
        )
        if invoice.status != "paid" and balance == 0:
            self.automation.trigger_deal_stage_automation(
                AutomationTrigger.INVOICE_PAID,
                invoice.deal_id,
                updated.model_dump(mode="json"),
            )
        return updated.model_copy(update={"effective_status": derive_invoice_status(updated)})

    @staticmethod
    def _failed_conversion(name: str, exc: ConversionError, **log_fields: Any) -> SideEffectOutcome:
        observe_side_effect_failure(name)
        logger.warning("document.conversion_after_status_failed", extra={"side_effect": name, "error": str(exc), **log_fields})
        return SideEffectOutcome(name=name, ok=False, error=str(exc))
