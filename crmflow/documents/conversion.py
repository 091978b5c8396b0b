from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta

from opentelemetry import trace

from crmflow.activity.service import ActivityLogService
from crmflow.automation.rules import AutomationTrigger
from crmflow.automation.service import DealStageAutomationService
from crmflow.context import get_correlation_id, get_current_user_id
from crmflow.core.config import Settings, get_settings
from crmflow.documents.money import compute_totals
from crmflow.documents.schemas import (
    ConversionResult,
    DealRead,
    DocumentLineCreate,
    DocumentReadBase,
    InvoiceCreate,
    OrderCreate,
    QuoteCreate,
    QuoteRead,
)
from crmflow.documents.service import DocumentService
from crmflow.errors import ConversionError, DuplicateQuoteError, EntityNotFoundError, StoreError
from crmflow.metrics import observe_document_conversion
from crmflow.side_effects import SideEffectOutcome, run_side_effect
from crmflow.store.client import EntityStore, eq, first_or_none


logger = logging.getLogger("crmflow.documents")
tracer = trace.get_tracer("crmflow.documents")


def _copy_lines(document: DocumentReadBase) -> list[DocumentLineCreate]:
    return [
        DocumentLineCreate(
            description=line.description,
            qty=line.qty,
            unit_minor=line.unit_minor,
            tax_rate_pct=line.tax_rate_pct,
            discount_pct=line.discount_pct,
            sku=line.sku,
        )
        for line in document.lines
    ]


@dataclass(slots=True)
class ConversionService:
    """Materializes the next document of the quote -> order -> invoice chain.

    Each ``ensure_*`` call first looks for an existing target keyed by the source id and
    returns it untouched. That lookup is a plain read before the insert, so two concurrent
    calls for the same source can both create a target.
    """

    store: EntityStore
    documents: DocumentService
    activity_log: ActivityLogService
    automation: DealStageAutomationService
    settings: Settings = field(default_factory=get_settings)

    def ensure_order_for_quote(self, quote_id: str) -> ConversionResult:
        with tracer.start_as_current_span("documents.ensure_order_for_quote") as span:
            span.set_attribute("quote_id", quote_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                existing = first_or_none(self.store.select("orders", {"quote_id": eq(quote_id)}, columns="id", limit=1))
                if existing is not None:
                    observe_document_conversion("quote_to_order", "existing")
                    logger.info("conversion.order_exists", extra={"quote_id": quote_id, "order_id": existing["id"]})
                    return ConversionResult(id=str(existing["id"]), created=False)

                quote = self.documents.fetch_quote(quote_id)
                order = self.documents.create_order(
                    OrderCreate(
                        status="accepted",
                        currency=quote.currency,
                        order_date=date.today(),
                        notes=quote.notes or f"Order created from quote {quote.number or quote.id}",
                        company_id=quote.company_id,
                        contact_id=quote.contact_id,
                        deal_id=quote.deal_id,
                        quote_id=quote.id,
                        subtotal_minor=quote.subtotal_minor,
                        tax_minor=quote.tax_minor,
                        total_minor=quote.total_minor,
                        lines=_copy_lines(quote),
                    )
                )
            except Exception as exc:
                observe_document_conversion("quote_to_order", "failed")
                logger.error("conversion.order_failed", extra={"quote_id": quote_id, "error": str(exc)}, exc_info=True)
                raise ConversionError("quote", "order", str(exc)) from exc

            span.set_attribute("order_id", order.id)
            observe_document_conversion("quote_to_order", "created")
            logger.info("conversion.order_created", extra={"quote_id": quote.id, "order_id": order.id})

            side_effects = [
                run_side_effect(
                    "activity.order_created_from_quote",
                    lambda: self.activity_log.log_activity(
                        "order_created_from_quote",
                        quote.deal_id,
                        {"quoteId": quote.id, "orderId": order.id},
                    ),
                    quote_id=quote.id,
                ),
                self.automation.trigger_deal_stage_automation(
                    AutomationTrigger.ORDER_CREATED,
                    quote.deal_id,
                    order.model_dump(mode="json"),
                ),
                run_side_effect("quote.delete", lambda: self.documents.hard_delete_quote(quote.id), quote_id=quote.id),
            ]
            return ConversionResult(id=order.id, created=True, side_effects=side_effects)

    def ensure_invoice_for_order(self, order_id: str) -> ConversionResult:
        with tracer.start_as_current_span("documents.ensure_invoice_for_order") as span:
            span.set_attribute("order_id", order_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                existing = first_or_none(self.store.select("invoices", {"order_id": eq(order_id)}, columns="id", limit=1))
                if existing is not None:
                    observe_document_conversion("order_to_invoice", "existing")
                    logger.info("conversion.invoice_exists", extra={"order_id": order_id, "invoice_id": existing["id"]})
                    return ConversionResult(id=str(existing["id"]), created=False)

                order = self.documents.fetch_order(order_id)
                issue_date = date.today()
                invoice = self.documents.create_invoice(
                    InvoiceCreate(
                        status="draft",
                        currency=order.currency,
                        issue_date=issue_date,
                        due_date=issue_date + timedelta(days=self.payment_days(order.company_id)),
                        notes=order.notes or f"Invoice created from order {order.number or order.id}",
                        company_id=order.company_id,
                        contact_id=order.contact_id,
                        deal_id=order.deal_id,
                        order_id=order.id,
                        subtotal_minor=order.subtotal_minor,
                        tax_minor=order.tax_minor,
                        total_minor=order.total_minor,
                        paid_minor=0,
                        balance_minor=order.total_minor,
                        lines=_copy_lines(order),
                    )
                )
            except Exception as exc:
                observe_document_conversion("order_to_invoice", "failed")
                logger.error("conversion.invoice_failed", extra={"order_id": order_id, "error": str(exc)}, exc_info=True)
                raise ConversionError("order", "invoice", str(exc)) from exc

            span.set_attribute("invoice_id", invoice.id)
            observe_document_conversion("order_to_invoice", "created")
            logger.info("conversion.invoice_created", extra={"order_id": order.id, "invoice_id": invoice.id})

            side_effects = [
                run_side_effect(
                    "activity.invoice_created_from_order",
                    lambda: self.activity_log.log_activity(
                        "invoice_created_from_order",
                        order.deal_id,
                        {"orderId": order.id, "invoiceId": invoice.id},
                    ),
                    order_id=order.id,
                ),
                self.automation.trigger_deal_stage_automation(
                    AutomationTrigger.INVOICE_CREATED,
                    order.deal_id,
                    invoice.model_dump(mode="json"),
                ),
            ]
            return ConversionResult(id=invoice.id, created=True, side_effects=side_effects)

    def payment_days(self, company_id: str) -> int:
        """Company payment terms in days; falls back to the configured default on any lookup problem."""
        try:
            company = first_or_none(
                self.store.select("companies", {"id": eq(company_id)}, columns="id,payment_days", limit=1)
            )
        except StoreError as exc:
            logger.warning("conversion.payment_days_lookup_failed", extra={"error": str(exc)})
            return self.settings.default_payment_days
        days = None if company is None else company.get("payment_days")
        if days is None or int(days) < 0:
            return self.settings.default_payment_days
        return int(days)

    def create_quote_from_deal(self, deal_id: str) -> QuoteRead:
        deal_row = first_or_none(self.store.select("deals", {"id": eq(deal_id)}, limit=1))
        if deal_row is None or deal_row.get("deleted_at") is not None:
            raise EntityNotFoundError("deal", deal_id)
        deal = DealRead.model_validate(deal_row)

        existing = first_or_none(
            self.store.select("quotes", {"deal_id": eq(deal_id), "deleted_at": "is.null"}, columns="id", limit=1)
        )
        if existing is not None:
            raise DuplicateQuoteError(deal_id, str(existing["id"]))

        today = date.today()
        value = max(deal.expected_value_minor, 0)
        lines = []
        if value > 0:
            lines.append(
                DocumentLineCreate(
                    description=deal.title, qty=1, unit_minor=value, tax_rate_pct=self.settings.default_tax_rate_pct
                )
            )
        totals = compute_totals(lines)

        quote = self.documents.create_quote(
            QuoteCreate(
                status="draft",
                currency=deal.currency or self.settings.default_currency,
                issue_date=today,
                valid_until=deal.close_date or today + timedelta(days=self.settings.quote_validity_days),
                notes=f"Converted from deal: {deal.title}",
                company_id=deal.company_id,
                contact_id=deal.contact_id,
                deal_id=deal.id,
                subtotal_minor=totals.subtotal_minor,
                tax_minor=totals.tax_minor,
                total_minor=totals.total_minor,
                created_by=get_current_user_id(),
                lines=lines,
            )
        )

        side_effects: list[SideEffectOutcome] = [
            run_side_effect(
                "activity.doc_created",
                lambda: self.activity_log.log_activity("doc_created", deal.id, {"docType": "quote", "id": quote.id}),
                deal_id=deal.id,
            ),
            self.automation.trigger_deal_stage_automation(
                AutomationTrigger.QUOTE_CREATED,
                deal.id,
                quote.model_dump(mode="json"),
            ),
        ]
        failed = [outcome.name for outcome in side_effects if not outcome.ok]
        logger.info(
            "conversion.quote_created_from_deal",
            extra={"deal_id": deal.id, "quote_id": quote.id, "reason": ", ".join(failed) or None},
        )
        return quote
