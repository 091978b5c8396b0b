from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from opentelemetry import trace

from crmflow.context import get_correlation_id
from crmflow.documents.money import line_total_minor
from crmflow.documents.schemas import (
    DocumentCreateBase,
    DocumentKind,
    DocumentLineCreate,
    DocumentLineRead,
    DocumentReadBase,
    InvoiceCreate,
    InvoiceRead,
    OrderCreate,
    OrderRead,
    QuoteCreate,
    QuoteRead,
)
from crmflow.errors import DocumentCreationError, EntityNotFoundError, StoreError
from crmflow.store.client import EntityStore, InsertResult, Row, eq, first_or_none, follow_location
from crmflow.store.models import utcnow


logger = logging.getLogger("crmflow.documents")
tracer = trace.get_tracer("crmflow.documents")

ReadModel = TypeVar("ReadModel", bound=DocumentReadBase)

RESOURCES: dict[DocumentKind, str] = {"quote": "quotes", "order": "orders", "invoice": "invoices"}
READ_MODELS: dict[DocumentKind, type[DocumentReadBase]] = {"quote": QuoteRead, "order": OrderRead, "invoice": InvoiceRead}

# Columns searched, in order, when an insert answers with neither a row nor a Location.
RECOVERY_KEYS: dict[DocumentKind, tuple[str, ...]] = {
    "quote": ("deal_id", "company_id"),
    "order": ("quote_id",),
    "invoice": ("order_id",),
}


@dataclass(slots=True)
class DocumentService:
    """Quote, order and invoice headers plus their ``line_items`` rows.

    Creation is two-phase: the header is posted first and its id resolved from the
    response body, a ``Location`` follow-up, or as a last resort the newest row matching
    a natural key. Lines are then posted one by one with ``position`` set to their index.
    There is no cross-row transaction, so a failure in the second phase leaves a header
    with fewer lines than requested.
    """

    store: EntityStore

    def create_quote(self, payload: QuoteCreate) -> QuoteRead:
        return self._create("quote", payload, QuoteRead, lines_best_effort=True)

    def create_order(self, payload: OrderCreate) -> OrderRead:
        return self._create("order", payload, OrderRead, lines_best_effort=False)

    def create_invoice(self, payload: InvoiceCreate) -> InvoiceRead:
        return self._create("invoice", payload, InvoiceRead, lines_best_effort=False)

    def fetch_quote(self, quote_id: str) -> QuoteRead:
        return self._fetch("quote", quote_id, QuoteRead)

    def fetch_order(self, order_id: str) -> OrderRead:
        return self._fetch("order", order_id, OrderRead)

    def fetch_invoice(self, invoice_id: str) -> InvoiceRead:
        return self._fetch("invoice", invoice_id, InvoiceRead)

    def update_quote_header(self, quote_id: str, patch: dict[str, Any]) -> QuoteRead:
        return self._update_header("quote", quote_id, patch, QuoteRead)

    def update_order_header(self, order_id: str, patch: dict[str, Any]) -> OrderRead:
        return self._update_header("order", order_id, patch, OrderRead)

    def update_invoice_header(self, invoice_id: str, patch: dict[str, Any]) -> InvoiceRead:
        return self._update_header("invoice", invoice_id, patch, InvoiceRead)

    def soft_delete(self, kind: DocumentKind, document_id: str) -> None:
        self.store.update(RESOURCES[kind], {"id": eq(document_id)}, {"deleted_at": utcnow().isoformat()})
        logger.info("document.soft_deleted", extra={f"{kind}_id": document_id})

    def hard_delete_quote(self, quote_id: str) -> None:
        """Remove a converted quote together with its lines."""
        self.store.delete("line_items", {"parent_type": eq("quote"), "parent_id": eq(quote_id)})
        self.store.delete("quotes", {"id": eq(quote_id)})
        logger.info("document.quote_deleted", extra={"quote_id": quote_id})

    def fetch_lines(self, kind: DocumentKind, parent_id: str) -> list[DocumentLineRead]:
        rows = self.store.select(
            "line_items",
            {"parent_type": eq(kind), "parent_id": eq(parent_id)},
            order="position.asc",
        )
        return [DocumentLineRead.model_validate(row) for row in rows]

    def _fetch(self, kind: DocumentKind, document_id: str, model: type[ReadModel]) -> ReadModel:
        row = first_or_none(
            self.store.select(RESOURCES[kind], {"id": eq(document_id), "deleted_at": "is.null"}, limit=1)
        )
        if row is None:
            raise EntityNotFoundError(kind, document_id)
        return model.model_validate({**row, "lines": self.fetch_lines(kind, document_id)})

    def _update_header(self, kind: DocumentKind, document_id: str, patch: dict[str, Any], model: type[ReadModel]) -> ReadModel:
        current = self._fetch(kind, document_id, model)
        rows = self.store.update(
            RESOURCES[kind],
            {"id": eq(document_id)},
            {**patch, "updated_at": utcnow().isoformat()},
        )
        if not rows:
            return self._fetch(kind, document_id, model)
        return model.model_validate({**rows[0], "lines": current.lines})

    def _create(
        self,
        kind: DocumentKind,
        payload: DocumentCreateBase,
        model: type[ReadModel],
        *,
        lines_best_effort: bool,
    ) -> ReadModel:
        header = payload.model_dump(mode="json", exclude={"lines"})
        if not (header.get("number") or "").strip():
            header.pop("number", None)

        with tracer.start_as_current_span(f"documents.create_{kind}") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            result = self.store.insert(RESOURCES[kind], header)
            row = self._resolve_header(kind, header, result)
            document_id = str(row["id"])
            span.set_attribute(f"{kind}_id", document_id)

            failed_lines = self._write_lines(kind, document_id, payload.lines, best_effort=lines_best_effort)
            if failed_lines:
                logger.warning(
                    "document.lines_incomplete",
                    extra={f"{kind}_id": document_id, "reason": f"{failed_lines} of {len(payload.lines)} lines failed"},
                )
            logger.info("document.created", extra={f"{kind}_id": document_id, "status": header.get("status")})
            return model.model_validate({**row, "lines": self.fetch_lines(kind, document_id)})

    def _resolve_header(self, kind: DocumentKind, header: Row, result: InsertResult) -> Row:
        if result.row is not None and result.row.get("id"):
            return result.row

        resource = RESOURCES[kind]
        if result.location:
            row = follow_location(self.store, resource, result.location)
            if row is not None:
                return row

        for key in RECOVERY_KEYS[kind]:
            value = header.get(key)
            if not value:
                continue
            logger.warning("document.header_recovered_by_search", extra={"resource": resource, "reason": key})
            try:
                row = first_or_none(
                    self.store.select(
                        resource,
                        {key: eq(value), "deleted_at": "is.null"},
                        order="created_at.desc",
                        limit=1,
                    )
                )
            except StoreError as exc:
                logger.warning("document.header_search_failed", extra={"resource": resource, "error": str(exc)})
                continue
            if row is not None:
                return row

        raise DocumentCreationError(f"{kind} was created but could not be found in the store")

    def _write_lines(
        self,
        kind: DocumentKind,
        document_id: str,
        lines: Sequence[DocumentLineCreate],
        *,
        best_effort: bool,
    ) -> int:
        failed = 0
        written = 0
        for position, line in enumerate(lines):
            row = {
                "parent_type": kind,
                "parent_id": document_id,
                "position": position,
                "description": line.description,
                "qty": str(line.qty),
                "unit_minor": line.unit_minor,
                "tax_rate_pct": str(line.tax_rate_pct),
                "discount_pct": str(line.discount_pct),
                "line_total_minor": line_total_minor(line.qty, line.unit_minor, line.discount_pct),
                "sku": line.sku,
            }
            try:
                self.store.insert("line_items", row)
            except StoreError as exc:
                if not best_effort:
                    logger.error(
                        "document.line_failed",
                        extra={f"{kind}_id": document_id, "reason": f"line {position}", "error": str(exc)},
                    )
                    raise DocumentCreationError(
                        f"line {position} of {kind} {document_id} failed after {written} lines were written: {exc}",
                        document_id=document_id,
                        lines_written=written,
                    ) from exc
                failed += 1
                logger.warning(
                    "document.line_skipped",
                    extra={f"{kind}_id": document_id, "reason": f"line {position}", "error": str(exc)},
                )
                continue
            written += 1
        return failed
