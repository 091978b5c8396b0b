from __future__ import annotations

from fastapi import APIRouter, Depends, status

from crmflow.api.deps import get_conversion_service, get_lifecycle_service, http_errors
from crmflow.documents.conversion import ConversionService
from crmflow.documents.lifecycle import DocumentLifecycleService
from crmflow.documents.schemas import (
    ConversionResult,
    InvoiceRead,
    OrderStatusUpdate,
    PaymentCreate,
    QuoteRead,
    QuoteStatusUpdate,
    StatusChangeResult,
)

router = APIRouter(tags=["documents"])


@router.post("/deals/{deal_id}/quote", response_model=QuoteRead, status_code=status.HTTP_201_CREATED)
def create_quote_from_deal(deal_id: str, service: ConversionService = Depends(get_conversion_service)) -> QuoteRead:
    with http_errors():
        return service.create_quote_from_deal(deal_id)


@router.post("/quotes/{quote_id}/convert", response_model=ConversionResult)
def convert_quote(quote_id: str, service: ConversionService = Depends(get_conversion_service)) -> ConversionResult:
    with http_errors():
        return service.ensure_order_for_quote(quote_id)


@router.post("/orders/{order_id}/convert", response_model=ConversionResult)
def convert_order(order_id: str, service: ConversionService = Depends(get_conversion_service)) -> ConversionResult:
    with http_errors():
        return service.ensure_invoice_for_order(order_id)


@router.patch("/quotes/{quote_id}/status", response_model=StatusChangeResult)
def update_quote_status(
    quote_id: str,
    payload: QuoteStatusUpdate,
    service: DocumentLifecycleService = Depends(get_lifecycle_service),
) -> StatusChangeResult:
    with http_errors():
        return service.update_quote_status(quote_id, payload.status)


@router.delete("/quotes/{quote_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_quote(quote_id: str, service: DocumentLifecycleService = Depends(get_lifecycle_service)) -> None:
    with http_errors():
        service.delete_quote(quote_id)


@router.patch("/orders/{order_id}/status", response_model=StatusChangeResult)
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    service: DocumentLifecycleService = Depends(get_lifecycle_service),
) -> StatusChangeResult:
    with http_errors():
        return service.update_order_status(order_id, payload.status)


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(invoice_id: str, service: DocumentLifecycleService = Depends(get_lifecycle_service)) -> InvoiceRead:
    with http_errors():
        return service.get_invoice(invoice_id)


@router.post("/invoices/{invoice_id}/payments", response_model=InvoiceRead)
def record_payment(
    invoice_id: str,
    payload: PaymentCreate,
    service: DocumentLifecycleService = Depends(get_lifecycle_service),
) -> InvoiceRead:
    with http_errors():
        return service.record_payment(invoice_id, payload)
