from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from crmflow.side_effects import SideEffectOutcome


QuoteStatus = Literal["draft", "sent", "accepted", "declined", "expired"]
OrderStatus = Literal["draft", "accepted", "cancelled", "backorder", "invoiced"]
InvoiceStatus = Literal["draft", "sent", "paid", "overdue"]
EffectiveInvoiceStatus = Literal["draft", "sent", "paid", "overdue", "partial"]
PaymentMethod = Literal["bank", "card", "cash", "other"]
DocumentKind = Literal["quote", "order", "invoice"]


class DocumentLineCreate(BaseModel):
    description: str
    qty: Decimal = Field(default=Decimal("1"), ge=0)
    unit_minor: int
    tax_rate_pct: Decimal = Decimal("0")
    discount_pct: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    sku: str | None = None


class DocumentLineRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    position: int
    description: str
    qty: Decimal
    unit_minor: int
    tax_rate_pct: Decimal = Decimal("0")
    discount_pct: Decimal = Decimal("0")
    line_total_minor: int = 0
    sku: str | None = None


class DocumentCreateBase(BaseModel):
    number: str | None = None
    currency: str
    notes: str | None = None
    company_id: str
    contact_id: str | None = None
    deal_id: str | None = None
    subtotal_minor: int = 0
    tax_minor: int = 0
    total_minor: int = 0
    lines: list[DocumentLineCreate] = Field(default_factory=list)


class QuoteCreate(DocumentCreateBase):
    status: QuoteStatus = "draft"
    issue_date: date
    valid_until: date | None = None
    created_by: str | None = None


class OrderCreate(DocumentCreateBase):
    status: OrderStatus = "draft"
    order_date: date
    quote_id: str | None = None


class InvoiceCreate(DocumentCreateBase):
    status: InvoiceStatus = "draft"
    issue_date: date
    due_date: date | None = None
    order_id: str | None = None
    paid_minor: int = 0
    balance_minor: int = 0


class DocumentReadBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    number: str | None = None
    currency: str
    notes: str | None = None
    company_id: str
    contact_id: str | None = None
    deal_id: str | None = None
    subtotal_minor: int = 0
    tax_minor: int = 0
    total_minor: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    lines: list[DocumentLineRead] = Field(default_factory=list)


class QuoteRead(DocumentReadBase):
    status: QuoteStatus
    issue_date: date | None = None
    valid_until: date | None = None


class OrderRead(DocumentReadBase):
    status: OrderStatus
    order_date: date | None = None
    quote_id: str | None = None


class InvoiceRead(DocumentReadBase):
    status: InvoiceStatus
    issue_date: date | None = None
    due_date: date | None = None
    order_id: str | None = None
    paid_minor: int = 0
    balance_minor: int = 0
    effective_status: EffectiveInvoiceStatus | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    company_id: str
    contact_id: str | None = None
    stage_id: str
    currency: str | None = None
    expected_value_minor: int = 0
    close_date: date | None = None
    probability: float | None = None
    owner_user_id: str | None = None
    deleted_at: datetime | None = None


class ConversionResult(BaseModel):
    id: str
    created: bool
    side_effects: list[SideEffectOutcome] = Field(default_factory=list)


class QuoteStatusUpdate(BaseModel):
    status: QuoteStatus


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class StatusChangeResult(BaseModel):
    id: str
    status: str
    converted_id: str | None = None
    side_effects: list[SideEffectOutcome] = Field(default_factory=list)


class PaymentCreate(BaseModel):
    amount_minor: int = Field(gt=0)
    payment_date: date
    method: PaymentMethod = "bank"
    note: str | None = None
