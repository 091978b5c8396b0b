from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

_HUNDRED = Decimal("100")


def to_minor(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def line_total_minor(qty: Decimal | int | str, unit_minor: int, discount_pct: Decimal | int | str = 0) -> int:
    """Pre-tax line amount: qty x unit price x (1 - discount%), rounded half-up to a minor unit."""
    gross = Decimal(str(qty)) * Decimal(unit_minor)
    return to_minor(gross * (1 - Decimal(str(discount_pct)) / _HUNDRED))


def tax_minor(amount_minor: int, tax_rate_pct: Decimal | int | str) -> int:
    return to_minor(Decimal(amount_minor) * Decimal(str(tax_rate_pct)) / _HUNDRED)


@dataclass(frozen=True)
class DocumentTotals:
    subtotal_minor: int
    tax_minor: int
    total_minor: int


def compute_totals(lines: Iterable[object]) -> DocumentTotals:
    """Sum ``qty``/``unit_minor``/``discount_pct``/``tax_rate_pct`` lines; tax is rounded per line."""
    subtotal = 0
    tax = 0
    for line in lines:
        amount = line_total_minor(line.qty, line.unit_minor, line.discount_pct)  # type: ignore[attr-defined]
        subtotal += amount
        tax += tax_minor(amount, line.tax_rate_pct)  # type: ignore[attr-defined]
    return DocumentTotals(subtotal_minor=subtotal, tax_minor=tax, total_minor=subtotal + tax)
