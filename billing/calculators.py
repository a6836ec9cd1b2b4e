"""
Monetary arithmetic for invoices, quotes and subscriptions.

Every function here is free of database access. Amounts are Decimal and are
quantized to cents with ROUND_HALF_UP.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Sequence

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
SECONDS_PER_DAY = 86400

SALES_TAX = "sales_tax"


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_tax(base: Any, rate: Any) -> Decimal:
    return money(to_decimal(base) * to_decimal(rate) / HUNDRED)


def calculate_line_total(quantity: Any, unit_price: Any, discount_amount: Any = 0, discount_percent: Any = 0) -> Decimal:
    gross = to_decimal(quantity) * to_decimal(unit_price)
    flat = to_decimal(discount_amount)
    if flat:
        net = gross - flat
    else:
        net = gross - gross * to_decimal(discount_percent) / HUNDRED
    return max(money(net), ZERO)


def format_rate(rate: Decimal) -> str:
    """``Decimal("10.00")`` -> ``"10"``, never exponent notation."""
    return f"{rate.normalize():f}"


def build_tax_details(rate: Any, taxable_amount: Any = 0, tax_type: str = SALES_TAX,
                      description: str = "") -> List[Dict[str, str]]:
    """Return the single tax entry for ``rate``, or nothing when no rate applies.

    The amounts are re-derived from the line items on every recompute; the
    entry mainly carries the rate.
    """
    rate = to_decimal(rate)
    taxable_amount = money(taxable_amount)
    if rate <= 0:
        return []
    return [
        {
            "tax_type": tax_type,
            "tax_rate": format_rate(rate),
            "taxable_amount": str(taxable_amount),
            "tax_amount": str(calculate_tax(taxable_amount, rate)),
            "description": description or f"Sales Tax ({format_rate(rate)}%)",
        }
    ]


def tax_rate_of(tax_details: Optional[Sequence[Dict[str, Any]]]) -> Decimal:
    """Combined rate of a document's tax details."""
    return sum((to_decimal(detail.get("tax_rate")) for detail in tax_details or []), ZERO)


@dataclass
class DocumentTotals:
    subtotal: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    tax_details: List[Dict[str, str]]


def calculate_totals(line_items: Iterable[Any], tax_details: Optional[Sequence[Dict[str, Any]]],
                     discount_amount: Any = 0) -> DocumentTotals:
    """Aggregate line items into document totals.

    Line items only need ``quantity``, ``unit_price``, ``discount_amount``,
    ``discount_percent`` and ``taxable`` attributes. Their ``total_price`` is
    set as a side effect so the caller can persist it.
    """
    subtotal = ZERO
    taxable_amount = ZERO
    for item in line_items:
        item.total_price = calculate_line_total(
            item.quantity, item.unit_price, item.discount_amount, item.discount_percent
        )
        subtotal += item.total_price
        if item.taxable:
            taxable_amount += item.total_price

    details = []
    for detail in tax_details or []:
        rate = to_decimal(detail.get("tax_rate"))
        details.append({
            **detail,
            "tax_rate": format_rate(rate),
            "taxable_amount": str(money(taxable_amount)),
            "tax_amount": str(calculate_tax(taxable_amount, rate)),
        })
    tax_amount = sum((to_decimal(d["tax_amount"]) for d in details), ZERO)
    discount = money(discount_amount)

    return DocumentTotals(
        subtotal=money(subtotal),
        taxable_amount=money(taxable_amount),
        tax_amount=money(tax_amount),
        discount_amount=discount,
        total_amount=money(subtotal + tax_amount - discount),
        tax_details=details,
    )


def derive_invoice_status(status: str, total: Decimal, amount_paid: Decimal, due_date: Optional[date], today: date) -> str:
    if status in ("cancelled", "refunded"):
        return status
    if amount_paid > 0 and amount_paid >= total:
        return "paid"
    past_due = bool(due_date and due_date < today)
    if 0 < amount_paid < total:
        # Past due wins over partial payment; the paid share stays in amount_paid.
        status = "overdue" if past_due else "partially_paid"
    elif status in ("paid", "partially_paid"):
        # The payment was reversed.
        status = "sent"
    if status != "draft" and past_due:
        return "overdue"
    if status == "overdue" and not past_due:
        return "sent"
    return status


def _apply_totals(document, totals: DocumentTotals) -> None:
    document.subtotal = totals.subtotal
    document.tax_amount = totals.tax_amount
    document.discount_amount = totals.discount_amount
    document.total_amount = totals.total_amount
    document.tax_details = totals.tax_details


def recompute_invoice(invoice, line_items: Iterable[Any], today: date):
    totals = calculate_totals(line_items, invoice.tax_details, invoice.discount_amount)
    _apply_totals(invoice, totals)
    invoice.amount_paid = money(invoice.amount_paid)
    invoice.remaining_balance = max(invoice.total_amount - invoice.amount_paid, ZERO)
    invoice.status = derive_invoice_status(
        invoice.status, invoice.total_amount, invoice.amount_paid, invoice.due_date, today
    )
    return invoice


def recompute_quote(quote, line_items: Iterable[Any], today: date):
    totals = calculate_totals(line_items, quote.tax_details, quote.discount_amount)
    _apply_totals(quote, totals)
    if (
        quote.status not in ("accepted", "rejected", "expired")
        and quote.expiration_date
        and quote.expiration_date < today
    ):
        quote.status = "expired"
    return quote


@dataclass
class Proration:
    current_amount: Decimal
    new_amount: Decimal
    remaining_days: int
    total_days: int
    credit_amount: Decimal
    prorated_amount: Decimal


def prorate(current_amount: Any, new_amount: Any, period_start: datetime, period_end: datetime,
            change_date: datetime) -> Proration:
    """Linear estimate of a mid-period plan change.

    The result approximates what the gateway will charge; it is not the
    gateway's own proration and may differ by a day's worth of billing.
    """
    remaining_days = max(math.ceil((period_end - change_date).total_seconds() / SECONDS_PER_DAY), 0)
    total_days = max(math.ceil((period_end - period_start).total_seconds() / SECONDS_PER_DAY), 0)
    current_amount = to_decimal(current_amount)
    new_amount = to_decimal(new_amount)

    if total_days == 0:
        return Proration(money(current_amount), money(new_amount), remaining_days, 0, ZERO, ZERO)

    remaining = Decimal(min(remaining_days, total_days))
    credit = current_amount * remaining / total_days
    charge = new_amount * remaining / total_days
    return Proration(
        current_amount=money(current_amount),
        new_amount=money(new_amount),
        remaining_days=remaining_days,
        total_days=total_days,
        credit_amount=money(credit),
        prorated_amount=money(charge - credit),
    )


def to_minor_units(amount: Any) -> int:
    return int((to_decimal(amount) * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Optional[int]) -> Decimal:
    if value is None:
        return ZERO
    return money(Decimal(value) / HUNDRED)
