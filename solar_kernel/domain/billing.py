"""
solar_kernel.domain.billing -- Net-metering arithmetic.

Responsibility:
    Turns a month of summed meter readings into the figures a monthly bill
    carries: net kWh, amount due, export credit, billing window, due date
    and invoice line items.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  BillingService does
    the querying and persistence; everything here is a plain function of
    its arguments.

Invariants:
    - net_kwh = kwh_imported - kwh_exported.
    - net_kwh > 0: amount_due = net_kwh * rate, credit = 0.
    - net_kwh <= 0: amount_due = 0, credit = |net_kwh| * credit_rate.
    - amount_due and credit are rounded exactly once, half-up to 2 places,
      via round_money().
    - A billing month is the UTC calendar month [start, end).
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from solar_kernel.db.types import round_money, to_decimal
from solar_kernel.exceptions import ValidationError

ZERO = Decimal("0")


@dataclass(frozen=True)
class NetMeteringResult:
    net_kwh: Decimal
    amount_due: Decimal
    credit: Decimal


@dataclass(frozen=True)
class MonthlyBillingSummary:
    """Aggregated energy and money figures for one application and month."""

    application_id: UUID
    year: int
    month: int
    reading_count: int
    kwh_generated: Decimal
    kwh_exported: Decimal
    kwh_imported: Decimal
    net_kwh: Decimal
    amount_due: Decimal
    credit: Decimal
    rate_per_kwh: Decimal
    credit_rate_per_kwh: Decimal

    @property
    def is_net_exporter(self) -> bool:
        return self.net_kwh <= 0


def validate_period(year: int, month: int) -> None:
    if not 1 <= month <= 12:
        raise ValidationError("month", f"must be between 1 and 12, got {month}")
    if not 1 <= year <= 9999:
        raise ValidationError("year", f"out of range: {year}")


def validate_rates(rate_per_kwh: Decimal, credit_rate_per_kwh: Decimal) -> None:
    if rate_per_kwh < 0:
        raise ValidationError("rate_per_kwh", "must not be negative")
    if credit_rate_per_kwh < 0:
        raise ValidationError("credit_rate_per_kwh", "must not be negative")


def compute_net_metering(
    kwh_imported: Decimal,
    kwh_exported: Decimal,
    rate_per_kwh: Decimal,
    credit_rate_per_kwh: Decimal,
) -> NetMeteringResult:
    """Apply the net-metering rule to one month's totals.

    >>> compute_net_metering(Decimal("120"), Decimal("320"), Decimal("52"), Decimal("30"))
    NetMeteringResult(net_kwh=Decimal('-200'), amount_due=Decimal('0.00'), credit=Decimal('6000.00'))
    """
    net_kwh = to_decimal(kwh_imported) - to_decimal(kwh_exported)
    rate = to_decimal(rate_per_kwh)
    credit_rate = to_decimal(credit_rate_per_kwh)

    if net_kwh > 0:
        return NetMeteringResult(
            net_kwh=net_kwh,
            amount_due=round_money(net_kwh * rate),
            credit=round_money(ZERO),
        )
    return NetMeteringResult(
        net_kwh=net_kwh,
        amount_due=round_money(ZERO),
        credit=round_money(abs(net_kwh) * credit_rate),
    )


def month_window(year: int, month: int) -> tuple[datetime, datetime]:
    """Half-open UTC window [first instant of month, first instant of next)."""
    validate_period(year, month)
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def monthly_due_date(year: int, month: int, due_days: int) -> datetime:
    """Due date of a month's bill: first day of the following month + due_days."""
    _, next_month_start = month_window(year, month)
    return next_month_start + timedelta(days=due_days)


def bill_description(month: int) -> str:
    return f"{calendar.month_name[month]} Net Metering Bill"


def summarize_month(
    application_id: UUID,
    year: int,
    month: int,
    readings: Iterable[tuple[Decimal, Decimal, Decimal]],
    rate_per_kwh: Decimal,
    credit_rate_per_kwh: Decimal,
) -> MonthlyBillingSummary:
    """Sum (generated, exported, imported) triples and apply net metering."""
    generated = exported = imported = ZERO
    count = 0
    for kwh_generated, kwh_exported, kwh_imported in readings:
        generated += to_decimal(kwh_generated)
        exported += to_decimal(kwh_exported)
        imported += to_decimal(kwh_imported)
        count += 1

    result = compute_net_metering(imported, exported, rate_per_kwh, credit_rate_per_kwh)
    return MonthlyBillingSummary(
        application_id=application_id,
        year=year,
        month=month,
        reading_count=count,
        kwh_generated=generated,
        kwh_exported=exported,
        kwh_imported=imported,
        net_kwh=result.net_kwh,
        amount_due=result.amount_due,
        credit=result.credit,
        rate_per_kwh=to_decimal(rate_per_kwh),
        credit_rate_per_kwh=to_decimal(credit_rate_per_kwh),
    )


def build_line_items(summary: MonthlyBillingSummary) -> list[dict[str, Any]]:
    """
    Invoice line items for a monthly bill.

    Decimals are serialized as strings so JSON storage keeps them exact.
    The credit line is negative and informational; it is not netted against
    any other invoice.
    """
    if summary.net_kwh > 0:
        return [
            {
                "description": f"Net energy import ({summary.net_kwh} kWh)",
                "quantity": str(summary.net_kwh),
                "unit_price": str(summary.rate_per_kwh),
                "total": str(summary.amount_due),
            }
        ]
    exported = abs(summary.net_kwh)
    return [
        {
            "description": f"Net energy export credit ({exported} kWh)",
            "quantity": str(exported),
            "unit_price": str(summary.credit_rate_per_kwh),
            "total": str(ZERO - summary.credit),
        }
    ]
