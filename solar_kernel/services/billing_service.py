"""
BillingService -- monthly net-metering bills from raw meter readings.

Responsibility:
    Aggregates an application's readings for a UTC calendar month, applies
    the net-metering rule (domain.billing) and materializes one
    ``monthly_bill`` invoice per application and month.

Architecture position:
    Kernel > Services -- imperative shell around the pure
    ``solar_kernel.domain.billing`` functions.  Rates and the due-date
    offset are constructor arguments; outer layers read them from
    solar_config.

Invariants enforced:
    - At most one monthly bill per (application, year, month).  The insert
      is ``ON CONFLICT DO NOTHING`` on uq_invoice_billing_period; a
      duplicate is reported as skipped, never as an error.
    - amount_due / credit are rounded once, in domain.billing.
    - The export credit is informational: it appears as a negative line
      item on the bill and is never applied to another invoice.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - ValidationError: month outside 1..12 or a negative rate.
    - ApplicationNotFoundError from aggregate_month().
    - ForbiddenError when a non-officer principal is supplied.
"""

from collections import defaultdict
from decimal import Decimal
from uuid import UUID

from solar_kernel.db.types import to_decimal
from solar_kernel.domain.billing import (
    MonthlyBillingSummary,
    bill_description,
    build_line_items,
    month_window,
    monthly_due_date,
    summarize_month,
    validate_period,
    validate_rates,
)
from solar_kernel.domain.clock import Clock
from solar_kernel.domain.dtos import InvoiceInfo, MonthlyBillingRun, Principal
from solar_kernel.domain.policy import Action, PolicyTarget, require
from solar_kernel.logging_config import get_logger
from solar_kernel.models.invoice import Invoice, InvoiceStatus, InvoiceType
from solar_kernel.services.base import BaseService

logger = get_logger("services.billing")

DEFAULT_RATE_PER_KWH = Decimal("52")
DEFAULT_CREDIT_RATE_PER_KWH = Decimal("30")
DEFAULT_DUE_DAYS = 14


class BillingService(BaseService):
    """Aggregation and monthly bill generation."""

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        rate_per_kwh: Decimal = DEFAULT_RATE_PER_KWH,
        credit_rate_per_kwh: Decimal = DEFAULT_CREDIT_RATE_PER_KWH,
        due_days: int = DEFAULT_DUE_DAYS,
    ):
        super().__init__(session, clock)
        self.rate_per_kwh = to_decimal(rate_per_kwh)
        self.credit_rate_per_kwh = to_decimal(credit_rate_per_kwh)
        validate_rates(self.rate_per_kwh, self.credit_rate_per_kwh)
        if due_days < 0:
            raise ValueError("due_days must not be negative")
        self.due_days = due_days

    def _rates(
        self,
        rate_per_kwh: Decimal | None,
        credit_rate_per_kwh: Decimal | None,
    ) -> tuple[Decimal, Decimal]:
        rate = self.rate_per_kwh if rate_per_kwh is None else to_decimal(rate_per_kwh)
        credit_rate = (
            self.credit_rate_per_kwh
            if credit_rate_per_kwh is None
            else to_decimal(credit_rate_per_kwh)
        )
        validate_rates(rate, credit_rate)
        return rate, credit_rate

    def aggregate_month(
        self,
        application_id: UUID,
        year: int,
        month: int,
        rate_per_kwh: Decimal | None = None,
        credit_rate_per_kwh: Decimal | None = None,
    ) -> MonthlyBillingSummary:
        """Sum the month's readings and compute amount due and credit."""
        validate_period(year, month)
        rate, credit_rate = self._rates(rate_per_kwh, credit_rate_per_kwh)
        self.gateway.require_application(application_id)
        return self._summarize(application_id, year, month, rate, credit_rate)

    def _summarize(
        self,
        application_id: UUID,
        year: int,
        month: int,
        rate: Decimal,
        credit_rate: Decimal,
    ) -> MonthlyBillingSummary:
        start, end = month_window(year, month)
        readings = self.gateway.readings_between(application_id, start, end)
        return summarize_month(
            application_id,
            year,
            month,
            ((r.kwh_generated, r.kwh_exported, r.kwh_imported) for r in readings),
            rate,
            credit_rate,
        )

    def generate_monthly_bills(
        self,
        month: int,
        year: int,
        rate_per_kwh: Decimal | None = None,
        credit_rate_per_kwh: Decimal | None = None,
        principal: Principal | None = None,
    ) -> MonthlyBillingRun:
        """
        Create the month's bill for every application with readings.

        Postconditions:
            - Every application with at least one reading in the month has
              exactly one monthly_bill for (year, month).
            - Applications that already had one are listed as skipped.
        """
        if principal is not None:
            require(principal, Action.GENERATE_BILLS)
        validate_period(year, month)
        rate, credit_rate = self._rates(rate_per_kwh, credit_rate_per_kwh)

        now = self.clock.now()
        start, end = month_window(year, month)
        due_date = monthly_due_date(year, month, self.due_days)

        created: list[InvoiceInfo] = []
        skipped: list[UUID] = []
        for application_id in self.gateway.applications_with_readings(start, end):
            application = self.gateway.require_application(application_id)
            summary = self._summarize(application_id, year, month, rate, credit_rate)

            invoice_id = self.gateway.insert_if_absent(
                Invoice.__table__,
                {
                    "application_id": application_id,
                    "customer_id": application.customer_id,
                    "type": InvoiceType.MONTHLY_BILL,
                    "amount": summary.amount_due,
                    "status": InvoiceStatus.PENDING,
                    "due_date": due_date,
                    "paid_at": None,
                    "line_items": build_line_items(summary),
                    "description": bill_description(month),
                    "billing_year": year,
                    "billing_month": month,
                    "created_at": now,
                    "updated_at": now,
                },
                conflict_columns=(
                    "application_id",
                    "type",
                    "billing_year",
                    "billing_month",
                ),
            )
            if invoice_id is None:
                skipped.append(application_id)
                logger.info(
                    "monthly_bill_skipped",
                    extra={
                        "application_id": str(application_id),
                        "year": year,
                        "month": month,
                    },
                )
                continue

            created.append(InvoiceInfo.from_model(self.gateway.get_invoice(invoice_id)))
            logger.info(
                "monthly_bill_created",
                extra={
                    "application_id": str(application_id),
                    "invoice_id": str(invoice_id),
                    "year": year,
                    "month": month,
                    "net_kwh": str(summary.net_kwh),
                    "amount_due": str(summary.amount_due),
                    "credit": str(summary.credit),
                },
            )

        logger.info(
            "monthly_billing_completed",
            extra={
                "year": year,
                "month": month,
                "bills_created": len(created),
                "bills_skipped": len(skipped),
            },
        )
        return MonthlyBillingRun(
            year=year,
            month=month,
            created=tuple(created),
            skipped_application_ids=tuple(skipped),
        )

    def monthly_summaries(
        self,
        application_id: UUID,
        rate_per_kwh: Decimal | None = None,
        credit_rate_per_kwh: Decimal | None = None,
        principal: Principal | None = None,
    ) -> list[MonthlyBillingSummary]:
        """One summary per month that has readings, oldest first."""
        rate, credit_rate = self._rates(rate_per_kwh, credit_rate_per_kwh)
        application = self.gateway.require_application(application_id)
        if principal is not None:
            require(
                principal,
                Action.VIEW_ENERGY,
                PolicyTarget(customer_id=application.customer_id),
            )

        by_month: dict[tuple[int, int], list] = defaultdict(list)
        for reading in self.gateway.readings_for_application(application_id):
            key = (reading.reading_date.year, reading.reading_date.month)
            by_month[key].append(
                (reading.kwh_generated, reading.kwh_exported, reading.kwh_imported)
            )

        return [
            summarize_month(application_id, year, month, rows, rate, credit_rate)
            for (year, month), rows in sorted(by_month.items())
        ]
