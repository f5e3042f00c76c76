"""
Module: solar_kernel.models.invoice
Responsibility: ORM persistence for billable obligations (authority fees,
    installation invoices, monthly net-metering bills).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - paid_at is set iff status = paid (ck_invoice_paid_at).
    - At most one monthly_bill per (application, billing_year, billing_month)
      (uq_invoice_billing_period).  Non-monthly invoices leave the period
      columns NULL, which never collide.
    - amount >= 0; only monthly bills of net exporters carry zero.

Failure modes:
    - IntegrityError on a duplicate monthly bill (absorbed by the gateway's
      ON CONFLICT insert and reported as a no-op).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from solar_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from solar_kernel.db.types import status_column_type


class InvoiceType(str, Enum):
    AUTHORITY_FEE = "authority_fee"
    INSTALLATION = "installation"
    MONTHLY_BILL = "monthly_bill"


class InvoiceStatus(str, Enum):
    """Contract: PENDING -> PAID, PENDING -> OVERDUE, OVERDUE -> PAID."""

    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


SETTLEABLE_INVOICE_STATUSES = (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE)


class Invoice(TrackedBase):
    """A billable obligation owed by a customer."""

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint(
            "application_id",
            "type",
            "billing_year",
            "billing_month",
            name="uq_invoice_billing_period",
        ),
        CheckConstraint("amount >= 0", name="ck_invoice_amount_non_negative"),
        CheckConstraint(
            "(status = 'paid') = (paid_at IS NOT NULL)",
            name="ck_invoice_paid_at",
        ),
        Index("idx_invoice_status_due", "status", "due_date"),
        Index("idx_invoice_customer", "customer_id"),
    )

    application_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("applications.id"), nullable=True
    )

    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    installer_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    type: Mapped[InvoiceType] = mapped_column(
        status_column_type(InvoiceType), nullable=False
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    status: Mapped[InvoiceStatus] = mapped_column(
        status_column_type(InvoiceStatus),
        default=InvoiceStatus.PENDING,
        nullable=False,
    )

    due_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # [{"description", "quantity", "unit_price", "total"}], decimals as strings
    line_items: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )

    description: Mapped[str] = mapped_column(String(500), nullable=False)

    billing_year: Mapped[int | None] = mapped_column(Integer, nullable=True)

    billing_month: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<Invoice {self.id}: {self.type.value} {self.amount} ({self.status.value})>"
