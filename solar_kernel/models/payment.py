"""
Module: solar_kernel.models.payment
Responsibility: ORM persistence for payment-provider transactions.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - provider_intent_id is unique (uq_payment_provider_intent); it is the
      idempotency key for reconciliation.
    - invoice_id is written once, by a conditional UPDATE keyed on
      provider_intent_id (see PersistenceGateway.link_payment_to_invoice).
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from solar_kernel.db.base import TrackedBase, UUIDString
from solar_kernel.db.types import status_column_type


class PaymentType(str, Enum):
    AUTHORITY_FEE = "authority_fee"
    INSTALLATION = "installation"
    INSPECTION = "inspection"
    MONTHLY_BILL = "monthly_bill"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    VERIFIED = "verified"
    FAILED = "failed"


class PaymentTransaction(TrackedBase):
    """An external payment-provider event awaiting reconciliation."""

    __tablename__ = "payment_transactions"

    __table_args__ = (
        UniqueConstraint("provider_intent_id", name="uq_payment_provider_intent"),
        Index("idx_payment_invoice", "invoice_id"),
    )

    provider_intent_id: Mapped[str] = mapped_column(String(128), nullable=False)

    provider: Mapped[str] = mapped_column(String(50), default="sandbox", nullable=False)

    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    application_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("applications.id"), nullable=True
    )

    invoice_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=True
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    currency: Mapped[str] = mapped_column(String(3), default="lkr", nullable=False)

    type: Mapped[PaymentType] = mapped_column(
        status_column_type(PaymentType), nullable=False
    )

    status: Mapped[PaymentStatus] = mapped_column(
        status_column_type(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False,
    )

    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<PaymentTransaction {self.provider_intent_id}: {self.status.value}>"
