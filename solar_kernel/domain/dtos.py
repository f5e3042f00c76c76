"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the immutable data structures returned by the kernel services:
    the authenticated Principal, bid proposals, session/bid/invoice/payment
    snapshots, and the reports produced by the sweeper, the billing engine
    and payment reconciliation.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters invoked from the
    service layer only; ORM types are imported for type checking only.

Invariants enforced:
    - Services return DTOs, never ORM entities, so no caller holds a live
      entity beyond one unit of work.
    - Status fields carry the enum *value* string ("open", "paid").
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from solar_kernel.models.application import Application as ApplicationModel
    from solar_kernel.models.bid_session import Bid as BidModel
    from solar_kernel.models.bid_session import BidSession as BidSessionModel
    from solar_kernel.models.invoice import Invoice as InvoiceModel
    from solar_kernel.models.meter_reading import MeterReading as MeterReadingModel
    from solar_kernel.models.payment import PaymentTransaction as PaymentModel


class Role(str, Enum):
    CUSTOMER = "customer"
    INSTALLER = "installer"
    OFFICER = "officer"


@dataclass(frozen=True)
class Principal:
    """
    Authenticated caller as issued by the authentication collaborator.

    The kernel trusts this value; it never authenticates on its own.
    """

    id: UUID
    role: Role
    organization_id: UUID | None = None

    @property
    def is_officer(self) -> bool:
        return self.role == Role.OFFICER


@dataclass(frozen=True)
class BidProposal:
    """Installer-supplied fields of a bid."""

    price: Decimal
    proposal: str
    warranty: str
    estimated_days: int
    package_id: UUID | None = None


@dataclass(frozen=True)
class BidSessionInfo:
    id: UUID
    application_id: UUID
    customer_id: UUID
    status: str
    started_at: datetime
    expires_at: datetime
    closed_at: datetime | None
    selected_bid_id: UUID | None
    bid_count: int

    @classmethod
    def from_model(cls, model: BidSessionModel) -> BidSessionInfo:
        return cls(
            id=model.id,
            application_id=model.application_id,
            customer_id=model.customer_id,
            status=model.status.value,
            started_at=model.started_at,
            expires_at=model.expires_at,
            closed_at=model.closed_at,
            selected_bid_id=model.selected_bid_id,
            bid_count=model.bid_count,
        )


@dataclass(frozen=True)
class BidInfo:
    id: UUID
    application_id: UUID
    bid_session_id: UUID
    installer_id: UUID
    organization_id: UUID
    package_id: UUID | None
    price: Decimal
    proposal: str
    warranty: str
    estimated_days: int
    status: str
    created_at: datetime

    @classmethod
    def from_model(cls, model: BidModel) -> BidInfo:
        return cls(
            id=model.id,
            application_id=model.application_id,
            bid_session_id=model.bid_session_id,
            installer_id=model.installer_id,
            organization_id=model.organization_id,
            package_id=model.package_id,
            price=model.price,
            proposal=model.proposal,
            warranty=model.warranty,
            estimated_days=model.estimated_days,
            status=model.status.value,
            created_at=model.created_at,
        )


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of select_bid: the closed session, the winner and the losers."""

    session: BidSessionInfo
    accepted: BidInfo
    rejected_bid_ids: tuple[UUID, ...]


@dataclass(frozen=True)
class SweepReport:
    swept_at: datetime
    sessions_expired: int
    bids_expired: int
    session_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class InvoiceInfo:
    id: UUID
    application_id: UUID | None
    customer_id: UUID
    type: str
    amount: Decimal
    status: str
    due_date: datetime
    paid_at: datetime | None
    description: str
    line_items: tuple[dict[str, Any], ...] = ()
    billing_year: int | None = None
    billing_month: int | None = None

    @classmethod
    def from_model(cls, model: InvoiceModel) -> InvoiceInfo:
        return cls(
            id=model.id,
            application_id=model.application_id,
            customer_id=model.customer_id,
            type=model.type.value,
            amount=model.amount,
            status=model.status.value,
            due_date=model.due_date,
            paid_at=model.paid_at,
            description=model.description,
            line_items=tuple(dict(item) for item in (model.line_items or [])),
            billing_year=model.billing_year,
            billing_month=model.billing_month,
        )


@dataclass(frozen=True)
class PaymentInfo:
    id: UUID
    provider_intent_id: str
    customer_id: UUID
    application_id: UUID | None
    invoice_id: UUID | None
    amount: Decimal
    currency: str
    type: str
    status: str

    @classmethod
    def from_model(cls, model: PaymentModel) -> PaymentInfo:
        return cls(
            id=model.id,
            provider_intent_id=model.provider_intent_id,
            customer_id=model.customer_id,
            application_id=model.application_id,
            invoice_id=model.invoice_id,
            amount=model.amount,
            currency=model.currency,
            type=model.type.value,
            status=model.status.value,
        )


@dataclass(frozen=True)
class ReconciliationResult:
    """
    Outcome of confirm_payment.

    ``already_settled`` is True when the call was an idempotent replay: no
    invoice was created, nothing was re-marked, nobody was notified.
    """

    payment: PaymentInfo
    invoice: InvoiceInfo
    invoice_created: bool
    already_settled: bool


@dataclass(frozen=True)
class MeterReadingInfo:
    id: UUID
    application_id: UUID
    reading_date: datetime
    kwh_generated: Decimal
    kwh_exported: Decimal
    kwh_imported: Decimal

    @classmethod
    def from_model(cls, model: MeterReadingModel) -> MeterReadingInfo:
        return cls(
            id=model.id,
            application_id=model.application_id,
            reading_date=model.reading_date,
            kwh_generated=model.kwh_generated,
            kwh_exported=model.kwh_exported,
            kwh_imported=model.kwh_imported,
        )


@dataclass(frozen=True)
class MonthlyBillingRun:
    """Result of generate_monthly_bills for one (year, month)."""

    year: int
    month: int
    created: tuple[InvoiceInfo, ...] = ()
    skipped_application_ids: tuple[UUID, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ApplicationInfo:
    id: UUID
    reference: str
    customer_id: UUID
    status: str
    installer_organization_id: UUID | None
    selected_package_id: UUID | None
    rejection_reason: str | None

    @classmethod
    def from_model(cls, model: ApplicationModel) -> ApplicationInfo:
        return cls(
            id=model.id,
            reference=model.reference,
            customer_id=model.customer_id,
            status=model.status.value,
            installer_organization_id=model.installer_organization_id,
            selected_package_id=model.selected_package_id,
            rejection_reason=model.rejection_reason,
        )
