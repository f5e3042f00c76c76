"""
PaymentReconciliationService -- settle invoices from payment-provider events.

Responsibility:
    Registers provider payment intents and, when the provider reports a
    completed payment, links the payment to an invoice (creating one when
    none exists), marks the invoice paid, records the payment status and
    notifies the customer.

Architecture position:
    Kernel > Services -- imperative shell.
    Called from the ``/payments/confirm`` endpoint.  The notifier is an
    injected collaborator; solar_services.notifications provides the
    default implementation.

Invariants enforced:
    - Exactly-once per provider_intent_id: the payment -> invoice link is
      written by ``UPDATE ... WHERE invoice_id IS NULL`` and the invoice is
      settled by ``UPDATE ... WHERE status IN ('pending', 'overdue')``.
      Only the caller that wins the settle step notifies.
    - A payment that lost the link race deletes its locally created
      invoice and settles the winner's.
    - VERIFIED is never downgraded to SUCCEEDED.
    - The approval notice is queued on the session and delivered only after
      the caller commits; a rollback discards it.  Delivery failures are
      logged and never undo the settlement.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - PaymentNotFoundError: unknown provider_intent_id.
    - InvoiceNotFoundError: the linked invoice row is missing.
    - DuplicatePaymentIntentError from register_payment().
    - ValidationError: non-positive amount or empty intent id.
"""

from datetime import datetime
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from sqlalchemy import event
from sqlalchemy.orm import Session

from solar_kernel.db.types import round_money, to_decimal
from solar_kernel.domain.clock import Clock
from solar_kernel.domain.dtos import InvoiceInfo, PaymentInfo, ReconciliationResult
from solar_kernel.exceptions import (
    DuplicatePaymentIntentError,
    InvoiceNotFoundError,
    ValidationError,
)
from solar_kernel.logging_config import LogContext, get_logger
from solar_kernel.models.invoice import Invoice, InvoiceStatus, InvoiceType
from solar_kernel.models.payment import PaymentStatus, PaymentTransaction, PaymentType
from solar_kernel.services.base import BaseService

logger = get_logger("services.payment_reconciliation")

# Invoice type created for a payment that arrives without one
_INVOICE_TYPE_FOR_PAYMENT = {
    PaymentType.INSTALLATION: InvoiceType.INSTALLATION,
    PaymentType.MONTHLY_BILL: InvoiceType.MONTHLY_BILL,
}


class PaymentNotifier(Protocol):
    """Outbound collaborator told about every newly settled payment."""

    def notify_payment_approved(
        self, payment: PaymentInfo, invoice: InvoiceInfo
    ) -> None: ...


def invoice_type_for(payment_type: PaymentType) -> InvoiceType:
    return _INVOICE_TYPE_FOR_PAYMENT.get(payment_type, InvoiceType.AUTHORITY_FEE)


def settled_status_for(reported_status: str | None) -> PaymentStatus:
    if reported_status == PaymentStatus.VERIFIED.value:
        return PaymentStatus.VERIFIED
    return PaymentStatus.SUCCEEDED


class PaymentReconciliationService(BaseService):
    """Idempotent payment -> invoice settlement."""

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        notifier: PaymentNotifier | None = None,
    ):
        super().__init__(session, clock)
        self.notifier = notifier

    def register_payment(
        self,
        provider_intent_id: str,
        customer_id: UUID,
        amount: Decimal,
        payment_type: PaymentType | str,
        application_id: UUID | None = None,
        currency: str = "lkr",
        reference: str | None = None,
        provider: str = "sandbox",
    ) -> PaymentInfo:
        """Record a PENDING transaction for a provider intent."""
        if not provider_intent_id or not provider_intent_id.strip():
            raise ValidationError("provider_intent_id", "must not be empty")
        amount = round_money(to_decimal(amount))
        if amount <= 0:
            raise ValidationError("amount", "must be greater than zero")
        try:
            payment_type = PaymentType(payment_type)
        except ValueError:
            raise ValidationError("type", f"unknown payment type {payment_type!r}") from None
        if application_id is not None:
            self.gateway.require_application(application_id)

        now = self.clock.now()
        payment_id = self.gateway.insert_if_absent(
            PaymentTransaction.__table__,
            {
                "provider_intent_id": provider_intent_id,
                "provider": provider,
                "customer_id": customer_id,
                "application_id": application_id,
                "invoice_id": None,
                "amount": amount,
                "currency": currency.lower(),
                "type": payment_type,
                "status": PaymentStatus.PENDING,
                "reference": reference,
                "created_at": now,
                "updated_at": now,
            },
            conflict_columns=("provider_intent_id",),
        )
        if payment_id is None:
            raise DuplicatePaymentIntentError(provider_intent_id)

        logger.info(
            "payment_registered",
            extra={
                "provider_intent_id": provider_intent_id,
                "payment_id": str(payment_id),
                "amount": str(amount),
                "type": payment_type.value,
            },
        )
        return PaymentInfo.from_model(
            self.gateway.require_payment_by_intent(provider_intent_id)
        )

    def confirm_payment(
        self,
        provider_intent_id: str,
        reported_status: str | None = None,
    ) -> ReconciliationResult:
        """
        Settle the payment's invoice exactly once.

        Postconditions:
            - The payment is linked to an invoice and that invoice is PAID
              with paid_at set.
            - The payment status is VERIFIED if the provider reported
              "verified", otherwise SUCCEEDED (VERIFIED is kept).
            - A notification is queued iff this call settled the invoice; it
              goes out when the caller commits.
        """
        with LogContext.bind(provider_intent_id=provider_intent_id):
            payment = self.gateway.require_payment_by_intent(provider_intent_id)
            target_status = settled_status_for(reported_status)
            now = self.clock.now()

            invoice_created = False
            if payment.invoice_id is None:
                invoice_created = self._link_new_invoice(payment, now)
                payment = self.gateway.require_payment_by_intent(provider_intent_id)

            invoice = self.gateway.get_invoice(payment.invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(str(payment.invoice_id))
            invoice_id = invoice.id

            settled = self.gateway.settle_invoice(invoice_id, now) == 1
            self.gateway.settle_payment(provider_intent_id, target_status)

            payment_info = PaymentInfo.from_model(
                self.gateway.require_payment_by_intent(provider_intent_id)
            )
            invoice_info = InvoiceInfo.from_model(self.gateway.get_invoice(invoice_id))

            if not settled:
                logger.info(
                    "payment_already_settled",
                    extra={"invoice_id": str(invoice_id), "status": payment_info.status},
                )
                return ReconciliationResult(
                    payment=payment_info,
                    invoice=invoice_info,
                    invoice_created=False,
                    already_settled=True,
                )

            logger.info(
                "payment_confirmed",
                extra={
                    "invoice_id": str(invoice_id),
                    "invoice_created": invoice_created,
                    "status": payment_info.status,
                    "amount": str(payment_info.amount),
                },
            )
            self._queue_notification(payment_info, invoice_info)
            return ReconciliationResult(
                payment=payment_info,
                invoice=invoice_info,
                invoice_created=invoice_created,
                already_settled=False,
            )

    def _link_new_invoice(self, payment: PaymentTransaction, now: datetime) -> bool:
        """Create an invoice for ``payment`` and link it.  False if another caller linked first."""
        provider_intent_id = payment.provider_intent_id
        invoice_type = invoice_type_for(payment.type)
        amount = payment.amount
        invoice = self.gateway.add(
            Invoice(
                application_id=payment.application_id,
                customer_id=payment.customer_id,
                type=invoice_type,
                amount=amount,
                status=InvoiceStatus.PENDING,
                due_date=now,
                paid_at=None,
                description=f"Auto-created for {payment.type.value} payment {payment.id}",
                line_items=[
                    {
                        "description": f"Auto generated from payment {payment.id}",
                        "quantity": "1",
                        "unit_price": str(amount),
                        "total": str(amount),
                    }
                ],
                created_at=now,
                updated_at=now,
            )
        )
        invoice_id = invoice.id

        if self.gateway.link_payment_to_invoice(provider_intent_id, invoice_id) == 1:
            logger.info(
                "payment_invoice_created",
                extra={"invoice_id": str(invoice_id), "type": invoice_type.value},
            )
            return True

        logger.info(
            "payment_invoice_link_lost_race",
            extra={"discarded_invoice_id": str(invoice_id)},
        )
        self.gateway.delete(self.gateway.get_invoice(invoice_id))
        return False

    def _queue_notification(self, payment: PaymentInfo, invoice: InvoiceInfo) -> None:
        if self.notifier is None:
            logger.debug("payment_notification_skipped")
            return
        self.session.info.setdefault(_PENDING_NOTIFICATIONS, []).append(
            (self.notifier, payment, invoice)
        )


# Approval notices wait in session.info until the transaction that settled
# the invoice commits.
_PENDING_NOTIFICATIONS = "solar_pending_payment_notifications"


@event.listens_for(Session, "after_commit")
def _deliver_after_commit(session: Session) -> None:
    for notifier, payment, invoice in session.info.pop(_PENDING_NOTIFICATIONS, ()):
        try:
            notifier.notify_payment_approved(payment, invoice)
        except Exception:
            logger.exception(
                "payment_notification_failed",
                extra={
                    "invoice_id": str(invoice.id),
                    "provider_intent_id": payment.provider_intent_id,
                },
            )


@event.listens_for(Session, "after_transaction_end")
def _discard_uncommitted(session: Session, transaction) -> None:
    if transaction.parent is not None:
        return
    discarded = session.info.pop(_PENDING_NOTIFICATIONS, ())
    if discarded:
        logger.info(
            "payment_notification_discarded",
            extra={"count": len(discarded)},
        )
