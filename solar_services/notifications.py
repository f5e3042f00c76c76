"""
solar_services.notifications -- customer notifications.

Responsibility:
    Default implementation of the kernel's PaymentNotifier collaborator.
    Builds the "payment approved" e-mail for a settled payment and hands it
    to a transport.  The bundled transport writes the message to the
    structured log; an SMTP or provider transport plugs in via
    ``EmailTransport`` and looks up the customer's address itself.

Architecture position:
    Services layer.  Injected into PaymentReconciliationService by the
    HTTP layer; the kernel only knows the PaymentNotifier protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from solar_kernel.domain.dtos import InvoiceInfo, PaymentInfo
from solar_kernel.logging_config import get_logger
from solar_kernel.services.payment_reconciliation import PaymentNotifier

logger = get_logger("services.notifications")

__all__ = [
    "EmailMessage",
    "EmailTransport",
    "LoggingTransport",
    "LoggingNotifier",
    "PaymentNotifier",
    "payment_approved_message",
]


@dataclass(frozen=True)
class EmailMessage:
    customer_id: UUID
    subject: str
    body: str


class EmailTransport(Protocol):
    """Delivers a message; resolving the customer's address is the transport's job."""

    def send(self, message: EmailMessage) -> None: ...


class LoggingTransport:
    """Writes each message to the log instead of sending it."""

    def send(self, message: EmailMessage) -> None:
        logger.info(
            "notification_email",
            extra={
                "customer_id": str(message.customer_id),
                "subject": message.subject,
                "body": message.body,
            },
        )


def payment_approved_message(payment: PaymentInfo, invoice: InvoiceInfo) -> EmailMessage:
    return EmailMessage(
        customer_id=payment.customer_id,
        subject=f"Payment {payment.id} approved",
        body=(
            f"Your payment for {payment.type} has been approved. "
            f"Invoice: {invoice.description}. Amount: {payment.amount} "
            f"{payment.currency.upper()}. Reference: {payment.provider_intent_id}."
        ),
    )


class LoggingNotifier:
    """PaymentNotifier that e-mails the customer through a transport."""

    def __init__(self, transport: EmailTransport | None = None):
        self._transport = transport or LoggingTransport()

    def notify_payment_approved(self, payment: PaymentInfo, invoice: InvoiceInfo) -> None:
        self._transport.send(payment_approved_message(payment, invoice))
