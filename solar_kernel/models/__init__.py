"""Domain models for the solar kernel."""

from solar_kernel.models.application import (
    APPLICATION_WORKFLOW,
    Application,
    ApplicationStatus,
)
from solar_kernel.models.bid_session import (
    Bid,
    BidSession,
    BidStatus,
    SessionStatus,
)
from solar_kernel.models.invoice import Invoice, InvoiceStatus, InvoiceType
from solar_kernel.models.meter_reading import MeterReading
from solar_kernel.models.payment import PaymentStatus, PaymentTransaction, PaymentType

__all__ = [
    "APPLICATION_WORKFLOW",
    "Application",
    "ApplicationStatus",
    "Bid",
    "BidSession",
    "BidStatus",
    "SessionStatus",
    "Invoice",
    "InvoiceStatus",
    "InvoiceType",
    "MeterReading",
    "PaymentStatus",
    "PaymentTransaction",
    "PaymentType",
]
