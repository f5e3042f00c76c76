"""Kernel services: state machine, sweeper, billing, reconciliation."""

from solar_kernel.services.application_service import ApplicationService
from solar_kernel.services.base import BaseService
from solar_kernel.services.bid_session_service import BidSessionService
from solar_kernel.services.billing_service import BillingService
from solar_kernel.services.expiry_sweeper import ExpirySweeper
from solar_kernel.services.meter_reading_service import MeterReadingService
from solar_kernel.services.payment_reconciliation import (
    PaymentNotifier,
    PaymentReconciliationService,
)

__all__ = [
    "ApplicationService",
    "BaseService",
    "BidSessionService",
    "BillingService",
    "ExpirySweeper",
    "MeterReadingService",
    "PaymentNotifier",
    "PaymentReconciliationService",
]
