"""
Solar Kernel - bid sessions and billing reconciliation for the solar portal.

- Bid session lifecycle with compare-and-swap transitions
- Expiry sweeping of stale sessions and overdue invoices
- Net-metering monthly billing with explicit rounding
- Exactly-once payment reconciliation
"""

__version__ = "0.1.0"
