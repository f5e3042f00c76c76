"""
solar_batch -- recurring work for the solar portal.

Runs the expiry sweep, the overdue-invoice sweep and (optionally) monthly
billing on an interval, each task in its own transaction.
"""

from solar_batch.scheduler import SweepScheduler
from solar_batch.tasks import (
    ExpireBidSessionsTask,
    MarkOverdueInvoicesTask,
    MonthlyBillingTask,
    SweepTask,
    TaskRegistry,
    default_task_registry,
)

__all__ = [
    "ExpireBidSessionsTask",
    "MarkOverdueInvoicesTask",
    "MonthlyBillingTask",
    "SweepScheduler",
    "SweepTask",
    "TaskRegistry",
    "default_task_registry",
]
