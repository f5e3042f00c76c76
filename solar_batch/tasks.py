"""
SweepTask protocol, the portal's recurring tasks, and TaskRegistry.

Contract:
    ``SweepTask`` defines the interface every recurring task implements.
    ``TaskRegistry`` stores registered tasks keyed by ``task_type``.
    ``default_task_registry()`` builds the registry the scheduler runs,
    honoring the scheduler switches in SolarConfig.

Invariants enforced:
    - One task per ``task_type`` string.
    - Tasks do NOT manage transactions; the scheduler gives each task its
      own session and commits or rolls back around ``run()``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy.orm import Session

from solar_config.schema import BillingConfig, SolarConfig
from solar_kernel.domain.clock import Clock
from solar_kernel.domain.dtos import MonthlyBillingRun, SweepReport
from solar_kernel.services.billing_service import BillingService
from solar_kernel.services.expiry_sweeper import ExpirySweeper


@runtime_checkable
class SweepTask(Protocol):
    """One unit of recurring work.

    Contract:
        - ``task_type``: unique string key registered in TaskRegistry.
        - ``run()``: performs the work in the given session at ``now`` and
          returns a JSON-friendly summary for the log.
    """

    @property
    def task_type(self) -> str: ...

    @property
    def description(self) -> str: ...

    def run(self, session: Session, clock: Clock, now: datetime) -> dict[str, Any]: ...


class ExpireBidSessionsTask:
    """Expire open sessions past their deadline and their pending bids."""

    @property
    def task_type(self) -> str:
        return "bids.expire_sessions"

    @property
    def description(self) -> str:
        return "Expire bid sessions whose deadline has passed"

    def run(self, session: Session, clock: Clock, now: datetime) -> dict[str, Any]:
        report: SweepReport = ExpirySweeper(session, clock).sweep_expired_sessions(now)
        return {
            "sessions_expired": report.sessions_expired,
            "bids_expired": report.bids_expired,
        }


class MarkOverdueInvoicesTask:
    """Move unpaid invoices past their due date to overdue."""

    @property
    def task_type(self) -> str:
        return "invoices.mark_overdue"

    @property
    def description(self) -> str:
        return "Mark pending invoices past their due date as overdue"

    def run(self, session: Session, clock: Clock, now: datetime) -> dict[str, Any]:
        count = ExpirySweeper(session, clock).sweep_overdue_invoices(now)
        return {"invoices_overdue": count}


class MonthlyBillingTask:
    """Generate last month's net-metering bills.  Re-running is a no-op."""

    def __init__(self, billing: BillingConfig):
        self._billing = billing

    @property
    def task_type(self) -> str:
        return "billing.generate_monthly"

    @property
    def description(self) -> str:
        return "Generate monthly net-metering bills for the previous month"

    def run(self, session: Session, clock: Clock, now: datetime) -> dict[str, Any]:
        year, month = previous_month(now)
        service = BillingService(
            session,
            clock,
            rate_per_kwh=self._billing.rate_per_kwh,
            credit_rate_per_kwh=self._billing.credit_rate_per_kwh,
            due_days=self._billing.monthly_bill_due_days,
        )
        run: MonthlyBillingRun = service.generate_monthly_bills(month, year)
        return {
            "year": year,
            "month": month,
            "bills_created": len(run.created),
            "bills_skipped": len(run.skipped_application_ids),
        }


def previous_month(now: datetime) -> tuple[int, int]:
    if now.month == 1:
        return now.year - 1, 12
    return now.year, now.month - 1


class TaskRegistry:
    """Registry of tasks keyed by ``task_type``."""

    def __init__(self) -> None:
        self._tasks: dict[str, SweepTask] = {}

    def register(self, task: SweepTask) -> None:
        if task.task_type in self._tasks:
            raise ValueError(f"Task already registered: {task.task_type}")
        self._tasks[task.task_type] = task

    def get(self, task_type: str) -> SweepTask:
        try:
            return self._tasks[task_type]
        except KeyError:
            raise KeyError(f"Unknown task type: {task_type}") from None

    def task_types(self) -> tuple[str, ...]:
        return tuple(self._tasks)

    def __iter__(self):
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)


def default_task_registry(config: SolarConfig) -> TaskRegistry:
    registry = TaskRegistry()
    registry.register(ExpireBidSessionsTask())
    if config.scheduler.overdue_sweep_enabled:
        registry.register(MarkOverdueInvoicesTask())
    if config.scheduler.monthly_billing_enabled:
        registry.register(MonthlyBillingTask(config.billing))
    return registry
