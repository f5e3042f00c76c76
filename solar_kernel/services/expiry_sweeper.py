"""
ExpirySweeper -- time-driven transitions.

Responsibility:
    Moves bid sessions whose deadline has passed from OPEN to EXPIRED and
    cascades the expiry to their pending bids.  Also moves unpaid invoices
    past their due date from PENDING to OVERDUE.

Architecture position:
    Kernel > Services -- imperative shell.
    Invoked by the SweepScheduler, the ``solar-admin sweep`` command and
    the ``/cron/expire-bids`` endpoint, each inside its own transaction.

Invariants enforced:
    - A session is expired only through the conditional UPDATE
      ``WHERE status = 'open' AND expires_at <= now``.  A concurrent
      select_bid() that closed the session first makes the sweep a no-op
      for that session; bids of a closed session are never touched.
    - Idempotent: a second sweep at the same instant changes nothing.
    - Zero-amount invoices never become overdue.

Failure modes:
    - ForbiddenError when a non-officer principal is supplied.
"""

from datetime import datetime

from solar_kernel.domain.dtos import Principal, SweepReport
from solar_kernel.domain.policy import Action, require
from solar_kernel.logging_config import get_logger
from solar_kernel.models.bid_session import BidStatus
from solar_kernel.services.base import BaseService

logger = get_logger("services.expiry_sweeper")


class ExpirySweeper(BaseService):
    """Deadline-driven state transitions for sessions, bids and invoices."""

    def sweep_expired_sessions(
        self,
        now: datetime | None = None,
        principal: Principal | None = None,
    ) -> SweepReport:
        if principal is not None:
            require(principal, Action.SWEEP)
        now = now or self.clock.now()

        sessions_expired = 0
        bids_expired = 0
        expired_ids = []
        for session_id in self.gateway.expired_session_ids(now):
            if self.gateway.expire_bid_session(session_id, now) == 0:
                # Closed or expired by a concurrent writer
                continue
            count = self.gateway.transition_bids(
                session_id, BidStatus.PENDING, BidStatus.EXPIRED
            )
            sessions_expired += 1
            bids_expired += count
            expired_ids.append(session_id)
            logger.info(
                "bid_session_expired",
                extra={"session_id": str(session_id), "bids_expired": count},
            )

        logger.info(
            "sessions_swept",
            extra={
                "swept_at": now.isoformat(),
                "sessions_expired": sessions_expired,
                "bids_expired": bids_expired,
            },
        )
        return SweepReport(
            swept_at=now,
            sessions_expired=sessions_expired,
            bids_expired=bids_expired,
            session_ids=tuple(expired_ids),
        )

    def sweep_overdue_invoices(
        self,
        now: datetime | None = None,
        principal: Principal | None = None,
    ) -> int:
        """PENDING invoices with amount > 0 and due_date < now become OVERDUE."""
        if principal is not None:
            require(principal, Action.SWEEP)
        now = now or self.clock.now()

        invoice_ids = self.gateway.mark_invoices_overdue(now)
        logger.info(
            "invoices_marked_overdue",
            extra={"swept_at": now.isoformat(), "count": len(invoice_ids)},
        )
        return len(invoice_ids)
