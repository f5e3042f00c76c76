"""
Module: solar_kernel.db.gateway
Responsibility: The Persistence Gateway.  Narrow repository over the six
    kernel tables: lookups by id and unique key, idempotent inserts, and the
    conditional (compare-and-swap) updates that every state transition goes
    through.  No business rules live here.
Architecture position: Kernel > DB.  May import from db/ and models/.
    MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Every transition of a status column is a single conditional
      ``UPDATE ... WHERE status IN (...)``; the returned rowcount tells the
      caller whether it won.  A rowcount of 0 never raises here.
    - Unique-key inserts use the dialect's ``INSERT ... ON CONFLICT DO
      NOTHING`` so a lost race is an ordinary 0-row result, not an
      IntegrityError that poisons the transaction.
    - Bulk UPDATEs bypass the identity map (synchronize_session=False); the
      gateway flushes pending ORM changes first and expires the session
      afterwards so later reads see the stored values.
    - The gateway never commits.

Failure modes:
    - RuntimeError from insert_if_absent() on a backend other than
      PostgreSQL or SQLite.
    - OperationalError for storage timeouts (mapped to TransientFailureError
      by session_scope()).
"""

from datetime import datetime
from typing import Any, Iterable, Sequence
from uuid import UUID, uuid4

from sqlalchemy import Table, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from solar_kernel.exceptions import (
    ApplicationNotFoundError,
    BidNotFoundError,
    BidSessionNotFoundError,
    PaymentNotFoundError,
)
from solar_kernel.models.application import Application
from solar_kernel.models.bid_session import Bid, BidSession, BidStatus, SessionStatus
from solar_kernel.models.invoice import (
    SETTLEABLE_INVOICE_STATUSES,
    Invoice,
    InvoiceStatus,
    InvoiceType,
)
from solar_kernel.models.meter_reading import MeterReading
from solar_kernel.models.payment import PaymentStatus, PaymentTransaction


class PersistenceGateway:
    """
    Repository over the kernel tables, bound to the caller's session.

    Contract:
        Callers own the transaction.  ``get_*`` returns None for a missing
        row, ``require_*`` raises the matching NotFoundError.  Conditional
        updates return the number of rows they changed.
    """

    def __init__(self, session: Session):
        self.session = session

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_application(self, application_id: UUID) -> Application | None:
        return self.session.get(Application, application_id)

    def require_application(self, application_id: UUID) -> Application:
        application = self.get_application(application_id)
        if application is None:
            raise ApplicationNotFoundError(str(application_id))
        return application

    def get_bid_session(self, session_id: UUID) -> BidSession | None:
        return self.session.get(BidSession, session_id)

    def require_bid_session(self, session_id: UUID) -> BidSession:
        bid_session = self.get_bid_session(session_id)
        if bid_session is None:
            raise BidSessionNotFoundError(str(session_id))
        return bid_session

    def get_bid_session_for_application(
        self, application_id: UUID
    ) -> BidSession | None:
        return self.session.execute(
            select(BidSession).where(BidSession.application_id == application_id)
        ).scalar_one_or_none()

    def get_bid(self, bid_id: UUID) -> Bid | None:
        return self.session.get(Bid, bid_id)

    def require_bid(self, bid_id: UUID) -> Bid:
        bid = self.get_bid(bid_id)
        if bid is None:
            raise BidNotFoundError(str(bid_id))
        return bid

    def list_bids(
        self,
        session_id: UUID,
        organization_id: UUID | None = None,
    ) -> Sequence[Bid]:
        """Bids of a session in submission order, optionally for one organization."""
        stmt = select(Bid).where(Bid.bid_session_id == session_id)
        if organization_id is not None:
            stmt = stmt.where(Bid.organization_id == organization_id)
        return self.session.execute(stmt.order_by(Bid.created_at, Bid.id)).scalars().all()

    def get_invoice(self, invoice_id: UUID) -> Invoice | None:
        return self.session.get(Invoice, invoice_id)

    def get_monthly_bill(
        self, application_id: UUID, year: int, month: int
    ) -> Invoice | None:
        return self.session.execute(
            select(Invoice).where(
                Invoice.application_id == application_id,
                Invoice.type == InvoiceType.MONTHLY_BILL,
                Invoice.billing_year == year,
                Invoice.billing_month == month,
            )
        ).scalar_one_or_none()

    def get_payment_by_intent(
        self, provider_intent_id: str
    ) -> PaymentTransaction | None:
        return self.session.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.provider_intent_id == provider_intent_id
            )
        ).scalar_one_or_none()

    def require_payment_by_intent(self, provider_intent_id: str) -> PaymentTransaction:
        payment = self.get_payment_by_intent(provider_intent_id)
        if payment is None:
            raise PaymentNotFoundError(provider_intent_id)
        return payment

    def readings_between(
        self, application_id: UUID, start: datetime, end: datetime
    ) -> Sequence[MeterReading]:
        """Readings of one application with start <= reading_date < end."""
        return self.session.execute(
            select(MeterReading)
            .where(
                MeterReading.application_id == application_id,
                MeterReading.reading_date >= start,
                MeterReading.reading_date < end,
            )
            .order_by(MeterReading.reading_date)
        ).scalars().all()

    def readings_for_application(self, application_id: UUID) -> Sequence[MeterReading]:
        return self.session.execute(
            select(MeterReading)
            .where(MeterReading.application_id == application_id)
            .order_by(MeterReading.reading_date)
        ).scalars().all()

    def applications_with_readings(self, start: datetime, end: datetime) -> list[UUID]:
        rows = self.session.execute(
            select(MeterReading.application_id)
            .where(
                MeterReading.reading_date >= start,
                MeterReading.reading_date < end,
            )
            .distinct()
        ).scalars().all()
        return sorted(rows, key=str)

    def expired_session_ids(self, now: datetime) -> list[UUID]:
        """Open sessions whose deadline is at or before ``now``."""
        return list(
            self.session.execute(
                select(BidSession.id)
                .where(
                    BidSession.status == SessionStatus.OPEN,
                    BidSession.expires_at <= now,
                )
                .order_by(BidSession.expires_at)
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    def add(self, entity: Any) -> Any:
        self.session.add(entity)
        self.session.flush()
        return entity

    def insert_if_absent(
        self,
        table: Table,
        values: dict[str, Any],
        conflict_columns: Iterable[str],
    ) -> UUID | None:
        """
        INSERT a row unless its unique key already exists.

        Returns:
            The new row's id, or None if a row with the same key was already
            present (or was inserted concurrently).
        """
        values = dict(values)
        values.setdefault("id", uuid4())

        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(table)
        elif dialect == "sqlite":
            stmt = sqlite_insert(table)
        else:
            raise RuntimeError(f"insert_if_absent not supported on {dialect}")

        stmt = stmt.values(**values).on_conflict_do_nothing(
            index_elements=list(conflict_columns)
        )
        self.session.flush()
        result = self.session.execute(stmt)
        return values["id"] if result.rowcount == 1 else None

    def delete(self, entity: Any) -> None:
        self.session.delete(entity)
        self.session.flush()

    # ------------------------------------------------------------------
    # Conditional updates
    # ------------------------------------------------------------------

    def _conditional_update(self, stmt) -> int:
        self.session.flush()
        result = self.session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        self.session.expire_all()
        return result.rowcount

    def reopen_bid_session(self, application_id: UUID, expires_at: datetime) -> int:
        """open|expired -> open with a new deadline.  CLOSED rows are untouched."""
        return self._conditional_update(
            update(BidSession)
            .where(
                BidSession.application_id == application_id,
                BidSession.status.in_((SessionStatus.OPEN, SessionStatus.EXPIRED)),
            )
            .values(
                status=SessionStatus.OPEN,
                expires_at=expires_at,
                closed_at=None,
                selected_bid_id=None,
            )
        )

    def admit_bid(self, session_id: UUID, now: datetime) -> int:
        """Bump bid_count iff the session is open and its deadline is ahead."""
        return self._conditional_update(
            update(BidSession)
            .where(
                BidSession.id == session_id,
                BidSession.status == SessionStatus.OPEN,
                BidSession.expires_at > now,
            )
            .values(bid_count=BidSession.bid_count + 1)
        )

    def close_bid_session(
        self, session_id: UUID, selected_bid_id: UUID, now: datetime
    ) -> int:
        """open -> closed, recording the selected bid."""
        return self._conditional_update(
            update(BidSession)
            .where(
                BidSession.id == session_id,
                BidSession.status == SessionStatus.OPEN,
                BidSession.expires_at > now,
            )
            .values(
                status=SessionStatus.CLOSED,
                selected_bid_id=selected_bid_id,
                closed_at=now,
            )
        )

    def expire_bid_session(self, session_id: UUID, now: datetime) -> int:
        """open -> expired, only if the deadline has passed."""
        return self._conditional_update(
            update(BidSession)
            .where(
                BidSession.id == session_id,
                BidSession.status == SessionStatus.OPEN,
                BidSession.expires_at <= now,
            )
            .values(status=SessionStatus.EXPIRED)
        )

    def transition_bids(
        self,
        session_id: UUID,
        from_status: BidStatus,
        to_status: BidStatus,
        exclude_bid_id: UUID | None = None,
    ) -> int:
        stmt = update(Bid).where(
            Bid.bid_session_id == session_id,
            Bid.status == from_status,
        )
        if exclude_bid_id is not None:
            stmt = stmt.where(Bid.id != exclude_bid_id)
        return self._conditional_update(stmt.values(status=to_status))

    def transition_bid(
        self,
        bid_id: UUID,
        from_statuses: Iterable[BidStatus],
        to_status: BidStatus,
        require_open_session: bool = False,
    ) -> int:
        stmt = update(Bid).where(
            Bid.id == bid_id,
            Bid.status.in_(tuple(from_statuses)),
        )
        if require_open_session:
            stmt = stmt.where(
                Bid.bid_session_id.in_(
                    select(BidSession.id).where(
                        BidSession.status == SessionStatus.OPEN
                    )
                )
            )
        return self._conditional_update(stmt.values(status=to_status))

    def link_payment_to_invoice(self, provider_intent_id: str, invoice_id: UUID) -> int:
        """Write invoice_id once; a second writer observes 0 rows."""
        return self._conditional_update(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.provider_intent_id == provider_intent_id,
                PaymentTransaction.invoice_id.is_(None),
            )
            .values(invoice_id=invoice_id)
        )

    def settle_payment(self, provider_intent_id: str, status: PaymentStatus) -> int:
        """Record a settled status.  VERIFIED is never downgraded."""
        return self._conditional_update(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.provider_intent_id == provider_intent_id,
                PaymentTransaction.status != PaymentStatus.VERIFIED,
                PaymentTransaction.status != status,
            )
            .values(status=status)
        )

    def settle_invoice(self, invoice_id: UUID, paid_at: datetime) -> int:
        """pending|overdue -> paid."""
        return self._conditional_update(
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.status.in_(SETTLEABLE_INVOICE_STATUSES),
            )
            .values(status=InvoiceStatus.PAID, paid_at=paid_at)
        )

    def mark_invoices_overdue(self, now: datetime) -> list[UUID]:
        """pending -> overdue for every non-zero invoice past its due date."""
        condition = (
            Invoice.status == InvoiceStatus.PENDING,
            Invoice.amount > 0,
            Invoice.due_date < now,
        )
        candidate_ids = list(
            self.session.execute(select(Invoice.id).where(*condition)).scalars()
        )
        if not candidate_ids:
            return []
        self._conditional_update(
            update(Invoice)
            .where(Invoice.id.in_(candidate_ids), *condition)
            .values(status=InvoiceStatus.OVERDUE)
        )
        return list(
            self.session.execute(
                select(Invoice.id).where(
                    Invoice.id.in_(candidate_ids),
                    Invoice.status == InvoiceStatus.OVERDUE,
                )
            ).scalars()
        )
