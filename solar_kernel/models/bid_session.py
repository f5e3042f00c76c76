"""
Module: solar_kernel.models.bid_session
Responsibility: ORM persistence for bid sessions and the bids submitted
    into them.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One session row per application (uq_bid_session_application).
    - expires_at > started_at (ck_bid_session_window).
    - price > 0 and estimated_days > 0 on every bid.
    - Session status leaves OPEN only through a conditional UPDATE issued by
      the Persistence Gateway; the ORM attribute is never assigned directly
      by services.

Failure modes:
    - IntegrityError on a duplicate application_id insert (absorbed by the
      gateway's ON CONFLICT insert).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from solar_kernel.db.types import status_column_type


class SessionStatus(str, Enum):
    """Lifecycle status of a bid session.

    Contract: OPEN -> CLOSED (a bid was selected) or OPEN -> EXPIRED
    (deadline passed).  An EXPIRED session may be re-opened by
    open_or_extend; CLOSED is final.
    """

    OPEN = "open"
    CLOSED = "closed"
    EXPIRED = "expired"


class BidStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class BidSession(TrackedBase):
    """
    Time-boxed bidding window for one application.

    Guarantees:
        - application_id is unique; re-opening reuses the row.
        - selected_bid_id and closed_at are set together when the session
          closes.
        - bid_count counts admitted bids; its conditional increment is the
          admission guard that serializes bids against the sweeper.
    """

    __tablename__ = "bid_sessions"

    __table_args__ = (
        UniqueConstraint("application_id", name="uq_bid_session_application"),
        CheckConstraint("expires_at > started_at", name="ck_bid_session_window"),
        Index("idx_bid_session_status_expiry", "status", "expires_at"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("applications.id"), nullable=False
    )

    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    status: Mapped[SessionStatus] = mapped_column(
        status_column_type(SessionStatus),
        default=SessionStatus.OPEN,
        nullable=False,
    )

    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # No FK: bids reference the session, not the other way round
    selected_bid_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    bid_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    bids: Mapped[list["Bid"]] = relationship(
        back_populates="session",
        order_by="Bid.created_at",
    )

    def __repr__(self) -> str:
        return f"<BidSession {self.id}: {self.status.value}>"

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.OPEN


class Bid(TrackedBase):
    """An installer's proposal within a bid session."""

    __tablename__ = "bids"

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_bid_price_positive"),
        CheckConstraint("estimated_days > 0", name="ck_bid_days_positive"),
        Index("idx_bid_session_status", "bid_session_id", "status"),
        Index("idx_bid_organization", "organization_id"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("applications.id"), nullable=False
    )

    bid_session_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("bid_sessions.id"), nullable=False
    )

    installer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    package_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    price: Mapped[Decimal] = mapped_column(nullable=False)

    proposal: Mapped[str] = mapped_column(String(4000), nullable=False)

    warranty: Mapped[str] = mapped_column(String(1000), nullable=False)

    estimated_days: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[BidStatus] = mapped_column(
        status_column_type(BidStatus),
        default=BidStatus.PENDING,
        nullable=False,
    )

    session: Mapped[BidSession] = relationship(back_populates="bids")

    def __repr__(self) -> str:
        return f"<Bid {self.id}: {self.price} ({self.status.value})>"
