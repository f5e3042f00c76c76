"""
BidSessionService -- the bid session state machine.

Responsibility:
    Opens (or extends) an application's bid session, admits installer
    bids while the session is open, and closes the session when the
    customer selects a winning bid.  Also provides the administrative
    bid-status override and the read paths over sessions and bids.

Architecture position:
    Kernel > Services -- imperative shell.
    Called from the HTTP layer and the CLI inside session_scope(); the
    ExpirySweeper is the only other writer of bid_sessions.status.

Invariants enforced:
    - One session row per application.  open_or_extend_session() inserts
      with ON CONFLICT DO NOTHING and otherwise re-opens the existing row
      with a conditional UPDATE, so concurrent callers converge on one row.
    - A bid is admitted only through the conditional bump of
      ``bid_count`` (status = open AND expires_at > now).  A session the
      sweeper has already expired can never gain a bid.
    - select_bid() closes the session with the same ``WHERE status =
      'open'`` compare-and-swap the sweeper uses; exactly one of them wins.
    - After selection: one bid accepted, every sibling that was pending is
      rejected, session closed with selected_bid_id and closed_at, and the
      application records the installer organization and package.
    - Authorization is decided by domain.policy before any mutation.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - ApplicationNotFoundError / BidSessionNotFoundError / BidNotFoundError.
    - ValidationError: non-positive window, price or estimated_days; empty
      proposal or warranty; unsupported override status.
    - ForbiddenError: policy denial.
    - SessionNotOpenError: session closed, expired or past its deadline.
    - StaleStateError: lost a compare-and-swap race.
    - InvalidStatusTransitionError: selecting a bid that is not pending.
"""

from datetime import timedelta
from uuid import UUID

from solar_kernel.db.types import round_money, to_decimal
from solar_kernel.domain.clock import Clock
from solar_kernel.domain.dtos import (
    BidInfo,
    BidProposal,
    BidSessionInfo,
    Principal,
    Role,
    SelectionResult,
)
from solar_kernel.domain.policy import Action, PolicyTarget, require
from solar_kernel.exceptions import (
    BidSessionNotFoundError,
    InvalidStatusTransitionError,
    SessionNotOpenError,
    StaleStateError,
    ValidationError,
)
from solar_kernel.logging_config import LogContext, get_logger
from solar_kernel.models.application import Application
from solar_kernel.models.bid_session import (
    Bid,
    BidSession,
    BidStatus,
    SessionStatus,
)
from solar_kernel.services.base import BaseService

logger = get_logger("services.bid_session")

DEFAULT_WINDOW_HOURS = 48

# Targets the administrative override may set
OVERRIDE_STATUSES = (BidStatus.REJECTED, BidStatus.PENDING)


class BidSessionService(BaseService):
    """
    Session lifecycle, bid admission and selection.

    Contract:
        Every public method returns frozen DTOs.  The caller owns the
        transaction; a raised exception leaves the caller to roll back.
    """

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        default_window_hours: int = DEFAULT_WINDOW_HOURS,
    ):
        super().__init__(session, clock)
        if default_window_hours <= 0:
            raise ValueError("default_window_hours must be positive")
        self.default_window_hours = default_window_hours

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def open_or_extend_session(
        self,
        application_id: UUID,
        duration_hours: int,
        principal: Principal,
    ) -> BidSessionInfo:
        """
        Open the application's bid session, or re-open/extend the existing one.

        Preconditions:
            - duration_hours > 0.
            - The application exists and the principal owns it (or is an
              officer).
            - Any existing session is OPEN or EXPIRED.  A CLOSED session has
              a selected bid and is final.

        Postconditions:
            - Exactly one session row exists for the application with
              status OPEN and expires_at = now + duration_hours.
            - A fresh session has started_at = now; an existing one keeps
              its started_at.
        """
        if duration_hours <= 0:
            raise ValidationError("duration_hours", "must be positive")

        application = self.gateway.require_application(application_id)
        require(
            principal,
            Action.OPEN_SESSION,
            PolicyTarget(customer_id=application.customer_id),
        )

        with LogContext.bind(
            actor_id=principal.id, application_id=application_id
        ):
            bid_session, created = self._open_or_extend(application, duration_hours)
            logger.info(
                "bid_session_opened" if created else "bid_session_extended",
                extra={
                    "session_id": str(bid_session.id),
                    "expires_at": bid_session.expires_at.isoformat(),
                    "duration_hours": duration_hours,
                },
            )
            return BidSessionInfo.from_model(bid_session)

    def _open_or_extend(
        self, application: Application, duration_hours: int
    ) -> tuple[BidSession, bool]:
        now = self.clock.now()
        expires_at = now + timedelta(hours=duration_hours)

        inserted_id = self._insert_session(application, now, expires_at)
        if inserted_id is None:
            if self.gateway.reopen_bid_session(application.id, expires_at) == 0:
                existing = self.gateway.get_bid_session_for_application(application.id)
                raise SessionNotOpenError(
                    str(existing.id),
                    existing.status.value,
                    "a bid has already been selected",
                )

        bid_session = self.gateway.get_bid_session_for_application(application.id)
        return bid_session, inserted_id is not None

    def _insert_session(self, application: Application, now, expires_at) -> UUID | None:
        return self.gateway.insert_if_absent(
            BidSession.__table__,
            {
                "application_id": application.id,
                "customer_id": application.customer_id,
                "status": SessionStatus.OPEN,
                "started_at": now,
                "expires_at": expires_at,
                "bid_count": 0,
                "created_at": now,
                "updated_at": now,
            },
            conflict_columns=("application_id",),
        )

    # ------------------------------------------------------------------
    # Bids
    # ------------------------------------------------------------------

    def submit_bid(
        self,
        target_id: UUID,
        principal: Principal,
        proposal: BidProposal,
    ) -> BidInfo:
        """
        Submit an installer's bid into a session.

        ``target_id`` is either a session id or an application id.  When it
        names an application with no session yet, a session is created with
        the default window.  Expired and closed sessions are never re-opened
        here.

        Postconditions:
            - A PENDING bid exists under the principal's organization.
            - The session's bid_count grew by one.
        """
        require(principal, Action.SUBMIT_BID)
        price = self._validate_proposal(proposal)

        bid_session = self._resolve_session(target_id)

        with LogContext.bind(
            actor_id=principal.id,
            application_id=bid_session.application_id,
            session_id=bid_session.id,
        ):
            now = self.clock.now()
            if self.gateway.admit_bid(bid_session.id, now) == 0:
                current = self.gateway.require_bid_session(bid_session.id)
                reason = "deadline has passed" if current.is_open else ""
                logger.warning(
                    "bid_rejected_session_not_open",
                    extra={"status": current.status.value},
                )
                raise SessionNotOpenError(str(current.id), current.status.value, reason)

            bid = self.gateway.add(
                Bid(
                    application_id=bid_session.application_id,
                    bid_session_id=bid_session.id,
                    installer_id=principal.id,
                    organization_id=principal.organization_id,
                    package_id=proposal.package_id,
                    price=price,
                    proposal=proposal.proposal.strip(),
                    warranty=proposal.warranty.strip(),
                    estimated_days=proposal.estimated_days,
                    status=BidStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
            )

            logger.info(
                "bid_submitted",
                extra={
                    "bid_id": str(bid.id),
                    "organization_id": str(principal.organization_id),
                    "price": str(price),
                },
            )
            return BidInfo.from_model(bid)

    def _validate_proposal(self, proposal: BidProposal):
        price = round_money(to_decimal(proposal.price))
        if price <= 0:
            raise ValidationError("price", "must be greater than zero")
        if isinstance(proposal.estimated_days, bool) or proposal.estimated_days <= 0:
            raise ValidationError("estimated_days", "must be a positive integer")
        if not proposal.proposal or not proposal.proposal.strip():
            raise ValidationError("proposal", "must not be empty")
        if not proposal.warranty or not proposal.warranty.strip():
            raise ValidationError("warranty", "must not be empty")
        return price

    def _resolve_session(self, target_id: UUID) -> BidSession:
        bid_session = self.gateway.get_bid_session(target_id)
        if bid_session is not None:
            return bid_session

        application = self.gateway.get_application(target_id)
        if application is None:
            raise BidSessionNotFoundError(str(target_id))

        bid_session = self.gateway.get_bid_session_for_application(application.id)
        if bid_session is not None:
            return bid_session

        now = self.clock.now()
        expires_at = now + timedelta(hours=self.default_window_hours)
        if self._insert_session(application, now, expires_at) is not None:
            logger.info(
                "bid_session_opened",
                extra={
                    "application_id": str(application.id),
                    "expires_at": expires_at.isoformat(),
                    "duration_hours": self.default_window_hours,
                    "lazy": True,
                },
            )
        return self.gateway.get_bid_session_for_application(application.id)

    def select_bid(self, bid_id: UUID, principal: Principal) -> SelectionResult:
        """
        Accept one bid and close its session.

        Preconditions:
            - The principal owns the application (or is an officer).
            - The session is OPEN and its deadline has not passed.
            - The bid is PENDING.

        Postconditions (all in the caller's transaction):
            - The bid is ACCEPTED; every other pending bid is REJECTED.
            - The session is CLOSED with selected_bid_id and closed_at.
            - The application carries the bid's organization and package.
        """
        bid = self.gateway.require_bid(bid_id)
        bid_session = self.gateway.require_bid_session(bid.bid_session_id)
        application = self.gateway.require_application(bid_session.application_id)
        require(
            principal,
            Action.SELECT_BID,
            PolicyTarget(customer_id=application.customer_id),
        )

        with LogContext.bind(
            actor_id=principal.id,
            application_id=application.id,
            session_id=bid_session.id,
        ):
            now = self.clock.now()
            if not bid_session.is_open:
                raise SessionNotOpenError(str(bid_session.id), bid_session.status.value)
            if bid_session.expires_at <= now:
                raise SessionNotOpenError(
                    str(bid_session.id), bid_session.status.value, "deadline has passed"
                )
            if bid.status != BidStatus.PENDING:
                raise InvalidStatusTransitionError(
                    "Bid", bid.status.value, BidStatus.ACCEPTED.value
                )

            session_id = bid_session.id
            organization_id = bid.organization_id
            package_id = bid.package_id
            sibling_ids = tuple(
                sibling.id
                for sibling in self.gateway.list_bids(session_id)
                if sibling.id != bid_id and sibling.status == BidStatus.PENDING
            )

            if self.gateway.close_bid_session(session_id, bid_id, now) == 0:
                logger.warning("bid_selection_lost_race", extra={"bid_id": str(bid_id)})
                raise StaleStateError("BidSession", str(session_id), SessionStatus.OPEN.value)

            if self.gateway.transition_bid(bid_id, (BidStatus.PENDING,), BidStatus.ACCEPTED) == 0:
                raise StaleStateError("Bid", str(bid_id), BidStatus.PENDING.value)

            rejected = self.gateway.transition_bids(
                session_id,
                BidStatus.PENDING,
                BidStatus.REJECTED,
                exclude_bid_id=bid_id,
            )

            application = self.gateway.require_application(application.id)
            application.installer_organization_id = organization_id
            application.selected_package_id = package_id
            self.session.flush()

            logger.info(
                "bid_selected",
                extra={
                    "bid_id": str(bid_id),
                    "organization_id": str(organization_id),
                    "rejected_count": rejected,
                },
            )

            return SelectionResult(
                session=BidSessionInfo.from_model(
                    self.gateway.require_bid_session(session_id)
                ),
                accepted=BidInfo.from_model(self.gateway.require_bid(bid_id)),
                rejected_bid_ids=sibling_ids,
            )

    def update_bid_status(
        self,
        bid_id: UUID,
        new_status: BidStatus | str,
        principal: Principal,
    ) -> BidInfo:
        """
        Administrative override: reject a pending bid or restore a rejected one.

        Only while the session is open; never closes the session.  ACCEPTED
        goes through select_bid() and EXPIRED belongs to the sweeper.
        """
        try:
            new_status = BidStatus(new_status)
        except ValueError:
            raise ValidationError("status", f"unknown bid status {new_status!r}") from None
        if new_status not in OVERRIDE_STATUSES:
            raise ValidationError(
                "status", f"{new_status.value} cannot be set by an override"
            )

        bid = self.gateway.require_bid(bid_id)
        bid_session = self.gateway.require_bid_session(bid.bid_session_id)
        application = self.gateway.require_application(bid_session.application_id)
        require(
            principal,
            Action.UPDATE_BID_STATUS,
            PolicyTarget(customer_id=application.customer_id),
        )

        if not bid_session.is_open:
            raise SessionNotOpenError(str(bid_session.id), bid_session.status.value)
        if bid.status == new_status:
            return BidInfo.from_model(bid)

        from_status = (
            BidStatus.PENDING if new_status == BidStatus.REJECTED else BidStatus.REJECTED
        )
        if bid.status != from_status:
            raise InvalidStatusTransitionError("Bid", bid.status.value, new_status.value)

        changed = self.gateway.transition_bid(
            bid_id, (from_status,), new_status, require_open_session=True
        )
        if changed == 0:
            raise StaleStateError("Bid", str(bid_id), from_status.value)

        logger.info(
            "bid_status_overridden",
            extra={
                "bid_id": str(bid_id),
                "from_status": from_status.value,
                "to_status": new_status.value,
                "actor_id": str(principal.id),
            },
        )
        return BidInfo.from_model(self.gateway.require_bid(bid_id))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_session(self, session_id: UUID) -> BidSessionInfo:
        return BidSessionInfo.from_model(self.gateway.require_bid_session(session_id))

    def get_session_for_application(self, application_id: UUID) -> BidSessionInfo | None:
        bid_session = self.gateway.get_bid_session_for_application(application_id)
        return BidSessionInfo.from_model(bid_session) if bid_session else None

    def list_bids(self, session_id: UUID, principal: Principal) -> tuple[BidInfo, ...]:
        """Bids in submission order.  Installers see only their organization's bids."""
        bid_session = self.gateway.require_bid_session(session_id)
        require(
            principal,
            Action.VIEW_BIDS,
            PolicyTarget(customer_id=bid_session.customer_id),
        )
        organization_id = (
            principal.organization_id if principal.role == Role.INSTALLER else None
        )
        return tuple(
            BidInfo.from_model(bid)
            for bid in self.gateway.list_bids(session_id, organization_id=organization_id)
        )
