"""
Fault injection: a crash mid-operation leaves no partial state.

Each test commits its setup, runs the operation inside session_scope with a
gateway step patched to raise, and then checks the database is exactly as
it was before.
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from solar_kernel.db.engine import session_scope
from solar_kernel.db.gateway import PersistenceGateway
from solar_kernel.exceptions import TransientFailureError
from solar_kernel.models.application import Application
from solar_kernel.models.bid_session import Bid, BidSession, BidStatus, SessionStatus
from solar_kernel.models.invoice import Invoice
from solar_kernel.models.payment import PaymentStatus, PaymentTransaction
from solar_kernel.services.bid_session_service import BidSessionService
from solar_kernel.services.billing_service import BillingService
from solar_kernel.services.expiry_sweeper import ExpirySweeper
from solar_kernel.services.payment_reconciliation import PaymentReconciliationService
from tests.conftest import make_proposal


class SimulatedCrash(Exception):
    """Exception to simulate a crash at a specific point."""


@pytest.fixture
def committed_bids(session, bid_service, open_session, make_installer):
    bids = [
        bid_service.submit_bid(open_session.id, make_installer(), make_proposal())
        for _ in range(3)
    ]
    session.commit()
    return bids


class TestSelectionAtomicity:

    def test_crash_while_rejecting_siblings(
        self, session, committed_bids, open_session, application, customer,
        deterministic_clock,
    ):
        winner = committed_bids[0]

        with patch.object(
            PersistenceGateway, "transition_bids", side_effect=SimulatedCrash("after accept")
        ):
            with pytest.raises(SimulatedCrash):
                with session_scope("select_bid") as scoped:
                    BidSessionService(scoped, deterministic_clock).select_bid(
                        winner.id, customer
                    )

        session.expire_all()
        bid_session = session.get(BidSession, open_session.id)
        assert bid_session.status == SessionStatus.OPEN
        assert bid_session.selected_bid_id is None
        assert bid_session.closed_at is None
        assert {b.status for b in session.query(Bid)} == {BidStatus.PENDING}
        assert session.get(Application, application.id).installer_organization_id is None

    def test_selection_succeeds_after_crash(
        self, session, committed_bids, open_session, customer, deterministic_clock
    ):
        with patch.object(
            PersistenceGateway, "transition_bids", side_effect=SimulatedCrash()
        ):
            with pytest.raises(SimulatedCrash):
                with session_scope("select_bid") as scoped:
                    BidSessionService(scoped, deterministic_clock).select_bid(
                        committed_bids[0].id, customer
                    )

        with session_scope("select_bid") as scoped:
            result = BidSessionService(scoped, deterministic_clock).select_bid(
                committed_bids[1].id, customer
            )

        assert result.accepted.id == committed_bids[1].id
        assert len(result.rejected_bid_ids) == 2

    def test_crash_while_expiring_bids(
        self, session, committed_bids, open_session, deterministic_clock
    ):
        deterministic_clock.advance_hours(49)

        with patch.object(
            PersistenceGateway, "transition_bids", side_effect=SimulatedCrash()
        ):
            with pytest.raises(SimulatedCrash):
                with session_scope("sweep") as scoped:
                    ExpirySweeper(scoped, deterministic_clock).sweep_expired_sessions()

        session.expire_all()
        assert session.get(BidSession, open_session.id).status == SessionStatus.OPEN
        assert {b.status for b in session.query(Bid)} == {BidStatus.PENDING}


class TestSettlementAtomicity:

    def test_crash_while_settling_invoice(
        self, session, application, deterministic_clock
    ):
        session.commit()
        with session_scope("register") as scoped:
            PaymentReconciliationService(scoped, deterministic_clock).register_payment(
                "pi_crash", application.customer_id, Decimal("100.00"), "installation"
            )

        with patch.object(
            PersistenceGateway, "settle_invoice", side_effect=SimulatedCrash()
        ):
            with pytest.raises(SimulatedCrash):
                with session_scope("confirm_payment") as scoped:
                    PaymentReconciliationService(
                        scoped, deterministic_clock
                    ).confirm_payment("pi_crash")

        session.expire_all()
        payment = session.query(PaymentTransaction).one()
        assert payment.invoice_id is None
        assert payment.status == PaymentStatus.PENDING
        assert session.query(Invoice).count() == 0

    def test_crash_midway_through_billing_run(
        self, session, make_application, customer, other_customer, add_reading,
        deterministic_clock,
    ):
        for owner in (customer, other_customer):
            application = make_application(owner.id)
            add_reading(application.id, datetime(2024, 1, 5, tzinfo=timezone.utc), 0, 0, 10)
        session.commit()

        original = PersistenceGateway.insert_if_absent
        calls = {"n": 0}

        def crash_on_second(self, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise SimulatedCrash("second bill")
            return original(self, *args, **kwargs)

        with patch.object(PersistenceGateway, "insert_if_absent", crash_on_second):
            with pytest.raises(SimulatedCrash):
                with session_scope("generate_monthly_bills") as scoped:
                    BillingService(scoped, deterministic_clock).generate_monthly_bills(1, 2024)

        session.expire_all()
        assert session.query(Invoice).count() == 0

        with session_scope("generate_monthly_bills") as scoped:
            run = BillingService(scoped, deterministic_clock).generate_monthly_bills(1, 2024)
        assert len(run.created) == 2


class TestTransientFailures:

    def test_lost_connection_on_commit_is_transient(
        self, session, committed_bids, open_session, customer, deterministic_clock,
        captured_logs,
    ):
        lost = OperationalError("COMMIT", {}, Exception("server closed the connection"))

        with patch.object(Session, "commit", side_effect=lost):
            with pytest.raises(TransientFailureError) as exc_info:
                with session_scope("select_bid") as scoped:
                    BidSessionService(scoped, deterministic_clock).select_bid(
                        committed_bids[0].id, customer
                    )

        assert exc_info.value.operation == "select_bid"
        assert exc_info.value.reason == "OperationalError"
        assert any(
            r["message"] == "transaction_transient_failure" for r in captured_logs()
        )

        session.expire_all()
        assert session.get(BidSession, open_session.id).status == SessionStatus.OPEN

    def test_other_errors_pass_through_unchanged(self, session):
        with pytest.raises(SimulatedCrash):
            with session_scope("noop"):
                raise SimulatedCrash("not storage")
