"""
Table shapes the services rely on: the columns a bid session carries and
the unique keys that make open-or-extend, monthly billing and payment
registration idempotent.
"""

from sqlalchemy import UniqueConstraint

from solar_kernel.models.bid_session import BidSession
from solar_kernel.models.invoice import Invoice
from solar_kernel.models.payment import PaymentTransaction


def _unique_keys(table) -> set[tuple[str, ...]]:
    return {
        tuple(column.name for column in constraint.columns)
        for constraint in table.constraints
        if isinstance(constraint, UniqueConstraint)
    }


class TestBidSessionTable:

    def test_columns(self):
        assert set(BidSession.__table__.columns.keys()) == {
            "id",
            "created_at",
            "updated_at",
            "application_id",
            "customer_id",
            "status",
            "started_at",
            "expires_at",
            "closed_at",
            "selected_bid_id",
            "bid_count",
        }

    def test_one_session_per_application(self):
        assert ("application_id",) in _unique_keys(BidSession.__table__)


class TestUniqueKeys:

    def test_one_bill_per_application_type_and_month(self):
        assert ("application_id", "type", "billing_year", "billing_month") in _unique_keys(
            Invoice.__table__
        )

    def test_one_transaction_per_provider_intent(self):
        assert ("provider_intent_id",) in _unique_keys(PaymentTransaction.__table__)
