"""
Property-based tests for the net-metering arithmetic.

Boundaries fuzzed here:
- kWh totals: 0 .. 10^6 with three decimal places
- Rates: 0 .. 1000 with two decimal places
- Reading order: summing is order independent
- Billing windows: every instant of a month falls in exactly one window
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from hypothesis import given, settings
from hypothesis import strategies as st

from solar_kernel.db.types import round_money
from solar_kernel.domain.billing import (
    compute_net_metering,
    month_window,
    monthly_due_date,
    summarize_month,
)

kwh = st.decimals(min_value=0, max_value=10**6, places=3, allow_nan=False, allow_infinity=False)
rates = st.decimals(min_value=0, max_value=1000, places=2, allow_nan=False, allow_infinity=False)
readings = st.lists(st.tuples(kwh, kwh, kwh), max_size=40)


class TestNetMeteringProperties:

    @given(imported=kwh, exported=kwh, rate=rates, credit_rate=rates)
    def test_figures_are_non_negative_and_exclusive(self, imported, exported, rate, credit_rate):
        result = compute_net_metering(imported, exported, rate, credit_rate)

        assert result.net_kwh == imported - exported
        assert result.amount_due >= 0
        assert result.credit >= 0
        assert result.amount_due == 0 or result.credit == 0

    @given(imported=kwh, exported=kwh, rate=rates, credit_rate=rates)
    def test_rounded_once_to_cents(self, imported, exported, rate, credit_rate):
        result = compute_net_metering(imported, exported, rate, credit_rate)

        assert result.amount_due.as_tuple().exponent == -2
        assert result.credit.as_tuple().exponent == -2
        assert round_money(result.amount_due) == result.amount_due
        assert not result.amount_due.is_signed()
        assert not result.credit.is_signed()

    @given(imported=kwh, exported=kwh, rate=rates, credit_rate=rates)
    def test_matches_direct_formula(self, imported, exported, rate, credit_rate):
        result = compute_net_metering(imported, exported, rate, credit_rate)
        net = imported - exported

        if net > 0:
            assert result.amount_due == round_money(net * rate)
        else:
            assert result.credit == round_money(-net * credit_rate)

    @given(base=kwh, extra=st.decimals(min_value=Decimal("0.001"), max_value=1000, places=3))
    def test_more_import_never_lowers_amount_due(self, base, extra):
        rate, credit_rate = Decimal("52"), Decimal("30")
        exported = Decimal("100")

        lower = compute_net_metering(base, exported, rate, credit_rate)
        higher = compute_net_metering(base + extra, exported, rate, credit_rate)

        assert higher.amount_due >= lower.amount_due
        assert higher.credit <= lower.credit


class TestSummaryProperties:

    @given(rows=readings, data=st.data())
    @settings(max_examples=50)
    def test_order_independent(self, rows, data):
        shuffled = data.draw(st.permutations(rows))
        application_id = uuid4()

        first = summarize_month(application_id, 2024, 1, rows, Decimal("52"), Decimal("30"))
        second = summarize_month(application_id, 2024, 1, shuffled, Decimal("52"), Decimal("30"))

        assert first == second
        assert first.reading_count == len(rows)

    @given(rows=readings)
    def test_totals_are_sums(self, rows):
        summary = summarize_month(uuid4(), 2024, 1, rows, Decimal("52"), Decimal("30"))

        assert summary.kwh_generated == sum((r[0] for r in rows), Decimal("0"))
        assert summary.kwh_exported == sum((r[1] for r in rows), Decimal("0"))
        assert summary.kwh_imported == sum((r[2] for r in rows), Decimal("0"))


class TestWindowProperties:

    @given(
        instant=st.datetimes(
            min_value=datetime(2000, 1, 1),
            max_value=datetime(2099, 12, 31, 23, 59, 59),
        )
    )
    def test_instant_falls_in_its_month_window_only(self, instant):
        instant = instant.replace(tzinfo=timezone.utc)
        start, end = month_window(instant.year, instant.month)

        assert start <= instant < end
        before_start, before_end = month_window(
            (start - timedelta(days=1)).year, (start - timedelta(days=1)).month
        )
        assert before_end == start
        assert not before_start <= instant < before_end

    @given(
        year=st.integers(min_value=2000, max_value=2099),
        month=st.integers(min_value=1, max_value=12),
        due_days=st.integers(min_value=0, max_value=60),
    )
    def test_due_date_is_after_the_month(self, year, month, due_days):
        _, end = month_window(year, month)
        assert monthly_due_date(year, month, due_days) == end + timedelta(days=due_days)
