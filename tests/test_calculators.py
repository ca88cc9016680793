"""
tests/test_calculators.py
Unit tests for the price, extension and refund calculators.
Reference week: Mon 2025-03-03 … Sun 2025-03-09.
Run with: pytest tests/ -v
"""
import sys
from datetime import date, datetime, time, timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from calculation_engine.calculators import (
    CancellationRefundCalculator,
    ExtensionRuleEngine,
    PriceCalculator,
)
from calculation_engine.policies import NO_REFUND, build_policy, percentage_policy
from domain.clock import FixedClock
from domain.errors import ConfigurationError, ValidationError
from domain.models import (
    EXT_AFTER_7PM,
    EXT_METERED_FEE,
    EXT_PERMIT_EVENING,
    EXT_SEMESTER,
    EXT_STANDARD,
    FREE_OUTSIDE_WINDOW,
    FREE_SEMESTER,
    FREE_WEEKEND,
    Interval,
    RateModel,
    RateProfile,
    Reservation,
)

TUE = date(2025, 3, 4)
FRI = date(2025, 3, 7)
SAT = date(2025, 3, 8)
SUN = date(2025, 3, 9)

METERED  = RateProfile(RateModel.HOURLY, hourly_rate=2.50, is_metered=True)
UNMETERED = RateProfile(RateModel.HOURLY, hourly_rate=3.00, is_metered=False)
SEMESTER = RateProfile(RateModel.SEMESTER, semester_rate=150.0)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute))


def reservation(profile: RateProfile, start: datetime, end: datetime, **kw) -> Reservation:
    return Reservation(
        id="RES-TEST", lot_id="lot-1", user_id="u-1",
        start_time=start, end_time=end, rate_profile=profile, **kw,
    )


#Fixtures

@pytest.fixture
def pricer() -> PriceCalculator:
    return PriceCalculator(window_start_hour=7, window_end_hour=19, day_mode="start-day")


@pytest.fixture
def per_day_pricer() -> PriceCalculator:
    return PriceCalculator(window_start_hour=7, window_end_hour=19, day_mode="per-day")


@pytest.fixture
def extender() -> ExtensionRuleEngine:
    return ExtensionRuleEngine(surcharge=2.50, permit_evening_hour=16, max_hours=24)


#Price

class TestPriceCalculator:

    def test_partial_morning_overlap(self, pricer):
        q = pricer.compute_billable_amount(Interval(at(TUE, 5), at(TUE, 9)), METERED)
        assert q.billable_hours == pytest.approx(2.0)
        assert q.amount == 5.00
        assert q.is_free is False
        assert q.free_reason is None

    def test_evening_outside_window_is_free(self, pricer):
        q = pricer.compute_billable_amount(Interval(at(TUE, 20), at(TUE, 22)), METERED)
        assert q.amount == 0.0
        assert q.is_free
        assert q.free_reason == FREE_OUTSIDE_WINDOW

    def test_ends_exactly_at_window_open(self, pricer):
        q = pricer.compute_billable_amount(Interval(at(TUE, 5), at(TUE, 7)), METERED)
        assert q.amount == 0.0
        assert q.free_reason == FREE_OUTSIDE_WINDOW

    @pytest.mark.parametrize("day", [SAT, SUN])
    def test_weekend_is_free(self, pricer, day):
        q = pricer.compute_billable_amount(Interval(at(day, 10), at(day, 14)), METERED)
        assert q.amount == 0.0
        assert q.free_reason == FREE_WEEKEND

    @pytest.mark.parametrize("start,end", [
        (at(TUE, 7), at(TUE, 19)),
        (at(TUE, 9), at(TUE, 12, 30)),
        (at(TUE, 13, 15), at(TUE, 14)),
    ])
    def test_inside_window_bills_full_duration(self, pricer, start, end):
        interval = Interval(start, end)
        q = pricer.compute_billable_amount(interval, METERED)
        assert q.amount == pytest.approx(round(interval.hours * 2.50, 2))
        assert q.billable_hours == pytest.approx(interval.hours)

    def test_semester_lot_is_free(self, pricer):
        q = pricer.compute_billable_amount(Interval(at(TUE, 9), at(TUE, 17)), SEMESTER)
        assert q.amount == 0.0
        assert q.free_reason == FREE_SEMESTER

    @pytest.mark.parametrize("start,end", [
        (at(TUE, 9), at(TUE, 9)),
        (at(TUE, 10), at(TUE, 9)),
    ])
    def test_non_positive_duration_rejected(self, pricer, start, end):
        with pytest.raises(ValidationError, match="non-positive duration"):
            pricer.compute_billable_amount(Interval(start, end), METERED)

    def test_amount_is_monotonic_and_bounded(self, pricer):
        start = at(TUE, 5)
        previous = 0.0
        for minutes in range(30, 18 * 60, 30):
            interval = Interval(start, start + timedelta(minutes=minutes))
            q = pricer.compute_billable_amount(interval, METERED)
            assert q.amount >= previous
            assert 0 <= q.amount <= round(interval.hours * 2.50, 2)
            previous = q.amount

    def test_midnight_crossing_bills_start_day_only(self, pricer):
        q = pricer.compute_billable_amount(Interval(at(TUE, 18), at(TUE, 10) + timedelta(days=1)), METERED)
        assert q.billable_hours == pytest.approx(1.0)
        assert q.amount == 2.50

    def test_per_day_mode_sums_each_weekday(self, per_day_pricer):
        q = per_day_pricer.compute_billable_amount(
            Interval(at(TUE, 18), at(TUE, 10) + timedelta(days=1)), METERED
        )
        assert q.billable_hours == pytest.approx(4.0)
        assert q.amount == 10.00

    def test_per_day_mode_skips_weekend(self, per_day_pricer):
        monday = FRI + timedelta(days=3)
        q = per_day_pricer.compute_billable_amount(Interval(at(FRI, 18), at(monday, 8)), METERED)
        assert q.billable_hours == pytest.approx(2.0)
        assert q.amount == 5.00

    def test_per_day_mode_weekend_only(self, per_day_pricer):
        q = per_day_pricer.compute_billable_amount(Interval(at(SAT, 9), at(SUN, 17)), METERED)
        assert q.free_reason == FREE_WEEKEND

    def test_ev_lot_uses_charging_rate(self, pricer):
        ev = RateProfile(RateModel.HOURLY, hourly_rate=2.50, is_metered=True, is_ev=True, ev_charging_rate=4.00)
        q = pricer.compute_billable_amount(Interval(at(TUE, 9), at(TUE, 11)), ev)
        assert q.hourly_rate == 4.00
        assert q.amount == 8.00

    def test_clock_only_stamps_quote(self, pricer):
        interval = Interval(at(TUE, 9), at(TUE, 11))
        early = pricer.compute_billable_amount(interval, METERED, FixedClock(at(TUE, 1)))
        late  = pricer.compute_billable_amount(interval, METERED, FixedClock(at(SAT, 23)))
        assert early.amount == late.amount
        assert early.quoted_at == at(TUE, 1)

    def test_same_inputs_same_quote(self, pricer):
        interval = Interval(at(TUE, 6), at(TUE, 20))
        assert pricer.compute_billable_amount(interval, METERED) == pricer.compute_billable_amount(interval, METERED)

    def test_unknown_day_mode_rejected(self):
        with pytest.raises(ValidationError):
            PriceCalculator(day_mode="hourly-ish")


#Extension

class TestExtensionRuleEngine:

    @pytest.mark.parametrize("profile", [METERED, UNMETERED])
    def test_permit_holder_after_4pm_is_free(self, extender, profile):
        res = reservation(profile, at(TUE, 9), at(TUE, 17, 30))
        q = extender.compute_extension(res, 1, FixedClock(at(TUE, 17)), has_active_permit=True)
        assert q.fee == 0.0
        assert q.reason == EXT_PERMIT_EVENING

    def test_metered_new_end_after_7pm_is_free(self, extender):
        res = reservation(METERED, at(TUE, 9), at(TUE, 18))
        q = extender.compute_extension(res, 2, FixedClock(at(TUE, 10)), has_active_permit=False)
        assert q.new_end_time == at(TUE, 20)
        assert q.fee == 0.0
        assert q.reason == EXT_AFTER_7PM

    def test_metered_daytime_extension_charges_surcharge(self, extender):
        res = reservation(METERED, at(TUE, 9), at(TUE, 14))
        q = extender.compute_extension(res, 1, FixedClock(at(TUE, 10)), has_active_permit=False)
        assert q.new_end_time == at(TUE, 15)
        assert q.fee == 5.00
        assert q.reason == EXT_METERED_FEE
        assert [line["amount"] for line in q.breakdown] == [2.50, 2.50]

    def test_permit_before_4pm_falls_through(self, extender):
        res = reservation(METERED, at(TUE, 9), at(TUE, 14))
        q = extender.compute_extension(res, 1, FixedClock(at(TUE, 15)), has_active_permit=True)
        assert q.reason == EXT_METERED_FEE
        assert q.fee == 5.00

    def test_semester_lot_wins_over_everything(self, extender):
        res = reservation(SEMESTER, at(TUE, 9), at(TUE, 14))
        q = extender.compute_extension(res, 3, FixedClock(at(TUE, 17)), has_active_permit=True)
        assert q.fee == 0.0
        assert q.reason == EXT_SEMESTER

    def test_unmetered_lot_pays_rate_even_in_evening(self, extender):
        res = reservation(UNMETERED, at(TUE, 9), at(TUE, 18))
        q = extender.compute_extension(res, 2, FixedClock(at(TUE, 10)), has_active_permit=False)
        assert q.new_end_time == at(TUE, 20)
        assert q.fee == 6.00
        assert q.reason == EXT_STANDARD

    @pytest.mark.parametrize("hours", [0, -1, 24.5])
    def test_out_of_range_hours_rejected(self, extender, hours):
        res = reservation(METERED, at(TUE, 9), at(TUE, 14))
        with pytest.raises(ValidationError):
            extender.compute_extension(res, hours, FixedClock(at(TUE, 10)), has_active_permit=False)

    def test_max_hours_accepted(self, extender):
        res = reservation(UNMETERED, at(TUE, 9), at(TUE, 14))
        q = extender.compute_extension(res, 24, FixedClock(at(TUE, 10)), has_active_permit=False)
        assert q.new_end_time == at(TUE, 14) + timedelta(hours=24)

    def test_deterministic(self, extender):
        res = reservation(METERED, at(TUE, 9), at(TUE, 14))
        clock = FixedClock(at(TUE, 10))
        assert extender.compute_extension(res, 1, clock, False) == extender.compute_extension(res, 1, clock, False)


#Refund

class TestCancellationRefundCalculator:

    @pytest.fixture
    def booked(self) -> Reservation:
        return reservation(METERED, at(TUE, 9), at(TUE, 12), current_amount=7.50)

    def test_full_refund_with_notice(self, booked):
        calc = CancellationRefundCalculator(policy=NO_REFUND, notice_hours=24)
        q = calc.compute_refund(booked, FixedClock(at(TUE, 9) - timedelta(hours=48)), 7.50)
        assert q.amount == 7.50
        assert q.tier == "full"

    def test_exactly_at_notice_boundary_is_full(self, booked):
        calc = CancellationRefundCalculator(policy=NO_REFUND, notice_hours=24)
        q = calc.compute_refund(booked, FixedClock(at(TUE, 9) - timedelta(hours=24)), 7.50)
        assert q.amount == 7.50

    def test_late_cancellation_no_refund_policy(self, booked):
        calc = CancellationRefundCalculator(policy=NO_REFUND, notice_hours=24)
        q = calc.compute_refund(booked, FixedClock(at(TUE, 9) - timedelta(hours=23)), 7.50)
        assert q.amount == 0.0
        assert q.tier == "late"
        assert q.policy_name == "no-refund"

    def test_late_cancellation_percentage_policy(self, booked):
        calc = CancellationRefundCalculator(policy=percentage_policy(50), notice_hours=24)
        q = calc.compute_refund(booked, FixedClock(at(TUE, 8)), 7.50)
        assert q.amount == 3.75
        assert q.policy_refund_pct == 50

    @pytest.mark.parametrize("pct", [0, 25, 100])
    def test_refund_never_exceeds_paid(self, booked, pct):
        calc = CancellationRefundCalculator(policy=percentage_policy(pct), notice_hours=24)
        for now in (at(TUE, 9) - timedelta(days=3), at(TUE, 8), at(TUE, 10)):
            q = calc.compute_refund(booked, FixedClock(now), 7.50)
            assert 0.0 <= q.amount <= 7.50

    def test_nothing_paid_refunds_nothing(self, booked):
        calc = CancellationRefundCalculator(policy=percentage_policy(100), notice_hours=24)
        q = calc.compute_refund(booked, FixedClock(at(TUE, 9) - timedelta(days=3)), 0.0)
        assert q.amount == 0.0
        assert q.tier == "nothing-paid"


class TestPolicies:

    def test_build_known_policies(self):
        assert build_policy("no-refund") is NO_REFUND
        assert build_policy("percentage", 40).refund_pct == 40

    def test_unknown_policy_rejected(self):
        with pytest.raises(ConfigurationError):
            build_policy("half-moon")

    @pytest.mark.parametrize("pct", [-1, 100.5])
    def test_out_of_range_pct_rejected(self, pct):
        with pytest.raises(ConfigurationError):
            percentage_policy(pct)
