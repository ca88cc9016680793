"""
calculation_engine/calculators.py
Pure pricing rules for metered and semester lots.

  PriceCalculator              — billable amount of a reservation interval
  ExtensionRuleEngine          — fee for extending a reservation by N hours
  CancellationRefundCalculator — refund owed when a reservation is cancelled

None of the calculators read ambient time or touch storage: every input is
passed in, so results can be memoised and replayed from ledger snapshots.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional

from calculation_engine.policies import LateCancellationPolicy, configured_policy
from config.settings import settings
from domain.clock import ClockSource, is_weekend
from domain.errors import ValidationError
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
    money,
)
from monitoring import get_logger, timed

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Result types
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class PriceQuote:
    amount: float
    billable_hours: float
    hourly_rate: float
    is_free: bool
    free_reason: Optional[str] = None
    formula_applied: str = ""
    quoted_at: Optional[datetime] = None


@dataclass(frozen=True)
class ExtensionQuote:
    fee: float
    new_end_time: datetime
    is_free: bool
    reason: str
    additional_hours: float
    breakdown: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class RefundQuote:
    amount: float
    amount_paid: float
    hours_until_start: float
    tier: str                      # full | late | nothing-paid
    policy_name: str
    policy_refund_pct: float


# ─────────────────────────────────────────────────────────────────────────────
# 1. PRICE
# ─────────────────────────────────────────────────────────────────────────────
class PriceCalculator:
    """
    Hourly lots are billed only inside the billable window [07:00, 19:00) on
    weekdays. Semester lots are covered by the flat permit fee.

    In the default "start-day" mode only the start date's window is honoured,
    so a reservation running past midnight is billed against one window.
    "per-day" mode sums the window over every weekday the interval touches.
    """

    def __init__(
        self,
        window_start_hour: Optional[int] = None,
        window_end_hour: Optional[int] = None,
        day_mode: Optional[str] = None,
    ) -> None:
        self.window_start = time(
            settings.billable_window_start_hour if window_start_hour is None else window_start_hour
        )
        self.window_end = time(
            settings.billable_window_end_hour if window_end_hour is None else window_end_hour
        )
        self.day_mode = day_mode or settings.billing_day_mode
        if self.day_mode not in ("start-day", "per-day"):
            raise ValidationError(f"Unknown billing day mode '{self.day_mode}'")

    @timed("price")
    def compute_billable_amount(
        self,
        interval: Interval,
        rate_profile: RateProfile,
        clock: Optional[ClockSource] = None,
    ) -> PriceQuote:
        if interval.end <= interval.start:
            raise ValidationError("non-positive duration")

        quoted_at = clock.now() if clock else None
        rate = rate_profile.effective_hourly_rate

        if rate_profile.rate_model == RateModel.SEMESTER:
            return PriceQuote(
                amount=0.0, billable_hours=0.0, hourly_rate=rate, is_free=True,
                free_reason=FREE_SEMESTER,
                formula_applied="Semester rate: covered by permit fee",
                quoted_at=quoted_at,
            )

        if self.day_mode == "start-day":
            if is_weekend(interval.start):
                return self._free(rate, FREE_WEEKEND, quoted_at)
            hours = self._window_overlap_hours(interval, interval.start.date())
        else:
            hours = sum(
                self._window_overlap_hours(interval, day)
                for day in self._days_touched(interval)
                if day.weekday() not in settings.weekend_days
            )
            if hours == 0 and is_weekend(interval.start):
                return self._free(rate, FREE_WEEKEND, quoted_at)

        if hours == 0:
            return self._free(rate, FREE_OUTSIDE_WINDOW, quoted_at)

        amount = money(hours * rate)
        return PriceQuote(
            amount=amount,
            billable_hours=round(hours, 4),
            hourly_rate=rate,
            is_free=amount == 0,
            formula_applied=(
                f"{hours:.2f} billable h "
                f"({self.window_start:%H:%M}-{self.window_end:%H:%M}) × ${rate:.2f}/h"
            ),
            quoted_at=quoted_at,
        )

    def _window_overlap_hours(self, interval: Interval, day: date) -> float:
        window_open  = datetime.combine(day, self.window_start)
        window_close = datetime.combine(day, self.window_end)
        overlap = min(interval.end, window_close) - max(interval.start, window_open)
        return max(0.0, overlap.total_seconds() / 3600)

    @staticmethod
    def _days_touched(interval: Interval) -> list[date]:
        last = (interval.end - timedelta(microseconds=1)).date()
        days, day = [], interval.start.date()
        while day <= last:
            days.append(day)
            day += timedelta(days=1)
        return days

    @staticmethod
    def _free(rate: float, reason: str, quoted_at: Optional[datetime]) -> PriceQuote:
        return PriceQuote(
            amount=0.0, billable_hours=0.0, hourly_rate=rate, is_free=True,
            free_reason=reason, formula_applied=f"Free: {reason}", quoted_at=quoted_at,
        )


# ─────────────────────────────────────────────────────────────────────────────
# 2. EXTENSION
# ─────────────────────────────────────────────────────────────────────────────
class ExtensionRuleEngine:
    """
    Rule precedence, first match wins:
      1. Semester lot                                  → free
      2. Permit holder extending at/after 16:00        → free
      3. Metered lot, new end time at/after 19:00      → free
      4. Metered lot                                   → surcharge + rate × hours
      5. Anything else                                 → rate × hours
    """

    def __init__(
        self,
        surcharge: Optional[float] = None,
        permit_evening_hour: Optional[int] = None,
        max_hours: Optional[float] = None,
    ) -> None:
        self.surcharge = settings.extension_surcharge if surcharge is None else surcharge
        self.permit_evening_hour = (
            settings.permit_evening_hour if permit_evening_hour is None else permit_evening_hour
        )
        self.max_hours = settings.max_extension_hours if max_hours is None else max_hours
        self.free_after_hour = settings.billable_window_end_hour

    @timed("extension")
    def compute_extension(
        self,
        reservation: Reservation,
        additional_hours: float,
        clock: ClockSource,
        has_active_permit: bool,
    ) -> ExtensionQuote:
        if not (0 < additional_hours <= self.max_hours):
            raise ValidationError(
                f"additional_hours must be within (0, {self.max_hours:g}], got {additional_hours}"
            )

        profile  = reservation.rate_profile
        rate     = profile.effective_hourly_rate
        new_end  = reservation.end_time + timedelta(hours=additional_hours)
        now      = clock.now()

        if profile.rate_model == RateModel.SEMESTER:
            return self._quote(0.0, new_end, EXT_SEMESTER, additional_hours)
        if has_active_permit and now.hour >= self.permit_evening_hour:
            return self._quote(0.0, new_end, EXT_PERMIT_EVENING, additional_hours)
        if profile.is_metered and new_end.hour >= self.free_after_hour:
            return self._quote(0.0, new_end, EXT_AFTER_7PM, additional_hours)

        hourly = rate * additional_hours
        if profile.is_metered:
            bd = [
                {"item": "Extension surcharge", "amount": self.surcharge},
                {"item": f"{additional_hours:g} h × ${rate:.2f}/h", "amount": money(hourly)},
            ]
            return self._quote(self.surcharge + hourly, new_end, EXT_METERED_FEE, additional_hours, bd)

        bd = [{"item": f"{additional_hours:g} h × ${rate:.2f}/h", "amount": money(hourly)}]
        return self._quote(hourly, new_end, EXT_STANDARD, additional_hours, bd)

    @staticmethod
    def _quote(fee, new_end, reason, hours, breakdown=None) -> ExtensionQuote:
        fee = money(fee)
        return ExtensionQuote(
            fee=fee,
            new_end_time=new_end,
            is_free=fee == 0,
            reason=reason,
            additional_hours=hours,
            breakdown=breakdown or [],
        )


# ─────────────────────────────────────────────────────────────────────────────
# 3. CANCELLATION REFUND
# ─────────────────────────────────────────────────────────────────────────────
class CancellationRefundCalculator:
    """
    Full refund when cancelled at least ``notice_hours`` before the start;
    otherwise the late-cancellation policy decides. The result is clamped to
    [0, amount_paid].
    """

    def __init__(
        self,
        policy: Optional[LateCancellationPolicy] = None,
        notice_hours: Optional[float] = None,
    ) -> None:
        self.policy = policy or configured_policy()
        self.notice_hours = (
            settings.full_refund_notice_hours if notice_hours is None else notice_hours
        )

    @timed("refund")
    def compute_refund(
        self,
        reservation: Reservation,
        clock: ClockSource,
        amount_paid: float,
    ) -> RefundQuote:
        now = clock.now()
        hours_until_start = (reservation.start_time - now).total_seconds() / 3600
        paid = money(max(0.0, amount_paid))

        if paid == 0:
            amount, tier = 0.0, "nothing-paid"
        elif now <= reservation.start_time - timedelta(hours=self.notice_hours):
            amount, tier = paid, "full"
        else:
            amount, tier = self.policy(paid, hours_until_start), "late"

        amount = money(min(max(0.0, amount), paid))
        log.debug(
            "Refund computed",
            reservation_id=reservation.id,
            tier=tier,
            amount=amount,
            policy=self.policy.name,
        )
        return RefundQuote(
            amount=amount,
            amount_paid=paid,
            hours_until_start=round(hours_until_start, 4),
            tier=tier,
            policy_name=self.policy.name,
            policy_refund_pct=self.policy.refund_pct,
        )
