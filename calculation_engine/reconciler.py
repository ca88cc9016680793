"""
calculation_engine/reconciler.py
Recomputes the display amount of historical billing entries from their raw
snapshots, so dashboards, billing history and reservation detail all show the
numbers the pricing rules produce rather than whatever an older code path
stored.
"""
from dataclasses import dataclass
from typing import Iterable, Optional

from calculation_engine.calculators import (
    CancellationRefundCalculator,
    ExtensionRuleEngine,
    PriceCalculator,
)
from calculation_engine.policies import build_policy
from domain.clock import FixedClock
from domain.models import BillingEntry, BillingKind, Reservation, money
from monitoring import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class DisplayLine:
    entry_id: str
    reservation_id: str
    kind: str
    stored_amount: float
    display_amount: float
    drifted: bool
    note: str = ""


class BillingReconciler:
    """
    Charges are shown positive, refunds negative. Charge entries on
    non-metered lots keep their stored amount since no window rule applies
    to them.
    """

    def __init__(self, price_calculator: Optional[PriceCalculator] = None) -> None:
        self._price = price_calculator

    def recompute_display_amount(self, entry: BillingEntry) -> float:
        snap = entry.raw_snapshot
        if entry.kind == BillingKind.CHARGE:
            if not snap.is_metered:
                return money(entry.stored_amount)
            if snap.source == "extension":
                return self._replay_extension(entry)
            return self._pricer(snap.billing_day_mode).compute_billable_amount(
                snap.interval(), snap.rate_profile()
            ).amount
        return self._replay_refund(entry)

    def reconcile_history(self, entries: Iterable[BillingEntry]) -> list[DisplayLine]:
        lines: list[DisplayLine] = []
        for entry in entries:
            display = self.recompute_display_amount(entry)
            signed_stored = (
                money(entry.stored_amount) if entry.kind == BillingKind.CHARGE
                else money(-abs(entry.stored_amount))
            )
            drifted = abs(display - signed_stored) >= 0.005
            if drifted:
                log.warning(
                    "Billing entry drift",
                    entry_id=entry.id,
                    reservation_id=entry.reservation_id,
                    stored=signed_stored,
                    display=display,
                )
            lines.append(DisplayLine(
                entry_id=entry.id,
                reservation_id=entry.reservation_id,
                kind=entry.kind.value,
                stored_amount=signed_stored,
                display_amount=display,
                drifted=drifted,
                note=entry.raw_snapshot.free_reason or "",
            ))
        return lines

    # ── Private ───────────────────────────────────────────────────────────────

    def _pricer(self, day_mode: str) -> PriceCalculator:
        if self._price is not None and self._price.day_mode == day_mode:
            return self._price
        return PriceCalculator(day_mode=day_mode)

    @staticmethod
    def _snapshot_reservation(entry: BillingEntry) -> Reservation:
        snap = entry.raw_snapshot
        return Reservation(
            id=entry.reservation_id,
            lot_id="",
            user_id="",
            start_time=snap.start_time,
            end_time=snap.end_time,
            rate_profile=snap.rate_profile(),
        )

    def _replay_extension(self, entry: BillingEntry) -> float:
        snap = entry.raw_snapshot
        if snap.requested_at is None or snap.additional_hours is None:
            return money(entry.stored_amount)
        engine = ExtensionRuleEngine(surcharge=snap.extension_surcharge)
        quote = engine.compute_extension(
            self._snapshot_reservation(entry),
            snap.additional_hours,
            FixedClock(snap.requested_at),
            bool(snap.has_active_permit),
        )
        return quote.fee

    def _replay_refund(self, entry: BillingEntry) -> float:
        snap = entry.raw_snapshot
        if snap.cancelled_at is None or snap.amount_paid is None:
            return money(-abs(entry.stored_amount))

        booking = self._pricer(snap.billing_day_mode).compute_billable_amount(
            snap.interval(), snap.rate_profile()
        )
        refundable = snap.amount_paid
        if booking.is_free:
            # Only paid extensions can be owed back on a free booking
            refundable = min(refundable, snap.extension_fees_paid or 0.0)
            if refundable == 0:
                return 0.0

        calc = CancellationRefundCalculator(
            policy=build_policy(snap.policy_name or "no-refund", snap.policy_refund_pct or 0.0),
            notice_hours=snap.full_refund_notice_hours,
        )
        quote = calc.compute_refund(
            self._snapshot_reservation(entry), FixedClock(snap.cancelled_at), refundable
        )
        return money(-quote.amount) if quote.amount else 0.0
