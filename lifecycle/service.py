"""
lifecycle/service.py
Reservation lifecycle operations: book, confirm payment, extend, cancel and
the completion sweep.

Each money-moving operation follows the same sequence:
  1. load the reservation and check the action is legal for its status
  2. price it with the pure calculators
  3. claim the row (version bump plus in-flight marker) so a concurrent
     request fails fast with ConflictError
  4. await the payment gateway under a timeout
  5. write the status change and its ledger entry in one transaction

Gateway and persistence failures come back as a TransactionResult rather
than an exception, so "charge taken but ledger write failed" is reportable.
"""
import asyncio
import sqlite3
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from calculation_engine.calculators import (
    CancellationRefundCalculator,
    ExtensionRuleEngine,
    PriceCalculator,
)
from calculation_engine.reconciler import BillingReconciler, DisplayLine
from config.settings import settings
from domain.clock import ClockSource, SystemClock
from domain.errors import ConflictError, ParkingError, PaymentFailure, ValidationError
from domain.models import (
    BillingEntry,
    BillingKind,
    BookingRequest,
    ExtensionRecord,
    Interval,
    RateModel,
    RawSnapshot,
    Reservation,
    ReservationStatus,
    money,
)
from lifecycle.collaborators import (
    LogNotifier,
    LotDirectory,
    Notifier,
    PaymentGateway,
    PermitDirectory,
)
from lifecycle.state_machine import CANCEL, CONFIRM, EXTEND, ReservationLifecycle
from monitoring import LIFECYCLE_OPERATIONS, PAYMENT_FAILURES, get_logger
from storage.sqlite_store import SQLiteStore

log = get_logger(__name__)


@dataclass
class TransactionResult:
    """Outcome of a state-changing operation."""
    ok: bool
    operation: str
    reservation: Optional[Reservation] = None
    entry: Optional[BillingEntry] = None
    error: Optional[ParkingError] = None
    payment_reference: Optional[str] = None
    ledger_pending: bool = False
    quote: Any = None
    warnings: list[str] = field(default_factory=list)


class ReservationService:

    def __init__(
        self,
        store: SQLiteStore,
        gateway: PaymentGateway,
        clock: Optional[ClockSource] = None,
        notifier: Optional[Notifier] = None,
        lots: Optional[LotDirectory] = None,
        permits: Optional[PermitDirectory] = None,
        price_calculator: Optional[PriceCalculator] = None,
        extension_engine: Optional[ExtensionRuleEngine] = None,
        refund_calculator: Optional[CancellationRefundCalculator] = None,
        payment_timeout: Optional[float] = None,
    ) -> None:
        self.store     = store
        self.gateway   = gateway
        self.clock     = clock or SystemClock()
        self.notifier  = notifier or LogNotifier()
        self.lots      = lots or store
        self.permits   = permits or store
        self.pricer    = price_calculator or PriceCalculator()
        self.extender  = extension_engine or ExtensionRuleEngine()
        self.refunder  = refund_calculator or CancellationRefundCalculator()
        self.lifecycle = ReservationLifecycle(self.clock)
        self.reconciler = BillingReconciler(self.pricer)
        self.payment_timeout = (
            settings.payment_timeout_seconds if payment_timeout is None else payment_timeout
        )

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, reservation_id: str) -> Reservation:
        res = self.store.get_reservation(reservation_id)
        if res is None:
            raise ValidationError(f"Unknown reservation '{reservation_id}'")
        return res

    def status(self, reservation_id: str) -> ReservationStatus:
        return self.lifecycle.status(self.get(reservation_id))

    def billing_history(
        self, user_id: Optional[str] = None, reservation_id: Optional[str] = None,
    ) -> list[DisplayLine]:
        entries = self.store.billing_entries(reservation_id=reservation_id, user_id=user_id)
        return self.reconciler.reconcile_history(entries)

    # ── Booking ───────────────────────────────────────────────────────────────

    def book(self, user_id: str, lot_id: str, start_time: datetime, end_time: datetime) -> Reservation:
        """Create a Pending reservation priced against the lot's current rates."""
        if end_time <= start_time:
            raise ValidationError("non-positive duration")
        profile = self.lots.get_rate_profile(lot_id)
        now = self.clock.now()
        quote = self.pricer.compute_billable_amount(
            Interval(start_time, end_time), profile, self.clock
        )
        res = Reservation(
            id=f"RES-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}",
            lot_id=lot_id,
            user_id=user_id,
            start_time=start_time,
            end_time=end_time,
            rate_profile=profile,
            status=ReservationStatus.PENDING,
            original_amount=quote.amount,
            current_amount=quote.amount,
            is_free_reservation=quote.is_free,
            free_reason=quote.free_reason,
            created_at=now,
        )
        self.store.insert_reservation(res)
        LIFECYCLE_OPERATIONS.labels(operation="book", status="ok").inc()
        log.info(
            "Reservation created",
            reservation_id=res.id,
            lot_id=lot_id,
            amount=quote.amount,
            free_reason=quote.free_reason,
        )
        return res

    def book_request(self, request: Union[BookingRequest, dict]) -> Reservation:
        try:
            req = request if isinstance(request, BookingRequest) else BookingRequest.model_validate(request)
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc
        return self.book(req.user_id, req.lot_id, req.start_time, req.end_time)

    # ── Pending → Upcoming ────────────────────────────────────────────────────

    async def confirm_payment(self, reservation_id: str, payment_method: Optional[str] = None) -> TransactionResult:
        res = self.get(reservation_id)
        self.lifecycle.ensure(res, CONFIRM)
        amount = res.current_amount
        if amount > 0 and not payment_method:
            raise ValidationError("payment_method is required for a non-free reservation")

        version = self.store.claim(res.id, res.version, self.clock.now())

        reference = None
        if amount > 0:
            charge = await self._gateway_call(self.gateway.charge(amount, payment_method))
            if charge is None or not charge.succeeded:
                message = (charge.message or "payment declined") if charge else "payment confirmation timed out"
                return self._payment_failed("confirm", res, version, message)
            reference = charge.reference

        now = self.clock.now()
        entry = BillingEntry(
            id=uuid.uuid4().hex,
            reservation_id=res.id,
            kind=BillingKind.CHARGE,
            stored_amount=amount,
            raw_snapshot=RawSnapshot.capture(
                "booking", res.rate_profile, res.interval,
                billing_day_mode=self.pricer.day_mode,
                free_reason=res.free_reason,
            ),
            date=now,
            payment_reference=reference,
        )
        failure = self._commit(
            "confirm", res, version,
            lambda: self.store.commit_confirmation(res.id, version, reference, entry),
            reference,
        )
        if failure:
            return failure

        updated = replace(
            res, status=ReservationStatus.UPCOMING, payment_reference=reference, version=version + 1
        )
        LIFECYCLE_OPERATIONS.labels(operation="confirm", status="ok").inc()
        log.info("Reservation confirmed", reservation_id=res.id, amount=amount, reference=reference)
        self._notify(updated, "reservation.confirmed",
                     f"Your reservation {res.id} is confirmed.")
        return TransactionResult(
            ok=True, operation="confirm", reservation=updated, entry=entry, payment_reference=reference,
        )

    # ── Extend ────────────────────────────────────────────────────────────────

    async def extend(
        self, reservation_id: str, additional_hours: float, payment_method: Optional[str] = None,
    ) -> TransactionResult:
        res = self.get(reservation_id)
        self.lifecycle.ensure(res, EXTEND)

        now = self.clock.now()
        has_permit = self.permits.has_active_permit(res.user_id, now)
        quote = self.extender.compute_extension(res, additional_hours, self.clock, has_permit)
        if quote.fee > 0 and not payment_method:
            raise ValidationError("payment_method is required for a paid extension")

        version = self.store.claim(res.id, res.version, self.clock.now())

        reference = None
        if quote.fee > 0:
            charge = await self._gateway_call(self.gateway.charge(quote.fee, payment_method))
            if charge is None or not charge.succeeded:
                message = (charge.message or "payment declined") if charge else "extension payment timed out"
                return self._payment_failed("extend", res, version, message)
            reference = charge.reference

        record = ExtensionRecord(
            reservation_id=res.id,
            requested_at=now,
            additional_hours=additional_hours,
            previous_end_time=res.end_time,
            new_end_time=quote.new_end_time,
            fee=quote.fee,
            reason=quote.reason,
            payment_reference=reference,
        )
        entry = None
        if quote.fee > 0:
            entry = BillingEntry(
                id=uuid.uuid4().hex,
                reservation_id=res.id,
                kind=BillingKind.CHARGE,
                stored_amount=quote.fee,
                raw_snapshot=RawSnapshot.capture(
                    "extension", res.rate_profile, res.interval,
                    billing_day_mode=self.pricer.day_mode,
                    requested_at=now,
                    additional_hours=additional_hours,
                    has_active_permit=has_permit,
                    extension_surcharge=self.extender.surcharge,
                ),
                date=now,
                payment_reference=reference,
            )
        new_amount = money(res.current_amount + quote.fee)
        failure = self._commit(
            "extend", res, version,
            lambda: self.store.commit_extension(
                res.id, version, quote.new_end_time, new_amount, record, entry
            ),
            reference,
        )
        if failure:
            return failure

        updated = replace(res, end_time=quote.new_end_time, current_amount=new_amount, version=version + 1)
        LIFECYCLE_OPERATIONS.labels(operation="extend", status="ok").inc()
        log.info(
            "Reservation extended",
            reservation_id=res.id,
            hours=additional_hours,
            fee=quote.fee,
            reason=quote.reason,
        )
        self._notify(updated, "reservation.extended",
                     f"Your reservation {res.id} has been extended by {additional_hours:g} hours.")
        return TransactionResult(
            ok=True, operation="extend", reservation=updated, entry=entry,
            payment_reference=reference, quote=quote,
        )

    # ── Cancel ────────────────────────────────────────────────────────────────

    async def cancel(self, reservation_id: str, reason: str = "User cancelled") -> TransactionResult:
        res = self.get(reservation_id)
        self.lifecycle.ensure(res, CANCEL)

        ledger = self.store.ledger_for(res.id)
        if any(e.kind == BillingKind.REFUND for e in ledger.entries):
            raise ConflictError(f"Reservation {res.id} already has a refund recorded")

        quote = self.refunder.compute_refund(res, self.clock, ledger.amount_paid)
        version = self.store.claim(res.id, res.version, self.clock.now())

        refunded, references, warnings = 0.0, [], []
        if quote.amount > 0:
            refunded, references, warnings = await self._refund_charges(ledger.entries, quote.amount)
            if refunded == 0:
                return self._payment_failed("cancel", res, version, "; ".join(warnings) or "refund declined")

        history = self.store.extension_history(res.id)
        booked_end = res.end_time - timedelta(hours=sum(r.additional_hours for r in history))
        now = self.clock.now()
        entry = BillingEntry(
            id=uuid.uuid4().hex,
            reservation_id=res.id,
            kind=BillingKind.REFUND,
            stored_amount=money(refunded),
            raw_snapshot=RawSnapshot.capture(
                "cancellation", res.rate_profile, Interval(res.start_time, booked_end),
                billing_day_mode=self.pricer.day_mode,
                free_reason=res.free_reason,
                cancelled_at=now,
                amount_paid=ledger.amount_paid,
                extension_fees_paid=money(sum(r.fee for r in history)),
                policy_name=quote.policy_name,
                policy_refund_pct=quote.policy_refund_pct,
                full_refund_notice_hours=self.refunder.notice_hours,
            ),
            date=now,
            payment_reference=",".join(references) or None,
        )
        failure = self._commit(
            "cancel", res, version,
            lambda: self.store.commit_cancellation(res.id, version, now, reason, entry),
            entry.payment_reference,
        )
        if failure:
            return failure

        updated = replace(
            res, status=ReservationStatus.CANCELLED, cancelled_at=now,
            cancel_reason=reason, version=version + 1,
        )
        LIFECYCLE_OPERATIONS.labels(operation="cancel", status="ok").inc()
        log.info(
            "Reservation cancelled",
            reservation_id=res.id,
            refund=entry.stored_amount,
            tier=quote.tier,
            policy=quote.policy_name,
        )
        self._notify(updated, "reservation.cancelled",
                     f"Your reservation {res.id} has been cancelled.")
        return TransactionResult(
            ok=True, operation="cancel", reservation=updated, entry=entry,
            payment_reference=entry.payment_reference, quote=quote,
            error=PaymentFailure("; ".join(warnings)) if warnings else None,
            warnings=warnings,
        )

    # ── Completion sweep ──────────────────────────────────────────────────────

    def complete_expired(self) -> int:
        """
        Persist Completed for reservations whose end time has passed and
        notify their owners. Also expires lapsed permits. Returns the number
        of reservations completed.
        """
        now = self.clock.now()
        completed = 0
        for res in self.store.expired_open_reservations(now):
            try:
                self.store.mark_completed(res.id, res.version)
            except ConflictError:
                log.warning("Reservation changed during sweep, skipped", reservation_id=res.id)
                continue
            completed += 1
            if res.rate_profile.rate_model == RateModel.HOURLY:
                message = "Your metered parking session has ended."
            else:
                message = "Your parking reservation has been completed."
            self._notify(res, "reservation.completed", message)

        expired_permits = self.store.expire_permits(now)
        log.info("Completion sweep finished", reservations=completed, permits_expired=expired_permits)
        return completed

    # ── Ledger-pending recovery ───────────────────────────────────────────────

    def resolve_ledger_pending(self, reservation_id: str) -> Optional[str]:
        """
        Unlock a reservation whose payment moved but whose ledger write failed,
        once the payment has been reconciled. Returns the cleared reference.
        """
        reference = self.store.resolve_ledger_pending(reservation_id)
        if reference is not None:
            LIFECYCLE_OPERATIONS.labels(operation="resolve", status="ok").inc()
            log.info("Ledger-pending payment resolved", reservation_id=reservation_id, reference=reference)
        return reference

    # ── Private ───────────────────────────────────────────────────────────────

    async def _gateway_call(self, coro):
        """Await a gateway coroutine. Timeouts and transport errors yield None."""
        try:
            return await asyncio.wait_for(coro, timeout=self.payment_timeout)
        except asyncio.TimeoutError:
            log.warning("Payment gateway timed out", timeout=self.payment_timeout)
        except Exception as exc:
            log.error("Payment gateway error", error=str(exc), exc_info=True)
        return None

    async def _refund_charges(
        self, entries: list[BillingEntry], amount: float,
    ) -> tuple[float, list[str], list[str]]:
        """Refund ``amount`` across the paid charges, newest first."""
        remaining = money(amount)
        refunded = 0.0
        references: list[str] = []
        warnings: list[str] = []
        charges = [e for e in entries if e.kind == BillingKind.CHARGE and e.payment_reference]
        for charge in reversed(charges):
            if remaining <= 0:
                break
            part = money(min(remaining, charge.stored_amount))
            if part <= 0:
                continue
            result = await self._gateway_call(self.gateway.refund(charge.payment_reference, part))
            if result is None or not result.succeeded:
                warnings.append(
                    f"Refund of {part:.2f} against {charge.payment_reference} failed"
                    + (f": {result.message}" if result and result.message else "")
                )
                PAYMENT_FAILURES.labels(operation="refund").inc()
                break
            refunded = money(refunded + part)
            remaining = money(remaining - part)
            references.append(result.reference or charge.payment_reference)
        return refunded, references, warnings

    def _payment_failed(self, operation: str, res: Reservation, version: int, message: str) -> TransactionResult:
        self._release(res, version)
        PAYMENT_FAILURES.labels(operation=operation).inc()
        LIFECYCLE_OPERATIONS.labels(operation=operation, status="payment_failed").inc()
        log.warning("Payment failed", operation=operation, reservation_id=res.id, message=message)
        return TransactionResult(
            ok=False, operation=operation, reservation=self.store.get_reservation(res.id),
            error=PaymentFailure(message),
        )

    def _commit(
        self, operation: str, res: Reservation, version: int, write, reference: Optional[str],
    ) -> Optional[TransactionResult]:
        """
        Run the ledger transaction. If it fails with no money moved the claim is
        released and the error propagates. If money already moved the gateway
        reference is recorded as ledger-pending, which keeps the row locked past
        the claim TTL until resolve_ledger_pending, and the result is marked
        ledger_pending.
        """
        try:
            write()
        except (ParkingError, sqlite3.Error) as exc:
            if reference is None:
                self._release(res, version)
                raise
            LIFECYCLE_OPERATIONS.labels(operation=operation, status="ledger_pending").inc()
            log.error(
                "Payment captured but ledger write failed",
                operation=operation,
                reservation_id=res.id,
                reference=reference,
                error=str(exc),
            )
            try:
                self.store.mark_ledger_pending(res.id, version, reference)
            except (ParkingError, sqlite3.Error) as mark_exc:
                log.error("Could not record ledger-pending marker", reservation_id=res.id,
                          reference=reference, error=str(mark_exc))
            error = exc if isinstance(exc, ParkingError) else ConflictError(str(exc))
            return TransactionResult(
                ok=False, operation=operation, reservation=self.store.get_reservation(res.id),
                error=error, payment_reference=reference, ledger_pending=True,
            )
        return None

    def _release(self, res: Reservation, version: int) -> None:
        try:
            self.store.release(res.id, version)
        except ConflictError:
            log.warning("Claim already released", reservation_id=res.id, version=version)

    def _notify(self, res: Reservation, event: str, message: str) -> None:
        try:
            self.notifier.notify(res.user_id, event, message, res.id)
        except Exception as exc:
            log.warning("Notification dispatch failed", reservation_id=res.id,
                        notification=event, error=str(exc))
