"""
lifecycle/state_machine.py
Reservation status derivation and action legality.

State diagram:

    ┌─────────┐ confirm ┌──────────┐  now>=start ┌────────┐  now>=end ┌───────────┐
    │ PENDING │────────▶│ UPCOMING │────────────▶│ ACTIVE │──────────▶│ COMPLETED │
    └────┬────┘         └────┬─────┘             └───┬────┘           └───────────┘
         │ cancel            │ cancel                │ cancel
         └───────────────────┴───────────────────────┴──────────▶ CANCELLED

Only PENDING → UPCOMING and → CANCELLED are stored transitions. UPCOMING,
ACTIVE and COMPLETED are recomputed from the clock on every read; a stored
CANCELLED or COMPLETED is terminal and wins over the clock.
"""
from datetime import datetime
from typing import Optional

from domain.clock import ClockSource, SystemClock
from domain.errors import InvalidStateError
from domain.models import Reservation, ReservationStatus

CONFIRM = "confirm"
EXTEND  = "extend"
CANCEL  = "cancel"

LEGAL_ACTIONS: dict[ReservationStatus, frozenset[str]] = {
    ReservationStatus.PENDING:   frozenset({CONFIRM, CANCEL}),
    ReservationStatus.UPCOMING:  frozenset({EXTEND, CANCEL}),
    ReservationStatus.ACTIVE:    frozenset({EXTEND, CANCEL}),
    ReservationStatus.COMPLETED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
}

_TERMINAL = (ReservationStatus.CANCELLED, ReservationStatus.COMPLETED)


def derive_status(reservation: Reservation, now: datetime) -> ReservationStatus:
    stored = reservation.status
    if stored in _TERMINAL:
        return stored
    if now >= reservation.end_time:
        return ReservationStatus.COMPLETED
    if stored == ReservationStatus.PENDING:
        return ReservationStatus.PENDING
    if now < reservation.start_time:
        return ReservationStatus.UPCOMING
    return ReservationStatus.ACTIVE


class ReservationLifecycle:

    def __init__(self, clock: Optional[ClockSource] = None) -> None:
        self.clock = clock or SystemClock()

    def status(self, reservation: Reservation) -> ReservationStatus:
        return derive_status(reservation, self.clock.now())

    def can(self, reservation: Reservation, action: str) -> bool:
        return action in LEGAL_ACTIONS[self.status(reservation)]

    def ensure(self, reservation: Reservation, action: str) -> ReservationStatus:
        """Return the current status, or raise InvalidStateError if ``action`` is illegal."""
        status = self.status(reservation)
        if action not in LEGAL_ACTIONS[status]:
            raise InvalidStateError(
                f"Cannot {action} reservation {reservation.id} in state '{status.value}'"
            )
        return status
