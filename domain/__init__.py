"""domain package"""
from .clock import ClockSource, FixedClock, SystemClock
from .errors import (
    ConfigurationError,
    ConflictError,
    InvalidStateError,
    ParkingError,
    PaymentFailure,
    ValidationError,
)
from .models import (
    BillingEntry, BillingKind, BookingRequest, ExtensionRecord, Interval,
    LedgerTotals, Permit, RateModel, RateProfile, RawSnapshot, Reservation,
    ReservationStatus,
)

__all__ = [
    "ClockSource", "FixedClock", "SystemClock",
    "ParkingError", "ValidationError", "InvalidStateError", "ConflictError",
    "PaymentFailure", "ConfigurationError",
    "BillingEntry", "BillingKind", "BookingRequest", "ExtensionRecord", "Interval",
    "LedgerTotals", "Permit", "RateModel", "RateProfile", "RawSnapshot",
    "Reservation", "ReservationStatus",
]
