"""
domain/models.py
Shared value types used by the calculators, the lifecycle service, the
reconciler and the SQLite store. Kept in a separate module to avoid
circular imports.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from domain.errors import ConfigurationError, ValidationError
from monitoring import get_logger

log = get_logger(__name__)


class RateModel(str, Enum):
    HOURLY   = "Hourly"
    SEMESTER = "Semester"

    @classmethod
    def parse(cls, value: str) -> "RateModel":
        """Parse a lot's rate-model label. Unknown labels raise ConfigurationError."""
        label = (value or "").strip().lower()
        if label in ("hourly", "metered"):
            return cls.HOURLY
        if label in ("semester", "permit-based", "permit"):
            return cls.SEMESTER
        raise ConfigurationError(f"Unrecognised rate model '{value}'")


class ReservationStatus(str, Enum):
    PENDING   = "pending"
    UPCOMING  = "upcoming"
    ACTIVE    = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BillingKind(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"


# Free reasons
FREE_WEEKEND        = "weekend"
FREE_OUTSIDE_WINDOW = "outside billable window"
FREE_SEMESTER       = "semester-rate"

# Extension reasons
EXT_SEMESTER      = "semester-rate"
EXT_PERMIT_EVENING = "free-after-4pm-with-permit"
EXT_AFTER_7PM     = "free-after-7pm"
EXT_METERED_FEE   = "metered-extension-fee"
EXT_STANDARD      = "standard-extension"


def money(amount: float) -> float:
    return round(amount + 0.0, 2)


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime

    @property
    def hours(self) -> float:
        return (self.end - self.start).total_seconds() / 3600


@dataclass(frozen=True)
class RateProfile:
    """Normalised pricing facts of a lot, snapshotted per reservation."""
    rate_model: RateModel
    hourly_rate: float = 0.0
    is_metered: bool = False
    semester_rate: float = 0.0
    is_ev: bool = False
    ev_charging_rate: Optional[float] = None

    def __post_init__(self) -> None:
        for name in ("hourly_rate", "semester_rate", "ev_charging_rate"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationError(f"{name} must be >= 0, got {value}")

    @property
    def effective_hourly_rate(self) -> float:
        if self.is_ev and self.ev_charging_rate is not None:
            return self.ev_charging_rate
        return self.hourly_rate

    @classmethod
    def from_lot(cls, lot: dict) -> "RateProfile":
        """
        Build a profile from a lot row. A bad rate-model label must not block
        a booking, so it is logged and treated as Hourly.
        """
        try:
            model = RateModel.parse(lot.get("rate_model", ""))
        except ConfigurationError as exc:
            log.warning(
                "Lot has unrecognised rate model, treating as Hourly",
                lot_id=lot.get("id"),
                error=str(exc),
            )
            model = RateModel.HOURLY
        ev_rate = lot.get("ev_charging_rate")
        return cls(
            rate_model=model,
            hourly_rate=float(lot.get("hourly_rate") or 0.0),
            is_metered=bool(lot.get("is_metered")),
            semester_rate=float(lot.get("semester_rate") or 0.0),
            is_ev=bool(lot.get("is_ev")),
            ev_charging_rate=float(ev_rate) if ev_rate is not None else None,
        )


@dataclass
class Reservation:
    id: str
    lot_id: str
    user_id: str
    start_time: datetime
    end_time: datetime
    rate_profile: RateProfile
    status: ReservationStatus = ReservationStatus.PENDING
    original_amount: float = 0.0
    current_amount: float = 0.0
    is_free_reservation: bool = False
    free_reason: Optional[str] = None
    version: int = 0
    payment_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    pending_reference: Optional[str] = None

    def __post_init__(self) -> None:
        if self.end_time <= self.start_time:
            raise ValidationError("non-positive duration")
        if self.current_amount < 0:
            raise ValidationError("current_amount cannot be negative")

    @property
    def interval(self) -> Interval:
        return Interval(self.start_time, self.end_time)


@dataclass(frozen=True)
class Permit:
    id: str
    user_id: str
    start_date: datetime
    end_date: datetime
    status: str = "active"   # active | expired | pending

    def is_active_at(self, at: datetime) -> bool:
        return self.status == "active" and self.start_date <= at <= self.end_date


@dataclass(frozen=True)
class ExtensionRecord:
    reservation_id: str
    requested_at: datetime
    additional_hours: float
    previous_end_time: datetime
    new_end_time: datetime
    fee: float
    reason: str
    payment_reference: Optional[str] = None


# ── Ledger snapshot (stored as JSON on each billing entry) ─────────────────────

class RawSnapshot(BaseModel):
    """
    Everything needed to recompute a billing entry's amount without touching
    live lot or reservation rows.
    """
    source: str = Field(description="booking | extension | cancellation")

    # Rate facts at transaction time
    rate_model: str
    hourly_rate: float = 0.0
    is_metered: bool = False
    semester_rate: float = 0.0
    is_ev: bool = False
    ev_charging_rate: Optional[float] = None

    # Reservation interval at transaction time
    start_time: datetime
    end_time: datetime
    billing_day_mode: str = "start-day"
    free_reason: Optional[str] = None

    # Extension facts
    requested_at: Optional[datetime] = None
    additional_hours: Optional[float] = None
    has_active_permit: Optional[bool] = None
    extension_surcharge: Optional[float] = None

    # Cancellation facts
    cancelled_at: Optional[datetime] = None
    amount_paid: Optional[float] = None
    extension_fees_paid: Optional[float] = None
    policy_name: Optional[str] = None
    policy_refund_pct: Optional[float] = None
    full_refund_notice_hours: Optional[float] = None

    @classmethod
    def capture(cls, source: str, profile: RateProfile, interval: Interval, **extra) -> "RawSnapshot":
        return cls(
            source=source,
            rate_model=profile.rate_model.value,
            hourly_rate=profile.hourly_rate,
            is_metered=profile.is_metered,
            semester_rate=profile.semester_rate,
            is_ev=profile.is_ev,
            ev_charging_rate=profile.ev_charging_rate,
            start_time=interval.start,
            end_time=interval.end,
            **extra,
        )

    def rate_profile(self) -> RateProfile:
        return RateProfile(
            rate_model=RateModel.parse(self.rate_model),
            hourly_rate=self.hourly_rate,
            is_metered=self.is_metered,
            semester_rate=self.semester_rate,
            is_ev=self.is_ev,
            ev_charging_rate=self.ev_charging_rate,
        )

    def interval(self) -> Interval:
        return Interval(self.start_time, self.end_time)


@dataclass(frozen=True)
class BillingEntry:
    id: str
    reservation_id: str
    kind: BillingKind
    stored_amount: float
    raw_snapshot: RawSnapshot
    date: datetime
    payment_reference: Optional[str] = None


# ── Booking input ─────────────────────────────────────────────────────────────

class BookingRequest(BaseModel):
    """Input handed over by the HTTP layer once it has resolved user and lot."""
    user_id:    str      = Field(..., min_length=1)
    lot_id:     str      = Field(..., min_length=1)
    start_time: datetime
    end_time:   datetime

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


@dataclass
class LedgerTotals:
    charged: float = 0.0
    refunded: float = 0.0
    entries: list[BillingEntry] = field(default_factory=list)

    @property
    def amount_paid(self) -> float:
        return money(max(0.0, self.charged - self.refunded))
