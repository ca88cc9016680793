"""
lifecycle/collaborators.py
Contracts of the external systems the lifecycle service depends on.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from domain.models import RateProfile
from monitoring import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    succeeded: bool
    reference: Optional[str] = None
    message: str = ""


@dataclass(frozen=True)
class RefundResult:
    succeeded: bool
    reference: Optional[str] = None
    message: str = ""


class LotDirectory(Protocol):
    def get_rate_profile(self, lot_id: str) -> RateProfile: ...


class PermitDirectory(Protocol):
    def has_active_permit(self, user_id: str, at: datetime) -> bool: ...


class PaymentGateway(Protocol):
    """Card tokenisation provider. Both calls may decline or hang."""

    async def charge(self, amount: float, payment_method: str) -> ChargeResult: ...

    async def refund(self, charge_reference: str, amount: float) -> RefundResult: ...


class Notifier(Protocol):
    def notify(self, user_id: str, event: str, message: str, reservation_id: str) -> None: ...


class LogNotifier:
    """Default dispatcher: writes the notification to the structured log."""

    def notify(self, user_id: str, event: str, message: str, reservation_id: str) -> None:
        log.info("Notification", user_id=user_id, notification=event,
                 reservation_id=reservation_id, message=message)
