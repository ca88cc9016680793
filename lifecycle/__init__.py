"""lifecycle package"""
from .collaborators import (
    ChargeResult, LogNotifier, LotDirectory, Notifier, PaymentGateway,
    PermitDirectory, RefundResult,
)
from .service import ReservationService, TransactionResult
from .state_machine import LEGAL_ACTIONS, ReservationLifecycle, derive_status
__all__ = [
    "ChargeResult","LogNotifier","LotDirectory","Notifier","PaymentGateway",
    "PermitDirectory","RefundResult",
    "ReservationService","TransactionResult",
    "LEGAL_ACTIONS","ReservationLifecycle","derive_status",
]
