"""
calculation_engine/policies.py
Late-cancellation refund policies.

Cancelling at least FULL_REFUND_NOTICE_HOURS before the start always refunds
everything paid. Inside that notice period the portal only says a
cancellation "may be subject to a cancellation fee", so the share refunded is
a deployment decision: the policy is selected by configuration and recorded
in every refund snapshot so historical refunds replay with the policy that
was in force.
"""
from dataclasses import dataclass

from config.settings import settings
from domain.errors import ConfigurationError


@dataclass(frozen=True)
class LateCancellationPolicy:
    name: str
    refund_pct: float = 0.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.refund_pct <= 100.0:
            raise ConfigurationError(
                f"refund_pct must be within [0, 100], got {self.refund_pct}"
            )

    def __call__(self, amount_paid: float, hours_until_start: float) -> float:
        return amount_paid * (self.refund_pct / 100)


NO_REFUND = LateCancellationPolicy("no-refund", 0.0)


def percentage_policy(pct: float) -> LateCancellationPolicy:
    return LateCancellationPolicy("percentage", pct)


def build_policy(name: str, pct: float = 0.0) -> LateCancellationPolicy:
    """Resolve a policy from its configured (or snapshotted) name."""
    if name == "no-refund":
        return NO_REFUND
    if name == "percentage":
        return percentage_policy(pct)
    raise ConfigurationError(f"Unknown late-cancellation policy '{name}'")


def configured_policy() -> LateCancellationPolicy:
    return build_policy(settings.late_cancel_policy, settings.late_cancel_refund_pct)
