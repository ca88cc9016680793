"""calculation_engine package"""
from .calculators import (
    CancellationRefundCalculator, ExtensionQuote, ExtensionRuleEngine,
    PriceCalculator, PriceQuote, RefundQuote,
)
from .policies import LateCancellationPolicy, NO_REFUND, build_policy, percentage_policy
from .reconciler import BillingReconciler, DisplayLine
__all__ = [
    "CancellationRefundCalculator","ExtensionQuote","ExtensionRuleEngine",
    "PriceCalculator","PriceQuote","RefundQuote",
    "LateCancellationPolicy","NO_REFUND","build_policy","percentage_policy",
    "BillingReconciler","DisplayLine",
]
