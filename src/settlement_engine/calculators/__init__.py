"""Fee calculation."""

from settlement_engine.calculators.fees import FeeBreakdown, FeeCalculator, calculate_fees

__all__ = [
    "FeeBreakdown",
    "FeeCalculator",
    "calculate_fees",
]
