"""
Call cost calculation and recording duration recovery.
"""

from callbilling.billing.cost import (
    COST_QUANTUM,
    CostCalculator,
    CostResult,
    calculate_cost,
    estimate_remaining_minutes,
)

__all__ = [
    "COST_QUANTUM",
    "CostCalculator",
    "CostResult",
    "calculate_cost",
    "estimate_remaining_minutes",
]
