"""
Compounding Module

Annual-equivalent-rate compounding over an inclusive day span, and the
floor-to-cents rounding used for every accrual amount that leaves the engine.

The day count is a fixed 365-day year with no leap-year convention.
"""

from decimal import Decimal, ROUND_FLOOR, getcontext
from datetime import date

# Set global decimal context for financial precision
getcontext().prec = 28

DAYS_IN_YEAR = 365
CENT = Decimal('0.01')


def inclusive_days(start: date, end: date) -> int:
    """Number of days from start to end, counting both ends"""
    return (end - start).days + 1


def compound(rate: Decimal, start: date, end: date, starting_value: Decimal) -> Decimal:
    """
    Compound starting_value at the annual equivalent rate over start..end.
    
    A span of exactly one year multiplies by (1 + rate) directly so that a full
    year lands on the exact annual figure rather than a fractional-power
    approximation of it.
    """
    days = inclusive_days(start, end)
    growth = Decimal('1') + rate
    if days == DAYS_IN_YEAR:
        return starting_value * growth
    return starting_value * growth ** (Decimal(days) / Decimal(DAYS_IN_YEAR))


def compound_residual(rate: Decimal, start: date, end: date,
                      principal: Decimal, starting_residual: Decimal) -> Decimal:
    """Interest residual at end when principal plus residual compounds from start"""
    return compound(rate, start, end, principal + starting_residual) - principal


def round_down_to_cents(amount: Decimal) -> Decimal:
    """Floor to 2 decimal places; never rounds up"""
    return amount.quantize(CENT, rounding=ROUND_FLOOR)
