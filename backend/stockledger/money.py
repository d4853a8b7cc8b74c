"""
Integer money helpers.

All amounts are minor units (paise/cents). Rates are basis points
(100 bps = 1%). Rounding is half-up to the nearest minor unit.
"""
from __future__ import annotations

BPS_DENOMINATOR = 10_000


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounding half-up (non-negative operands)."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    return (numerator + (denominator // 2)) // denominator


def apply_bps(amount_cents: int, rate_bps: int) -> int:
    """Return `amount_cents * rate_bps / 10000`, rounded half-up."""
    return round_half_up_div(amount_cents * rate_bps, BPS_DENOMINATOR)


def apply_percent(amount_cents: int, percent: int) -> int:
    """Return `amount_cents * percent / 100`, rounded half-up."""
    return round_half_up_div(amount_cents * percent, 100)

