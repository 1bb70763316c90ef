"""
Safe number formatting helpers shared by the weighing API and label text.
"""

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Any


def format_fixed(value: Any, digits: int = 3) -> str:
    """
    Format a number with a fixed number of decimals.

    Returns '-' for anything that is not a finite number. Values that round
    to zero are printed without a sign (no '-0.000').
    """
    try:
        number = value if isinstance(value, (int, float)) and not isinstance(value, bool) else float(str(value))
    except (TypeError, ValueError):
        return "-"
    if not math.isfinite(number):
        return "-"
    if abs(number) < 1e-12:
        number = 0.0

    quantum = Decimal(10) ** -digits
    rounded = Decimal(str(number)).quantize(quantum, rounding=ROUND_HALF_UP)
    if rounded == 0:
        rounded = abs(rounded)
    return f"{rounded:.{digits}f}"


def parse_numeric(value: Any, default: float = 0.0) -> float:
    """
    Parse a number from a float, int or string.

    A decimal comma is accepted ("12,5" → 12.5). Returns default when the
    value cannot be parsed or is not finite.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else default

    text = str(value if value is not None else "").strip().replace(",", ".", 1)
    try:
        number = float(text)
    except ValueError:
        return default
    return number if math.isfinite(number) else default
