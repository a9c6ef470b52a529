from __future__ import annotations


def round_lot(value: float, decimals: int = 2) -> float:
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    return round(value, decimals)


def split_lot(total_lot: float, *, min_lot: float, decimals: int = 2) -> float | None:
    """Per-leg lot for a two-leg pair, or None when a leg would fall below ``min_lot``."""
    if total_lot <= 0:
        return None
    per_leg = round_lot(total_lot / 2.0, decimals)
    if per_leg < min_lot:
        return None
    return per_leg
