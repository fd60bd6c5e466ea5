# inventory_core/utils/decimals.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def D(v, default: str = "0") -> Decimal:
    try:
        if v is None:
            return Decimal(default)
        d = v if isinstance(v, Decimal) else Decimal(str(v).strip())
    except (InvalidOperation, ValueError, TypeError):
        return Decimal(default)
    # NaN and Infinity never compare or quantize cleanly
    return d if d.is_finite() else Decimal(default)


def money2(v) -> Decimal:
    return D(v).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def cost4(v) -> Decimal:
    return D(v).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def qty4(v) -> Decimal:
    return D(v).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def pct_of(base, percent) -> Decimal:
    return money2(D(base) * D(percent) / HUNDRED)
