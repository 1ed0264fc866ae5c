from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Sequence

QTY_STEP = Decimal("0.001")
MONEY_STEP = Decimal("0.01")
ZERO = Decimal("0")


def to_qty(value) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value)).quantize(QTY_STEP, rounding=ROUND_HALF_UP)


def to_money(value) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value)).quantize(MONEY_STEP, rounding=ROUND_HALF_UP)


def apportion(total: Decimal, weights: Sequence[Decimal]) -> list[Decimal]:
    """
    Split ``total`` pro-rata to ``weights``.

    Each share but the last is rounded DOWN to the quantity step; the last one
    takes the remainder, so ``sum(result) == total`` exactly and no share is
    negative for a non-negative total. All-zero weights split evenly.
    """
    n = len(weights)
    if n == 0:
        return []

    weights = [Decimal(w) for w in weights]
    weight_sum = sum(weights, ZERO)
    if weight_sum <= 0:
        weights = [Decimal(1)] * n
        weight_sum = Decimal(n)

    shares = [(total * w / weight_sum).quantize(QTY_STEP, rounding=ROUND_DOWN) for w in weights[:-1]]
    shares.append(total - sum(shares, ZERO))
    return shares
