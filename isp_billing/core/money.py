from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

MONEY_QUANT = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")

MoneyLike = Decimal | int | float | str


def to_money(value: MoneyLike) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[MoneyLike]) -> Decimal:
    total = ZERO_MONEY
    for value in values:
        total += to_money(value)
    return to_money(total)
