# storefront/utils/money.py

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

Money = Decimal
ZERO = Decimal("0")


def D(x) -> Money:
    if isinstance(x, Decimal):
        return x
    if isinstance(x, bool):
        raise ValueError("boolean is not a money amount")
    try:
        return Decimal(str(x if x is not None else "0"))
    except InvalidOperation as e:
        raise ValueError(f"invalid amount: {x!r}") from e


def round_money(x: Money) -> Money:
    return D(x).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_float(x) -> float:
    return float(round_money(x))
