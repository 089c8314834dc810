from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum

DEFAULT_FIXED_DEPOSIT = Decimal("300")


class DepositModeEnum(StrEnum):
    FIXED = "fixed"
    PERCENT = "percent"


def _positive(value: Decimal | int | float | str | None) -> Decimal | None:
    if value is None:
        return None
    value = Decimal(str(value))
    if not value.is_finite() or value <= 0:
        return None
    return value


def _round_currency(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def calculate_deposit_amount(
    price: Decimal | None,
    mode: DepositModeEnum = DepositModeEnum.FIXED,
    fixed_amount: Decimal | None = DEFAULT_FIXED_DEPOSIT,
    percent: Decimal | None = None,
    cap: Decimal | None = None,
    minimum: Decimal | None = None,
) -> Decimal:
    """Deposit for a puppy at `price`.

    `fixed` charges `fixed_amount`, `percent` charges `price * percent` limited
    by `cap`. Either way the result is raised to `minimum` and never exceeds
    the price.
    """
    price = _positive(price)
    cap = _positive(cap)
    minimum = _positive(minimum)
    ratio = _positive(percent)
    fixed = _positive(fixed_amount) or DEFAULT_FIXED_DEPOSIT

    def clamp(amount: Decimal) -> Decimal:
        if minimum is not None:
            amount = max(amount, minimum)
        if price is not None:
            amount = min(amount, price)
        return _round_currency(amount)

    if mode == DepositModeEnum.PERCENT and price is not None and ratio is not None:
        amount = price * ratio
        if cap is not None:
            amount = min(amount, cap)
        return clamp(amount)

    return clamp(fixed)
