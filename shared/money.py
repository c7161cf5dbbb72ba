"""
Денежная арифметика в nano-единицах (1 TON = 10^9 nano)

Только целые числа. float на денежных путях запрещён.
"""
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

from shared.config import NANO_PER_UNIT
from shared.errors import ValidationError


def to_nano(value: Union[str, int, Decimal]) -> int:
    """
    Перевести сумму в отображаемых единицах в nano

    Дробная часть сверх 9 знаков отбрасывается (в сторону нуля).
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError("Amount must be a string, int or Decimal")
    try:
        amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return int((amount * NANO_PER_UNIT).to_integral_value(rounding=ROUND_DOWN))


def format_units(nano: int, places: int = 2) -> str:
    """Строка для отображения: 1500000000 -> '1.50'"""
    quant = Decimal(1).scaleb(-places)
    return str((Decimal(nano) / NANO_PER_UNIT).quantize(quant, rounding=ROUND_DOWN))


def apply_rate(amount: int, numerator: int, denominator: int) -> int:
    """
    floor(amount * numerator / denominator) в целых числах

    Округление всегда в пользу платформы.
    """
    if amount < 0:
        raise ValueError("apply_rate expects a non-negative amount")
    return (amount * numerator) // denominator


def cents_to_nano(cents: int, usd_rate: Union[str, Decimal]) -> int:
    """Перевести центы USD в nano TON по курсу usd_rate (USD за 1 TON)"""
    rate = Decimal(str(usd_rate))
    if rate <= 0:
        raise ValidationError("USD rate must be positive")
    units = Decimal(cents) / Decimal(100) / rate
    return int((units * NANO_PER_UNIT).to_integral_value(rounding=ROUND_DOWN))
