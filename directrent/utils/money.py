"""
Money helpers. All amounts inside the engine are integer pesewas
(1 GH₵ = 100 pesewas); rates are basis points (1% = 100 bps).
"""
from decimal import Decimal, InvalidOperation
from typing import Union

PESEWAS_PER_CEDI = 100
BPS_DENOMINATOR = 10_000


def to_pesewas(amount: Union[str, int, Decimal]) -> int:
    """
    Convert a cedi amount ("150", "150.5", Decimal("12.34")) to pesewas.

    Floats are rejected: they are how drift gets in.
    Sub-pesewa precision is rejected rather than silently rounded.
    """
    if isinstance(amount, bool) or isinstance(amount, float):
        raise ValueError(f"Amount must be str, int or Decimal, got {type(amount).__name__}")
    try:
        value = Decimal(str(amount).replace(',', '').strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")

    minor = value * PESEWAS_PER_CEDI
    if minor != minor.to_integral_value():
        raise ValueError(f"Amount {amount} has more than 2 decimal places")
    return int(minor)


def format_amount(pesewas: int) -> str:
    """150_00 -> '150.00'"""
    sign = "-" if pesewas < 0 else ""
    whole, frac = divmod(abs(pesewas), PESEWAS_PER_CEDI)
    return f"{sign}{whole}.{frac:02d}"


def format_cedis(pesewas: int) -> str:
    return f"GH₵{format_amount(pesewas)}"


def percent_of(amount: int, rate_bps: int) -> int:
    """amount * rate, round-half-up to the nearest pesewa. amount and rate must be >= 0."""
    if amount < 0 or rate_bps < 0:
        raise ValueError("percent_of expects non-negative amount and rate")
    return (amount * rate_bps + BPS_DENOMINATOR // 2) // BPS_DENOMINATOR
