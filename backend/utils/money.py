from decimal import Decimal, ROUND_HALF_UP

from config.constants import DEFAULT_CURRENCY
from utils.errors import ValidationError


def ensure_minor_units(value, name: str = "amount", *, allow_zero: bool = True) -> int:
    """
    Reject anything that is not a non-negative int.
    Floats never enter money paths, even whole ones.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer amount in minor units")
    if value < 0:
        raise ValidationError(f"{name} cannot be negative")
    if value == 0 and not allow_zero:
        raise ValidationError(f"{name} must be greater than zero")
    return value


def percentage_of(amount: int, percent) -> int:
    exact = Decimal(amount) * Decimal(str(percent)) / Decimal(100)
    return int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount: int, currency: str = DEFAULT_CURRENCY) -> str:
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), 100)
    return f"{sign}{currency} {major:,}.{minor:02d}"
