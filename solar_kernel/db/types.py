"""
Module: solar_kernel.db.types
Responsibility: Decimal conversion, money/energy rounding and the status
    column type shared by every model and service.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    and services/.  MUST NOT import from any of those layers.

Invariants enforced:
    - round_money() is the ONLY sanctioned rounding function for monetary
      values.  Amounts are rounded once, where they are computed.
    - No floats anywhere in the kernel.  Money and energy use Decimal.

Failure modes:
    - decimal.InvalidOperation on non-numeric input to to_decimal().
"""

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from sqlalchemy import Enum as SAEnum

MONEY_DECIMAL_PLACES = 2
ENERGY_DECIMAL_PLACES = 3
DEFAULT_ROUNDING = ROUND_HALF_UP


def to_decimal(value: Any) -> Decimal:
    """
    Convert an int, str or Decimal to Decimal.

    Floats go through ``str()`` so that 0.1 becomes Decimal("0.1") rather
    than its binary expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to ``decimal_places`` (default 2, half-up).

    This is the ONLY sanctioned rounding function for monetary values.
    """
    quantizer = Decimal(10) ** -decimal_places
    return value.quantize(quantizer, rounding=rounding)


def status_column_type(enum_cls: type[Enum]) -> SAEnum:
    """
    Column type for a str-valued Enum stored as VARCHAR.

    Stores the enum *value* ("open"), not the member name, so raw SQL and
    reports read naturally.  No native database enum is created.
    """
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
