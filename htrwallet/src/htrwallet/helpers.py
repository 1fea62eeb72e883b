"""
Display helpers.

The engine only handles integer amounts in base units; pretty_value shows them
with DECIMAL_PLACES decimals.
"""

from __future__ import annotations

from htrwallet.constants import DECIMAL_PLACES


def pretty_value(value: int) -> str:
    """Format base units, e.g. 123456 -> '1,234.56'"""
    sign = "-" if value < 0 else ""
    integer, fraction = divmod(abs(value), 10**DECIMAL_PLACES)
    return f"{sign}{integer:,}.{fraction:0{DECIMAL_PLACES}d}"


def plural(count: int, singular: str, plural_form: str) -> str:
    return singular if count == 1 else plural_form
