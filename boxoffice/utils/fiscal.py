"""
Fiscal formatting helpers (SIAE conventions).
Dates as AAAAMMGG, times as HHMM, amounts in centesimi.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal('0.01')


def to_money(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """Coerce a price to a 2-decimal Decimal (None -> 0.00)."""
    if value is None:
        return Decimal('0.00')
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_centesimi(value) -> int:
    """Convert euros to integer centesimi (20.00 -> 2000)."""
    return int(to_money(value) * 100)


def format_emission_date(dt: datetime) -> str:
    """Format the emission date as YYYYMMDD."""
    return dt.strftime('%Y%m%d')


def format_emission_time(dt: datetime) -> str:
    """Format the emission time as HHMM."""
    return dt.strftime('%H%M')


def normalize_sector_code(code: str) -> str:
    """Sector codes are stored upper case, without surrounding spaces."""
    return (code or '').strip().upper()
