"""
Helper utilities for the options streaming layer

Numeric coercion for loosely-typed wire values and timestamp conversion.
"""

import time
from datetime import date, datetime
from typing import Any, Optional, Union

import numpy as np
import pandas as pd

from .constants import MILLISECONDS_PER_SECOND


# =============================================================================
# NUMERIC UTILITIES
# =============================================================================

def to_number(value: Any, default: float = 0.0) -> float:
    """
    Coerce a wire value to a finite float

    Strings are parsed, ``None``/NaN/unparseable values yield ``default``.

    Example:
        >>> to_number("10.25")
        10.25
        >>> to_number(None)
        0.0
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return default
        # IBKR prefixes some prices with C (close) or H (halted)
        if value[0] in 'CH' and len(value) > 1:
            value = value[1:]
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if np.isfinite(number) else default


def optional_number(value: Any) -> Optional[float]:
    """Like ``to_number`` but keeps absence distinguishable: missing -> None"""
    if value is None:
        return None
    number = to_number(value, default=float('nan'))
    return None if np.isnan(number) else number


def positive_or_none(value: Any) -> Optional[float]:
    """Return the value when strictly positive, else None"""
    number = optional_number(value)
    if number is None or number <= 0:
        return None
    return number


# =============================================================================
# TIMING UTILITIES
# =============================================================================

def now_ms() -> int:
    """Current wall clock time in epoch milliseconds"""
    return int(time.time() * MILLISECONDS_PER_SECOND)


def timestamp_to_ms(value: Union[str, int, float, datetime, None]) -> int:
    """
    Convert a venue timestamp to epoch milliseconds

    Accepts epoch milliseconds, ISO-8601 strings and datetimes. Missing or
    unparseable values fall back to the current time.
    """
    if value is None or value == '':
        return now_ms()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    if isinstance(value, str) and value.isdigit():
        return int(value)
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError):
        return now_ms()
    if ts is pd.NaT:
        return now_ms()
    if ts.tzinfo is None:
        ts = ts.tz_localize('UTC')
    return int(ts.value // 1_000_000)


def date_to_ms(day: date) -> int:
    """Epoch milliseconds of midnight UTC on ``day``"""
    return int(pd.Timestamp(day.year, day.month, day.day, tz='UTC').value // 1_000_000)
