"""
OCC (Options Clearing Corporation) symbol utilities

Canonical symbols follow the format ROOT + YYMMDD + C/P + STRIKE, where the
strike is the dollar price multiplied by 1000 and zero-padded to 8 digits.

    AAPL230120C00150000  ->  AAPL $150 call expiring 2023-01-20

The canonical form used throughout the package is the compact one (no root
padding). The padded 21-character form is accepted on input and can be
produced with ``padded=True``.
"""

import math
import re
from datetime import date, datetime
from typing import Iterable, List, Sequence, Union

from optionflow.realtime.types import OptionType, ParsedOptionSymbol
from optionflow.utils.constants import (
    OCC_ROOT_WIDTH,
    OCC_DATE_LENGTH,
    OCC_STRIKE_DIGITS,
    OCC_STRIKE_SCALE,
    OPTION_ROOT_TO_UNDERLYING,
)
from optionflow.utils.error_handler import SymbolError

_TAIL_PATTERN = re.compile(r'([CP])(\d{8})$')
_CANONICAL_PATTERN = re.compile(r'^([A-Z0-9]{1,6})(\d{6})([CP])(\d{8})$')
_OPTION_HINT_PATTERN = re.compile(r'\d{6}[CP]\d{8}$')

DateLike = Union[date, datetime, str]


def _coerce_date(expiration: DateLike) -> date:
    if isinstance(expiration, datetime):
        return expiration.date()
    if isinstance(expiration, date):
        return expiration
    try:
        return datetime.strptime(expiration.strip()[:10], '%Y-%m-%d').date()
    except (AttributeError, ValueError) as exc:
        raise SymbolError(f"Invalid expiration date: {expiration!r}") from exc


def _coerce_option_type(option_type: Union[OptionType, str]) -> OptionType:
    if isinstance(option_type, OptionType):
        return option_type
    try:
        return OptionType.from_flag(option_type)
    except ValueError as exc:
        raise SymbolError(str(exc)) from exc


def format_expiration(expiration: DateLike) -> str:
    """Render an expiration as YYMMDD"""
    return _coerce_date(expiration).strftime('%y%m%d')


def scale_strike(strike: float) -> int:
    """Dollar strike -> OCC integer strike (x1000)"""
    scaled = int(round(strike * OCC_STRIKE_SCALE))
    if scaled < 0 or scaled >= 10 ** OCC_STRIKE_DIGITS:
        raise SymbolError(f"Strike out of range for OCC encoding: {strike}")
    return scaled


def build_occ_symbol(root: str,
                     expiration: DateLike,
                     option_type: Union[OptionType, str],
                     strike: float,
                     padded: bool = False) -> str:
    """
    Build an OCC option symbol.

    Example:
        >>> build_occ_symbol('AAPL', '2023-01-20', 'call', 150)
        'AAPL230120C00150000'
        >>> build_occ_symbol('QQQ', '2024-03-15', OptionType.PUT, 425.5, padded=True)
        'QQQ   240315P00425500'
    """
    root = root.strip().upper()
    if not root:
        raise SymbolError("Option root must not be empty")
    if padded:
        root = root.ljust(OCC_ROOT_WIDTH)
    flag = _coerce_option_type(option_type).flag
    return f"{root}{format_expiration(expiration)}{flag}{scale_strike(strike):0{OCC_STRIKE_DIGITS}d}"


def parse_occ_symbol(symbol: str) -> ParsedOptionSymbol:
    """
    Parse a compact or padded OCC symbol.

    Raises:
        SymbolError: if the symbol is not a valid OCC symbol
    """
    if not isinstance(symbol, str):
        raise SymbolError(f"Invalid OCC symbol: {symbol!r}")

    text = symbol.strip()
    match = _TAIL_PATTERN.search(text)
    if not match:
        raise SymbolError(f"Invalid OCC symbol format: {symbol!r}")

    prefix = text[:-(1 + OCC_STRIKE_DIGITS)]
    if len(prefix) < OCC_DATE_LENGTH:
        raise SymbolError(f"Invalid OCC symbol format: {symbol!r}")

    date_part = prefix[-OCC_DATE_LENGTH:]
    root = prefix[:-OCC_DATE_LENGTH].strip()
    if not root:
        raise SymbolError(f"Invalid OCC symbol: no root in {symbol!r}")
    if not date_part.isdigit():
        raise SymbolError(f"Invalid date in OCC symbol: {date_part!r}")

    try:
        expiration = datetime.strptime(date_part, '%y%m%d').date()
    except ValueError as exc:
        raise SymbolError(f"Invalid date in OCC symbol: {date_part!r}") from exc

    return ParsedOptionSymbol(
        root=root.upper(),
        expiration=expiration,
        option_type=OptionType.from_flag(match.group(1)),
        strike=int(match.group(2)) / OCC_STRIKE_SCALE,
    )


def normalize_occ_symbol(symbol: str) -> str:
    """Strip incidental whitespace; canonical symbols pass through unchanged"""
    return re.sub(r'\s+', '', symbol).upper()


def is_option_symbol(symbol: str) -> bool:
    """True when the symbol looks like an OCC option symbol (padded or not)"""
    if not isinstance(symbol, str):
        return False
    return bool(_OPTION_HINT_PATTERN.search(normalize_occ_symbol(symbol)))


def is_canonical_symbol(symbol: str) -> bool:
    return bool(_CANONICAL_PATTERN.match(symbol))


def underlying_for_root(root: str) -> str:
    """Map an option root to its underlying ticker (SPXW -> SPX)"""
    return OPTION_ROOT_TO_UNDERLYING.get(root.upper(), root.upper())


# =============================================================================
# STRIKE LADDERS
# =============================================================================

def generate_strikes_around_spot(spot: float,
                                 strikes_above: int = 10,
                                 strikes_below: int = 10,
                                 strike_increment: float = 1.0) -> List[float]:
    """
    Strikes centered on the nearest increment at or below spot, ascending.

    Example:
        >>> generate_strikes_around_spot(450.25, 2, 2, 5)
        [440.0, 445.0, 450.0, 455.0, 460.0]
    """
    if strike_increment <= 0:
        raise ValueError("strike_increment must be positive")
    base = math.floor(spot / strike_increment) * strike_increment
    ladder = [base + i * strike_increment for i in range(-strikes_below, strikes_above + 1)]
    # Keep binary float noise out of the OCC strike digits
    return [round(strike, 3) for strike in ladder]


def generate_occ_symbols_for_strikes(root: str,
                                     expiration: DateLike,
                                     strikes: Iterable[float],
                                     include_types: Sequence[Union[OptionType, str]] = (OptionType.CALL, OptionType.PUT)
                                     ) -> List[str]:
    """OCC symbols for every (strike, type) pair, strike-major order"""
    return [
        build_occ_symbol(root, expiration, option_type, strike)
        for strike in strikes
        for option_type in include_types
    ]


def generate_occ_symbols_around_spot(root: str,
                                     expiration: DateLike,
                                     spot: float,
                                     strikes_above: int = 10,
                                     strikes_below: int = 10,
                                     strike_increment: float = 1.0) -> List[str]:
    """Calls and puts for the strike ladder around ``spot``"""
    strikes = generate_strikes_around_spot(spot, strikes_above, strikes_below, strike_increment)
    return generate_occ_symbols_for_strikes(root, expiration, strikes)
