"""
Symbol Translator

Bidirectional mapping between the canonical option symbol (compact OCC) and
each venue's native option symbol:

    venue          native form                canonical
    -------------  -------------------------  --------------------
    ibkr           SPY240119C00500000         SPY240119C00500000
    tradier        SPY240119C00500000         SPY240119C00500000
    schwab         SPY   240119C00500000      SPY240119C00500000
    tastytrade     .SPY240119C500             SPY240119C00500000
    tradestation   SPY 240119C500             SPY240119C00500000

Every translator accepts incidental whitespace and already-canonical input,
and ``to_canonical(to_native(s)) == s`` holds for every canonical ``s``.
Equity symbols are not translated; callers check ``is_option`` first.
"""

import re
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from optionflow.realtime.types import Venue
from optionflow.utils.constants import OCC_ROOT_WIDTH, OCC_STRIKE_DIGITS, OCC_STRIKE_SCALE
from optionflow.utils.error_handler import SymbolError
from .occ import is_option_symbol, normalize_occ_symbol, parse_occ_symbol

_SCALE = Decimal(OCC_STRIKE_SCALE)


def format_unscaled_strike(scaled: int) -> str:
    """OCC integer strike -> shortest exact dollar string (305000 -> '305')"""
    value = (Decimal(scaled) / _SCALE).normalize()
    return format(value, 'f')


def parse_unscaled_strike(text: str) -> int:
    """Dollar strike string -> OCC integer strike ('4.5' -> 4500)"""
    try:
        scaled = Decimal(text) * _SCALE
    except InvalidOperation as exc:
        raise SymbolError(f"Invalid strike: {text!r}") from exc
    if scaled != scaled.to_integral_value():
        raise SymbolError(f"Strike has more than three decimals: {text!r}")
    scaled_int = int(scaled)
    if scaled_int < 0 or scaled_int >= 10 ** OCC_STRIKE_DIGITS:
        raise SymbolError(f"Strike out of range: {text!r}")
    return scaled_int


def _canonical(root: str, yymmdd: str, flag: str, scaled_strike: int) -> str:
    canonical = f"{root.upper()}{yymmdd}{flag.upper()}{scaled_strike:0{OCC_STRIKE_DIGITS}d}"
    # Validates the date component
    parse_occ_symbol(canonical)
    return canonical


class SymbolTranslator(ABC):
    """Venue-native <-> canonical option symbol mapping"""

    venue: Venue

    @abstractmethod
    def to_canonical(self, native_symbol: str) -> str:
        """Translate a native option symbol; raises SymbolError"""

    @abstractmethod
    def to_native(self, canonical_symbol: str) -> str:
        """Translate a canonical option symbol to the venue's form"""

    def is_option(self, symbol: str) -> bool:
        try:
            self.to_canonical(symbol)
        except SymbolError:
            return False
        return True

    def try_to_canonical(self, native_symbol: str) -> Optional[str]:
        try:
            return self.to_canonical(native_symbol)
        except SymbolError:
            return None

    def _canonical_from_occ(self, symbol: str) -> str:
        parsed = parse_occ_symbol(symbol)
        scaled = int(round(parsed.strike * OCC_STRIKE_SCALE))
        return _canonical(parsed.root, parsed.expiration.strftime('%y%m%d'), parsed.option_type.flag, scaled)


class OCCTranslator(SymbolTranslator):
    """Venues whose native option symbol is compact OCC (Tradier, IBKR)"""

    def __init__(self, venue: Venue = Venue.TRADIER):
        self.venue = venue

    def to_canonical(self, native_symbol: str) -> str:
        return self._canonical_from_occ(normalize_occ_symbol(native_symbol))

    def to_native(self, canonical_symbol: str) -> str:
        return self.to_canonical(canonical_symbol)


class SchwabTranslator(SymbolTranslator):
    """Schwab pads the root with spaces to six characters"""

    venue = Venue.SCHWAB

    def to_canonical(self, native_symbol: str) -> str:
        return self._canonical_from_occ(normalize_occ_symbol(native_symbol))

    def to_native(self, canonical_symbol: str) -> str:
        canonical = self.to_canonical(canonical_symbol)
        parsed = parse_occ_symbol(canonical)
        return parsed.root.ljust(OCC_ROOT_WIDTH) + canonical[len(parsed.root):]


class TastyTradeTranslator(SymbolTranslator):
    """DxLink streamer symbols: leading dot, unscaled strike (.SPXW231215C4500)"""

    venue = Venue.TASTYTRADE

    _STREAMER = re.compile(r'^\.([A-Z0-9]+?)(\d{6})([CP])(\d+(?:\.\d+)?)$')

    def to_canonical(self, native_symbol: str) -> str:
        text = re.sub(r'\s+', '', native_symbol or '').upper()
        match = self._STREAMER.match(text)
        if match:
            root, yymmdd, flag, strike = match.groups()
            return _canonical(root, yymmdd, flag, parse_unscaled_strike(strike))
        if is_option_symbol(text):
            return self._canonical_from_occ(text)
        raise SymbolError(f"Not a TastyTrade option symbol: {native_symbol!r}")

    def to_native(self, canonical_symbol: str) -> str:
        canonical = self.to_canonical(canonical_symbol)
        parsed = parse_occ_symbol(canonical)
        body = canonical[len(parsed.root):-OCC_STRIKE_DIGITS]
        return f".{parsed.root}{body}{format_unscaled_strike(int(canonical[-OCC_STRIKE_DIGITS:]))}"


class TradeStationTranslator(SymbolTranslator):
    """TradeStation option symbols: root, space, unscaled strike (MSFT 220916C305)"""

    venue = Venue.TRADESTATION

    _NATIVE = re.compile(r'^([A-Z0-9$.]+)\s+(\d{6})([CP])(\d+(?:\.\d+)?)$')

    def to_canonical(self, native_symbol: str) -> str:
        text = (native_symbol or '').strip().upper()
        match = self._NATIVE.match(text)
        if match:
            root, yymmdd, flag, strike = match.groups()
            return _canonical(root, yymmdd, flag, parse_unscaled_strike(strike))
        if is_option_symbol(text):
            return self._canonical_from_occ(normalize_occ_symbol(text))
        raise SymbolError(f"Not a TradeStation option symbol: {native_symbol!r}")

    def to_native(self, canonical_symbol: str) -> str:
        canonical = self.to_canonical(canonical_symbol)
        parsed = parse_occ_symbol(canonical)
        body = canonical[len(parsed.root):-OCC_STRIKE_DIGITS]
        return f"{parsed.root} {body}{format_unscaled_strike(int(canonical[-OCC_STRIKE_DIGITS:]))}"


_TRANSLATORS: Dict[Venue, SymbolTranslator] = {
    Venue.IBKR: OCCTranslator(Venue.IBKR),
    Venue.TRADIER: OCCTranslator(Venue.TRADIER),
    Venue.SCHWAB: SchwabTranslator(),
    Venue.TASTYTRADE: TastyTradeTranslator(),
    Venue.TRADESTATION: TradeStationTranslator(),
}


def get_translator(venue: Venue) -> SymbolTranslator:
    return _TRANSLATORS[venue]


def to_canonical(native_symbol: str, venue: Venue) -> str:
    return get_translator(venue).to_canonical(native_symbol)


def to_native(canonical_symbol: str, venue: Venue) -> str:
    return get_translator(venue).to_native(canonical_symbol)
