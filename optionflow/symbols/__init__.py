"""
Option symbol handling: canonical OCC parsing/building and the per-venue
symbol translators.
"""

from .occ import (
    build_occ_symbol,
    parse_occ_symbol,
    normalize_occ_symbol,
    is_option_symbol,
    is_canonical_symbol,
    underlying_for_root,
    generate_strikes_around_spot,
    generate_occ_symbols_for_strikes,
    generate_occ_symbols_around_spot,
)
from .translator import (
    SymbolTranslator,
    OCCTranslator,
    SchwabTranslator,
    TastyTradeTranslator,
    TradeStationTranslator,
    get_translator,
    to_canonical,
    to_native,
)

__all__ = [
    'build_occ_symbol',
    'parse_occ_symbol',
    'normalize_occ_symbol',
    'is_option_symbol',
    'is_canonical_symbol',
    'underlying_for_root',
    'generate_strikes_around_spot',
    'generate_occ_symbols_for_strikes',
    'generate_occ_symbols_around_spot',
    'SymbolTranslator',
    'OCCTranslator',
    'SchwabTranslator',
    'TastyTradeTranslator',
    'TradeStationTranslator',
    'get_translator',
    'to_canonical',
    'to_native',
]
