"""
Unit tests for OCC symbol handling and venue symbol translation
"""

from datetime import date

import pytest

from optionflow.realtime.types import OptionType, Venue
from optionflow.symbols import (
    build_occ_symbol,
    generate_occ_symbols_around_spot,
    generate_strikes_around_spot,
    get_translator,
    is_canonical_symbol,
    is_option_symbol,
    parse_occ_symbol,
    to_canonical,
    to_native,
    underlying_for_root,
)
from optionflow.utils.error_handler import SymbolError


class TestOCCSymbols:
    """Test canonical symbol building and parsing"""

    def test_build(self):
        assert build_occ_symbol('AAPL', '2023-01-20', 'call', 150) == 'AAPL230120C00150000'
        assert build_occ_symbol('qqq', date(2024, 3, 15), OptionType.PUT, 425.5) == 'QQQ240315P00425500'

    def test_build_padded(self):
        assert build_occ_symbol('SPY', '2024-01-19', 'C', 500, padded=True) == 'SPY   240119C00500000'

    def test_parse(self):
        parsed = parse_occ_symbol('SPXW240119P04500500')
        assert parsed.root == 'SPXW'
        assert parsed.expiration == date(2024, 1, 19)
        assert parsed.option_type is OptionType.PUT
        assert parsed.strike == 4500.5

    def test_parse_padded(self):
        assert parse_occ_symbol('SPY   240119C00500000').root == 'SPY'

    @pytest.mark.parametrize("symbol", [
        'SPY',
        'SPY240119X00500000',
        'SPY241319C00500000',
        '240119C00500000',
        '',
    ])
    def test_parse_rejects_invalid(self, symbol):
        with pytest.raises(SymbolError):
            parse_occ_symbol(symbol)

    def test_symbol_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_occ_symbol('nope')

    def test_predicates(self):
        assert is_option_symbol('SPY   240119C00500000')
        assert not is_option_symbol('SPY')
        assert is_canonical_symbol('SPY240119C00500000')
        assert not is_canonical_symbol('SPY   240119C00500000')

    def test_underlying_for_root(self):
        assert underlying_for_root('SPXW') == 'SPX'
        assert underlying_for_root('aapl') == 'AAPL'

    def test_strike_ladder(self):
        assert generate_strikes_around_spot(450.25, 2, 2, 5) == [440.0, 445.0, 450.0, 455.0, 460.0]
        with pytest.raises(ValueError):
            generate_strikes_around_spot(450, strike_increment=0)

    def test_symbols_around_spot(self):
        symbols = generate_occ_symbols_around_spot('SPY', '2024-01-19', 500.4, 1, 1, 1)
        assert symbols[:2] == ['SPY240119C00499000', 'SPY240119P00499000']
        assert len(symbols) == 6


class TestVenueTranslators:
    """Test native <-> canonical translation for every venue"""

    @pytest.mark.parametrize("venue,native", [
        (Venue.IBKR, 'SPY240119C00500000'),
        (Venue.TRADIER, 'SPY240119C00500000'),
        (Venue.SCHWAB, 'SPY   240119C00500000'),
        (Venue.TASTYTRADE, '.SPY240119C500'),
        (Venue.TRADESTATION, 'SPY 240119C500'),
    ])
    def test_native_forms(self, venue, native):
        assert to_canonical(native, venue) == 'SPY240119C00500000'
        assert to_native('SPY240119C00500000', venue) == native

    @pytest.mark.parametrize("venue", list(Venue))
    @pytest.mark.parametrize("canonical", [
        'SPY240119C00500000',
        'SPXW231215P04500000',
        'AAPL230120C00152500',
        'F240119P00004500',
    ])
    def test_round_trip(self, venue, canonical):
        assert to_canonical(to_native(canonical, venue), venue) == canonical

    def test_fractional_strikes(self):
        assert to_native('F240119P00004500', Venue.TASTYTRADE) == '.F240119P4.5'
        assert to_native('AAPL230120C00152500', Venue.TRADESTATION) == 'AAPL 230120C152.5'
        assert to_canonical('.F240119P4.5', Venue.TASTYTRADE) == 'F240119P00004500'

    @pytest.mark.parametrize("venue", list(Venue))
    def test_accepts_canonical_input(self, venue):
        assert to_canonical('SPY240119C00500000', venue) == 'SPY240119C00500000'

    def test_whitespace_tolerated(self):
        assert to_canonical('  MSFT   220916C305 ', Venue.TRADESTATION) == 'MSFT220916C00305000'
        assert to_canonical(' .SPY240119C500 ', Venue.TASTYTRADE) == 'SPY240119C00500000'

    @pytest.mark.parametrize("venue", list(Venue))
    def test_tickers_are_not_options(self, venue):
        translator = get_translator(venue)
        assert translator.try_to_canonical('SPY') is None
        assert not translator.is_option('SPY')

    def test_rejects_sub_cent_fraction(self):
        with pytest.raises(SymbolError):
            to_canonical('.SPY240119C500.0001', Venue.TASTYTRADE)
