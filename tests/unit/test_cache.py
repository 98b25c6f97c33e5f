"""
Unit tests for the normalized cache
"""

import pytest

from optionflow.realtime.types import AggressorSide, OptionType

SYMBOL = "SPY240119C00500000"


class TestTickerUpserts:
    """Test ticker snapshot merging"""

    def test_quote_sets_spot_to_mid(self, recorded_cache):
        cache, published = recorded_cache
        ticker = cache.upsert_ticker_from_quote("SPY", 500.00, 3, 500.10, 4, 1)

        assert ticker.spot == pytest.approx(500.05)
        assert len(published['tickers']) == 1

    def test_partial_update_never_regresses(self, recorded_cache):
        cache, published = recorded_cache
        cache.upsert_ticker_from_quote("SPY", 500.00, 3, 500.10, 4, 1)
        ticker = cache.upsert_ticker("SPY", 2, last=500.07)

        assert ticker.bid == 500.00
        assert ticker.ask == 500.10
        assert ticker.last == 500.07
        assert ticker.timestamp == 2
        assert len(published['tickers']) == 2

    def test_trade_without_day_volume_accumulates(self, recorded_cache):
        cache, _ = recorded_cache
        cache.upsert_ticker_from_trade("SPY", 500.0, 100, None, 1)
        ticker = cache.upsert_ticker_from_trade("SPY", 500.1, 50, None, 2)

        assert ticker.volume == 150
        # No quote yet: spot falls back to the last price
        assert ticker.spot == 500.0

    def test_lookup_is_case_insensitive(self, recorded_cache):
        cache, _ = recorded_cache
        cache.upsert_ticker("SPY", 1, last=1.0)
        assert cache.get_ticker(" spy ") is not None


class TestOptionUpserts:
    """Test option snapshot merging and trade application"""

    def test_new_option_is_built_from_symbol(self, recorded_cache):
        cache, _ = recorded_cache
        option = cache.upsert_option_from_quote(SYMBOL, 10.00, 5, 10.20, 3, 1)

        assert option.underlying == "SPY"
        assert option.strike == 500.0
        assert option.expiration == "2024-01-19"
        assert option.option_type is OptionType.CALL
        assert option.mark == pytest.approx(10.10)

    def test_quote_then_trade_at_ask(self, recorded_cache):
        cache, published = recorded_cache
        cache.upsert_option_from_quote(SYMBOL, 10.00, 5, 10.20, 3, 1)
        option = cache.upsert_option_from_trade(SYMBOL, 10.20, 2, None, 2)

        assert len(published['options']) == 2
        assert len(published['trades']) == 1
        assert option.last_aggressor_side is AggressorSide.BUY
        assert option.estimated_oi_change == 2
        assert option.volume == 2
        assert option.live_open_interest == 2
        assert option.bid == 10.00 and option.ask == 10.20

    def test_quote_after_trade_clears_trade_fields(self, recorded_cache):
        cache, published = recorded_cache
        cache.upsert_option_from_quote(SYMBOL, 10.00, 5, 10.20, 3, 1)
        cache.upsert_option_from_trade(SYMBOL, 10.20, 2, None, 2)
        option = cache.upsert_option_from_quote(SYMBOL, 10.05, 5, 10.25, 3, 3)

        assert option.last_aggressor_side is None
        assert option.estimated_oi_change == 0
        assert sum(o.estimated_oi_change for o in published['options']) == 2
        assert option.live_open_interest == 2
        assert option.last == 10.20

    def test_timesale_uses_its_own_quote(self, recorded_cache):
        cache, published = recorded_cache
        cache.upsert_option_from_quote(SYMBOL, 10.00, 5, 10.20, 3, 1)
        option = cache.upsert_option_from_timesale(SYMBOL, 9.80, 4, 9.80, 10.00, 2)

        assert option.last_aggressor_side is AggressorSide.SELL
        assert option.bid == 9.80
        assert option.ask == 10.00
        assert published['trades'][0].bid == 9.80

    def test_trade_extra_fields_in_single_update(self, recorded_cache):
        cache, published = recorded_cache
        cache.upsert_option_from_timesale(SYMBOL, 1.10, 1, 1.00, 1.10, 1,
                                          day_volume=40, bid_size=7, implied_volatility=0.25)

        assert len(published['options']) == 1
        option = cache.get_option(SYMBOL)
        assert option.bid_size == 7
        assert option.implied_volatility == 0.25
        assert option.volume == 40

    def test_partial_update_never_regresses(self, recorded_cache):
        cache, _ = recorded_cache
        cache.upsert_option(SYMBOL, 1, bid=1.0, ask=1.2, open_interest=300, implied_volatility=0.3)
        option = cache.upsert_option(SYMBOL, 2, last=1.1)

        assert option.bid == 1.0
        assert option.open_interest == 300
        assert option.implied_volatility == 0.3
        assert option.last == 1.1

    def test_mark_used_only_without_two_sided_quote(self, recorded_cache):
        cache, _ = recorded_cache
        assert cache.upsert_option(SYMBOL, 1, mark=1.15).mark == 1.15
        assert cache.upsert_option(SYMBOL, 2, bid=1.0, ask=1.2, mark=5.0).mark == pytest.approx(1.1)

    def test_update_without_change_still_publishes(self, recorded_cache):
        cache, published = recorded_cache
        cache.upsert_option(SYMBOL, 1, bid=1.0)
        cache.upsert_option(SYMBOL, 1)
        assert len(published['options']) == 2

    def test_untranslatable_symbol_is_dropped(self, recorded_cache):
        cache, published = recorded_cache
        assert cache.upsert_option("NOT-AN-OPTION", 1, bid=1.0) is None
        assert cache.upsert_option_from_trade("NOT-AN-OPTION", 1.0, 1, None, 1) is None
        assert published['options'] == []
        assert published['trades'] == []

    def test_live_open_interest_follows_base(self, recorded_cache):
        cache, _ = recorded_cache
        cache.estimator.set_base_open_interest(SYMBOL, 150)
        cache.upsert_option_from_quote(SYMBOL, 1.0, 1, 1.2, 1, 1)
        option = cache.upsert_option_from_trade(SYMBOL, 1.0, 20, None, 2)

        assert option.live_open_interest == 130

    def test_padded_lookup(self, recorded_cache):
        cache, _ = recorded_cache
        cache.upsert_option(SYMBOL, 1, bid=1.0)
        assert cache.get_option("SPY   240119C00500000") is not None

    def test_clear(self, recorded_cache):
        cache, _ = recorded_cache
        cache.estimator.set_base_open_interest(SYMBOL, 10)
        cache.upsert_option_from_trade(SYMBOL, 1.0, 1, None, 1)
        cache.upsert_ticker("SPY", 1, last=1.0)

        cache.clear()

        assert cache.get_all_options() == {}
        assert cache.get_all_tickers() == {}
        assert cache.estimator.get_base_open_interest(SYMBOL) is None
