"""
Unit tests for aggressor classification and open-interest estimation
"""

import pytest

from optionflow.realtime.cache import NormalizedCache
from optionflow.realtime.estimator import (
    AggressorOIDeltaStrategy,
    NullOIDeltaStrategy,
    OIDeltaStrategy,
    classify_aggressor,
)
from optionflow.realtime.types import AggressorSide

SYMBOL = "SPY240119C00500000"


class TestClassifyAggressor:
    """Test trade classification against the prevailing quote"""

    @pytest.mark.parametrize("price,bid,ask,expected", [
        (10.20, 10.00, 10.20, AggressorSide.BUY),
        (10.25, 10.00, 10.20, AggressorSide.BUY),
        (10.00, 10.00, 10.20, AggressorSide.SELL),
        (9.90, 10.00, 10.20, AggressorSide.SELL),
        (10.10, 10.00, 10.20, AggressorSide.UNKNOWN),
        (10.10, 0.0, 10.20, AggressorSide.UNKNOWN),
        (10.10, 10.00, 0.0, AggressorSide.UNKNOWN),
        (10.10, -1.0, 10.20, AggressorSide.UNKNOWN),
    ])
    def test_classification_grid(self, price, bid, ask, expected):
        assert classify_aggressor(price, bid, ask) is expected

    def test_tolerance_scales_with_spread(self):
        # Spread 1.00 -> tolerance 0.001
        assert classify_aggressor(10.9995, 10.00, 11.00) is AggressorSide.BUY
        assert classify_aggressor(10.0005, 10.00, 11.00) is AggressorSide.SELL
        assert classify_aggressor(10.5, 10.00, 11.00) is AggressorSide.UNKNOWN

    def test_locked_market_uses_minimum_tolerance(self):
        # Zero spread: a print at the locked price counts as a buy
        assert classify_aggressor(5.00, 5.00, 5.00) is AggressorSide.BUY
        assert classify_aggressor(4.9995, 5.00, 5.00) is AggressorSide.BUY
        assert classify_aggressor(4.99, 5.00, 5.00) is AggressorSide.SELL

    def test_missing_quote_is_unknown(self):
        assert classify_aggressor(1.0, None, 1.1) is AggressorSide.UNKNOWN


class TestDeltaStrategies:
    """Test side to open-interest delta mapping"""

    def test_aggressor_strategy(self):
        strategy = AggressorOIDeltaStrategy()
        assert strategy.delta(AggressorSide.BUY, 5) == 5
        assert strategy.delta(AggressorSide.SELL, 5) == -5
        assert strategy.delta(AggressorSide.UNKNOWN, 5) == 0

    def test_null_strategy(self):
        strategy = NullOIDeltaStrategy()
        assert strategy.delta(AggressorSide.BUY, 5) == 0
        assert strategy.delta(AggressorSide.SELL, 5) == 0


class TestOpenInterestEstimator:
    """Test ledgers maintained through the estimator"""

    def test_base_open_interest_first_value_wins(self):
        cache = NormalizedCache()
        estimator = cache.estimator

        assert estimator.set_base_open_interest(SYMBOL, 0) is False
        assert estimator.get_base_open_interest(SYMBOL) is None
        assert estimator.set_base_open_interest(SYMBOL, 150) is True
        assert estimator.set_base_open_interest(SYMBOL, 9999) is False

        assert estimator.get_base_open_interest(SYMBOL) == 150

    def test_live_open_interest_is_never_negative(self):
        cache = NormalizedCache()
        estimator = cache.estimator
        estimator.set_base_open_interest(SYMBOL, 10)

        estimator.record_trade(SYMBOL, 1.00, 25, 1.00, 1.10, 1)

        assert cache.cumulative_oi_change[SYMBOL] == -25
        assert estimator.live_open_interest(SYMBOL) == 0

    def test_live_open_interest_tracks_base_plus_cumulative(self):
        cache = NormalizedCache()
        estimator = cache.estimator
        estimator.set_base_open_interest(SYMBOL, 100)

        estimator.record_trade(SYMBOL, 1.10, 7, 1.00, 1.10, 1)
        estimator.record_trade(SYMBOL, 1.00, 3, 1.00, 1.10, 2)
        estimator.record_trade(SYMBOL, 1.05, 50, 1.00, 1.10, 3)

        assert estimator.live_open_interest(SYMBOL) == 104

    def test_live_open_interest_without_base(self):
        cache = NormalizedCache()
        cache.estimator.record_trade(SYMBOL, 1.10, 4, 1.00, 1.10, 1)
        assert cache.estimator.live_open_interest(SYMBOL) == 4

    def test_trade_log_is_append_only(self):
        cache = NormalizedCache()
        estimator = cache.estimator
        first = estimator.record_trade(SYMBOL, 1.10, 2, 1.00, 1.10, 1)
        estimator.record_trade(SYMBOL, 1.00, 1, 1.00, 1.10, 2)

        trades = estimator.get_intraday_trades(SYMBOL)
        assert [t.timestamp for t in trades] == [1, 2]
        assert trades[0] is first

        # Returned list is a copy
        trades.clear()
        assert len(estimator.get_intraday_trades(SYMBOL)) == 2

    def test_flow_summary(self):
        cache = NormalizedCache()
        estimator = cache.estimator
        estimator.record_trade(SYMBOL, 1.10, 10, 1.00, 1.10, 1)
        estimator.record_trade(SYMBOL, 1.00, 4, 1.00, 1.10, 2)
        estimator.record_trade(SYMBOL, 1.05, 3, 1.00, 1.10, 3)

        summary = estimator.get_flow_summary(SYMBOL)

        assert summary.buy_volume == 10
        assert summary.sell_volume == 4
        assert summary.unknown_volume == 3
        assert summary.net_oi_change == 6
        assert summary.trade_count == 3

    def test_reset_keeps_base_open_interest(self):
        cache = NormalizedCache()
        estimator = cache.estimator
        estimator.set_base_open_interest(SYMBOL, 100)
        estimator.record_trade(SYMBOL, 1.10, 10, 1.00, 1.10, 1)

        estimator.reset_intraday_data()

        assert estimator.get_intraday_trades(SYMBOL) == []
        assert estimator.live_open_interest(SYMBOL) == 100
        assert estimator.get_base_open_interest(SYMBOL) == 100

    def test_custom_strategy(self):
        class DoubleBuys(OIDeltaStrategy):
            def delta(self, side, size):
                return 2 * size if side is AggressorSide.BUY else 0

        cache = NormalizedCache(oi_strategy=DoubleBuys())
        trade = cache.estimator.record_trade(SYMBOL, 1.10, 3, 1.00, 1.10, 1)

        assert trade.estimated_oi_change == 6
        assert cache.estimator.live_open_interest(SYMBOL) == 6

    def test_trades_frame(self):
        cache = NormalizedCache()
        cache.estimator.record_trade(SYMBOL, 1.10, 3, 1.00, 1.10, 1_700_000_000_000)

        frame = cache.estimator.trades_frame(SYMBOL)

        assert list(frame['aggressor_side']) == ['buy']
        assert frame['estimated_oi_change'].sum() == 3
        assert 'time' in frame.columns

    def test_trades_frame_empty(self):
        frame = NormalizedCache().estimator.trades_frame()
        assert frame.empty
        assert 'occ_symbol' in frame.columns
