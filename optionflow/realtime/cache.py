"""
Normalized Cache

Venue-scoped, in-memory store of the latest ticker and option snapshots and
of the open-interest ledgers (base figures, cumulative deltas, trade logs).

Every upsert merges the incoming fields into the existing snapshot. A field
passed as ``None`` was absent from the venue frame and keeps its previous
value, so a partial update never regresses a populated field. Each call
publishes exactly one update through the ``on_ticker``/``on_option``
callbacks, even when nothing changed.
"""

from dataclasses import replace
from typing import Callable, Dict, List, Optional

from optionflow.symbols.occ import normalize_occ_symbol, parse_occ_symbol, underlying_for_root
from optionflow.utils.error_handler import SymbolError
from optionflow.utils.helpers import date_to_ms
from optionflow.utils.logger import get_logger
from .estimator import OIDeltaStrategy, OpenInterestEstimator
from .types import IntradayTrade, NormalizedOption, NormalizedTicker

TickerCallback = Callable[[NormalizedTicker], None]
OptionCallback = Callable[[NormalizedOption], None]
TradeCallback = Callable[[IntradayTrade], None]

_TRADE_EXTRA_FIELDS = {'bid_size', 'ask_size', 'open_interest', 'implied_volatility'}


def _merge(new, old):
    return old if new is None else new


def _mid(bid: float, ask: float) -> Optional[float]:
    if bid > 0 and ask > 0:
        return (bid + ask) / 2
    return None


def new_option(symbol: str) -> NormalizedOption:
    """Empty snapshot carrying the contract terms parsed from ``symbol``"""
    parsed = parse_occ_symbol(symbol)
    return NormalizedOption(
        occ_symbol=symbol,
        underlying=underlying_for_root(parsed.root),
        strike=parsed.strike,
        expiration=parsed.expiration.isoformat(),
        expiration_timestamp=date_to_ms(parsed.expiration),
        option_type=parsed.option_type,
    )


def option_snapshot(symbol: str, timestamp: int = 0, **fields) -> NormalizedOption:
    """
    Standalone snapshot for a contract outside the cache (chain listings).

    No trades have been observed for it, so live open interest equals the
    reported figure.
    """
    option = replace(new_option(symbol), timestamp=timestamp,
                     **{name: value for name, value in fields.items() if value is not None})
    mid = _mid(option.bid, option.ask)
    if mid is not None:
        option.mark = mid
    option.live_open_interest = option.open_interest
    return option


class NormalizedCache:
    """Latest snapshots plus open-interest state for one venue session"""

    def __init__(self,
                 on_ticker: Optional[TickerCallback] = None,
                 on_option: Optional[OptionCallback] = None,
                 on_trade: Optional[TradeCallback] = None,
                 oi_strategy: Optional[OIDeltaStrategy] = None,
                 name: str = "NormalizedCache"):
        self.tickers: Dict[str, NormalizedTicker] = {}
        self.options: Dict[str, NormalizedOption] = {}

        # Open-interest ledgers, maintained by the estimator
        self.base_open_interest: Dict[str, float] = {}
        self.cumulative_oi_change: Dict[str, float] = {}
        self.intraday_trades: Dict[str, List[IntradayTrade]] = {}

        self.on_ticker = on_ticker
        self.on_option = on_option
        self.logger = get_logger(name)
        self.estimator = OpenInterestEstimator(self, strategy=oi_strategy, on_trade=on_trade)

    # Tickers ----------------------------------------------------------------

    def upsert_ticker_from_quote(self, symbol: str,
                                 bid: Optional[float], bid_size: Optional[float],
                                 ask: Optional[float], ask_size: Optional[float],
                                 timestamp: int) -> NormalizedTicker:
        return self.upsert_ticker(symbol, timestamp, bid=bid, bid_size=bid_size,
                                  ask=ask, ask_size=ask_size)

    def upsert_ticker_from_trade(self, symbol: str, price: float, size: Optional[float],
                                 day_volume: Optional[float], timestamp: int) -> NormalizedTicker:
        existing = self.tickers.get(symbol)
        if day_volume is None:
            day_volume = (existing.volume if existing else 0) + (size or 0)
        return self.upsert_ticker(symbol, timestamp, last=price, volume=day_volume)

    def upsert_ticker(self, symbol: str, timestamp: int,
                      bid: Optional[float] = None, bid_size: Optional[float] = None,
                      ask: Optional[float] = None, ask_size: Optional[float] = None,
                      last: Optional[float] = None, volume: Optional[float] = None) -> NormalizedTicker:
        """Merge any subset of ticker fields and publish the result"""
        ticker = self.tickers.get(symbol) or NormalizedTicker(symbol=symbol)
        ticker = replace(
            ticker,
            bid=_merge(bid, ticker.bid),
            bid_size=_merge(bid_size, ticker.bid_size),
            ask=_merge(ask, ticker.ask),
            ask_size=_merge(ask_size, ticker.ask_size),
            last=_merge(last, ticker.last),
            volume=_merge(volume, ticker.volume),
            timestamp=timestamp,
        )
        mid = _mid(ticker.bid, ticker.ask)
        if mid is not None:
            ticker.spot = mid
        elif not ticker.spot and ticker.last:
            ticker.spot = ticker.last

        self.tickers[symbol] = ticker
        if self.on_ticker is not None:
            self.on_ticker(ticker)
        return ticker

    # Options ----------------------------------------------------------------

    def _base_option(self, symbol: str) -> Optional[NormalizedOption]:
        """Existing snapshot, or a fresh one built from the parsed symbol"""
        existing = self.options.get(symbol)
        if existing is not None:
            return existing
        try:
            return new_option(symbol)
        except SymbolError as exc:
            self.logger.warning(f"Dropping update for untranslatable symbol {symbol!r}: {exc}")
            return None

    def _store_option(self, option: NormalizedOption) -> NormalizedOption:
        option.live_open_interest = self.estimator.live_open_interest(option.occ_symbol)
        self.options[option.occ_symbol] = option
        if self.on_option is not None:
            self.on_option(option)
        return option

    def upsert_option_from_quote(self, symbol: str,
                                 bid: Optional[float], bid_size: Optional[float],
                                 ask: Optional[float], ask_size: Optional[float],
                                 timestamp: int) -> Optional[NormalizedOption]:
        return self.upsert_option(symbol, timestamp, bid=bid, bid_size=bid_size,
                                  ask=ask, ask_size=ask_size)

    def upsert_option_from_trade(self, symbol: str, price: float, size: float,
                                 day_volume: Optional[float], timestamp: int,
                                 **fields) -> Optional[NormalizedOption]:
        """Trade without its own NBBO: classified against the cached quote"""
        existing = self.options.get(symbol)
        bid = existing.bid if existing else 0.0
        ask = existing.ask if existing else 0.0
        return self._apply_trade(symbol, price, size, bid, ask, day_volume, timestamp, **fields)

    def upsert_option_from_timesale(self, symbol: str, price: float, size: float,
                                    bid: float, ask: float, timestamp: int,
                                    day_volume: Optional[float] = None,
                                    **fields) -> Optional[NormalizedOption]:
        """
        Trade reported with the NBBO in force when it printed.

        Extra keyword fields (``bid_size``, ``ask_size``, ``open_interest``,
        ``implied_volatility``) carried by the same venue frame are merged
        into the snapshot so the frame still produces a single update.
        """
        return self._apply_trade(symbol, price, size, bid, ask, day_volume, timestamp,
                                 quote_bid=bid, quote_ask=ask, **fields)

    def _apply_trade(self, symbol: str, price: float, size: float, bid: float, ask: float,
                     day_volume: Optional[float], timestamp: int,
                     quote_bid: Optional[float] = None,
                     quote_ask: Optional[float] = None,
                     **fields) -> Optional[NormalizedOption]:
        unknown = set(fields) - _TRADE_EXTRA_FIELDS
        if unknown:
            raise TypeError(f"Unsupported trade fields: {sorted(unknown)}")

        option = self._base_option(symbol)
        if option is None:
            return None

        trade = self.estimator.record_trade(symbol, price, size, bid, ask, timestamp)

        volume = day_volume if day_volume is not None else option.volume + size
        option = replace(
            option,
            bid=_merge(quote_bid if quote_bid and quote_bid > 0 else None, option.bid),
            ask=_merge(quote_ask if quote_ask and quote_ask > 0 else None, option.ask),
            last=price,
            volume=volume,
            timestamp=timestamp,
            last_aggressor_side=trade.aggressor_side,
            estimated_oi_change=trade.estimated_oi_change,
        )
        for name, value in fields.items():
            if value is not None:
                setattr(option, name, value)
        mid = _mid(option.bid, option.ask)
        option.mark = mid if mid is not None else (option.mark or price)
        return self._store_option(option)

    def upsert_option(self, symbol: str, timestamp: int,
                      bid: Optional[float] = None, bid_size: Optional[float] = None,
                      ask: Optional[float] = None, ask_size: Optional[float] = None,
                      last: Optional[float] = None, volume: Optional[float] = None,
                      open_interest: Optional[float] = None,
                      implied_volatility: Optional[float] = None,
                      mark: Optional[float] = None,
                      strike: Optional[float] = None) -> Optional[NormalizedOption]:
        """
        Merge any subset of option fields and publish the result.

        ``mark`` is used only when the merged quote has no positive bid and
        ask; otherwise the mid is authoritative. No trade is implied, so the
        trade classification fields are reset. Returns None when the symbol
        cannot be parsed and nothing is cached for it.
        """
        option = self._base_option(symbol)
        if option is None:
            return None

        option = replace(
            option,
            bid=_merge(bid, option.bid),
            bid_size=_merge(bid_size, option.bid_size),
            ask=_merge(ask, option.ask),
            ask_size=_merge(ask_size, option.ask_size),
            last=_merge(last, option.last),
            volume=_merge(volume, option.volume),
            open_interest=_merge(open_interest, option.open_interest),
            implied_volatility=_merge(implied_volatility, option.implied_volatility),
            strike=_merge(strike, option.strike),
            timestamp=timestamp,
            last_aggressor_side=None,
            estimated_oi_change=0.0,
        )
        mid = _mid(option.bid, option.ask)
        option.mark = mid if mid is not None else _merge(mark, option.mark)
        return self._store_option(option)

    # Reads ------------------------------------------------------------------

    def get_option(self, symbol: str) -> Optional[NormalizedOption]:
        return self.options.get(normalize_occ_symbol(symbol))

    def get_ticker(self, symbol: str) -> Optional[NormalizedTicker]:
        return self.tickers.get(symbol.strip().upper())

    def get_all_options(self) -> Dict[str, NormalizedOption]:
        return dict(self.options)

    def get_all_tickers(self) -> Dict[str, NormalizedTicker]:
        return dict(self.tickers)

    def clear(self):
        """Drop every snapshot and ledger"""
        self.tickers.clear()
        self.options.clear()
        self.base_open_interest.clear()
        self.cumulative_oi_change.clear()
        self.intraday_trades.clear()
