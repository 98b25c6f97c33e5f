"""
Aggressor classification and live open-interest estimation.

Each option trade is compared with the NBBO in force when it printed:

    spread    = ask - bid
    tolerance = spread * 0.001 if spread > 0 else 0.001
    price >= ask - tolerance  -> buy   (lifted the offer)
    price <= bid + tolerance  -> sell  (hit the bid)
    otherwise                 -> unknown

The classified side is turned into an open-interest delta by a pluggable
``OIDeltaStrategy``. The default strategy treats a buy-initiated trade as
opening (+size) and a sell-initiated trade as closing (-size). This is a
heuristic only: official open interest is published once a day and the
real open/close mix of a print is not observable from the tape.

Live open interest is always ``max(0, base + cumulative_delta)``. The base
is the first non-zero official figure seen for a symbol and is never
replaced for the lifetime of the owning session.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

import pandas as pd

from optionflow.utils.constants import AGGRESSOR_SPREAD_TOLERANCE, AGGRESSOR_MIN_TOLERANCE
from optionflow.utils.logger import StructuredLogger
from .types import AggressorSide, FlowSummary, IntradayTrade

if TYPE_CHECKING:
    from .cache import NormalizedCache


def classify_aggressor(price: float, bid: float, ask: float) -> AggressorSide:
    """Classify a trade against the prevailing bid/ask"""
    if bid is None or ask is None or bid <= 0 or ask <= 0:
        return AggressorSide.UNKNOWN

    spread = ask - bid
    tolerance = spread * AGGRESSOR_SPREAD_TOLERANCE if spread > 0 else AGGRESSOR_MIN_TOLERANCE

    if price >= ask - tolerance:
        return AggressorSide.BUY
    if price <= bid + tolerance:
        return AggressorSide.SELL
    return AggressorSide.UNKNOWN


class OIDeltaStrategy(ABC):
    """Maps a classified trade to an estimated open-interest change"""

    @abstractmethod
    def delta(self, side: AggressorSide, size: float) -> float:
        pass


class AggressorOIDeltaStrategy(OIDeltaStrategy):
    """Buy-initiated trades open (+size), sell-initiated trades close (-size)"""

    def delta(self, side: AggressorSide, size: float) -> float:
        if side is AggressorSide.BUY:
            return size
        if side is AggressorSide.SELL:
            return -size
        return 0


class NullOIDeltaStrategy(OIDeltaStrategy):
    """Disables estimation: live open interest stays at the base figure"""

    def delta(self, side: AggressorSide, size: float) -> float:
        return 0


class OpenInterestEstimator:
    """
    Classifies trades and maintains the open-interest ledgers of a cache.

    The ledgers (base open interest, cumulative deltas, trade logs) live on
    the ``NormalizedCache`` that owns this estimator.
    """

    def __init__(self,
                 cache: 'NormalizedCache',
                 strategy: Optional[OIDeltaStrategy] = None,
                 on_trade: Optional[Callable[[IntradayTrade], None]] = None,
                 name: str = "OpenInterestEstimator"):
        self.cache = cache
        self.strategy = strategy or AggressorOIDeltaStrategy()
        self.on_trade = on_trade
        self.slogger = StructuredLogger(name)

    # Classification ---------------------------------------------------------

    def classify(self, price: float, bid: float, ask: float) -> AggressorSide:
        return classify_aggressor(price, bid, ask)

    def record_trade(self,
                     symbol: str,
                     price: float,
                     size: float,
                     bid: float,
                     ask: float,
                     timestamp: int) -> IntradayTrade:
        """Classify one trade, append it to the log and apply its delta once"""
        side = self.classify(price, bid, ask)
        change = self.strategy.delta(side, size)

        cumulative = self.cache.cumulative_oi_change.get(symbol, 0) + change
        self.cache.cumulative_oi_change[symbol] = cumulative

        trade = IntradayTrade(
            occ_symbol=symbol,
            price=price,
            size=size,
            bid=bid or 0.0,
            ask=ask or 0.0,
            aggressor_side=side,
            timestamp=timestamp,
            estimated_oi_change=change,
        )
        self.cache.intraday_trades.setdefault(symbol, []).append(trade)

        if change:
            self.slogger.debug(
                "Trade classified",
                symbol=symbol,
                price=f"{price:.2f}",
                size=size,
                side=side.value,
                oi_change=f"{change:+g}",
                live_oi=self.live_open_interest(symbol),
            )

        if self.on_trade is not None:
            self.on_trade(trade)
        return trade

    # Open interest ----------------------------------------------------------

    def set_base_open_interest(self, symbol: str, open_interest: float) -> bool:
        """
        Capture the t=0 open interest for ``symbol``.

        No-op (returns False) when ``open_interest <= 0`` or a base already
        exists: the first accepted non-zero figure wins.
        """
        if open_interest is None or open_interest <= 0 or symbol in self.cache.base_open_interest:
            return False
        self.cache.base_open_interest[symbol] = open_interest
        self.cache.cumulative_oi_change.setdefault(symbol, 0)
        self.slogger.debug("Base open interest set", symbol=symbol, open_interest=open_interest)
        return True

    def get_base_open_interest(self, symbol: str) -> Optional[float]:
        return self.cache.base_open_interest.get(symbol)

    def live_open_interest(self, symbol: str) -> float:
        base = self.cache.base_open_interest.get(symbol, 0)
        cumulative = self.cache.cumulative_oi_change.get(symbol, 0)
        return max(0, base + cumulative)

    # Intraday flow ----------------------------------------------------------

    def get_intraday_trades(self, symbol: str) -> List[IntradayTrade]:
        return list(self.cache.intraday_trades.get(symbol, []))

    def get_flow_summary(self, symbol: str) -> FlowSummary:
        summary = FlowSummary(net_oi_change=self.cache.cumulative_oi_change.get(symbol, 0))
        for trade in self.cache.intraday_trades.get(symbol, []):
            if trade.aggressor_side is AggressorSide.BUY:
                summary.buy_volume += trade.size
            elif trade.aggressor_side is AggressorSide.SELL:
                summary.sell_volume += trade.size
            else:
                summary.unknown_volume += trade.size
            summary.trade_count += 1
        return summary

    def reset_intraday_data(self, symbols: Optional[Iterable[str]] = None):
        """Drop trade logs and zero cumulative deltas; base figures are kept"""
        targets = list(symbols) if symbols is not None else list(self.cache.intraday_trades)
        for symbol in targets:
            self.cache.intraday_trades.pop(symbol, None)
            self.cache.cumulative_oi_change[symbol] = 0

    def trades_frame(self, symbol: Optional[str] = None) -> pd.DataFrame:
        """Trade log as a DataFrame (one symbol, or every symbol when omitted)"""
        columns = ['occ_symbol', 'price', 'size', 'bid', 'ask',
                   'aggressor_side', 'timestamp', 'estimated_oi_change']
        if symbol is not None:
            trades = self.cache.intraday_trades.get(symbol, [])
        else:
            trades = [t for log in self.cache.intraday_trades.values() for t in log]

        rows = [
            (t.occ_symbol, t.price, t.size, t.bid, t.ask, t.aggressor_side.value,
             t.timestamp, t.estimated_oi_change)
            for t in trades
        ]
        frame = pd.DataFrame(rows, columns=columns)
        if not frame.empty:
            frame['time'] = pd.to_datetime(frame['timestamp'], unit='ms', utc=True)
        return frame
