"""
Shared Types for the streaming normalization layer

This module contains the normalized data model produced by every venue
session: tickers, options, classified trades and flow summaries, plus the
enumerations used to describe venues, sessions and events.
"""

from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, Optional
from enum import Enum


class Venue(Enum):
    """Supported brokerage venues"""
    IBKR = "ibkr"
    TASTYTRADE = "tastytrade"
    SCHWAB = "schwab"
    TRADIER = "tradier"
    TRADESTATION = "tradestation"


class OptionType(Enum):
    """Option contract type"""
    CALL = "call"
    PUT = "put"

    @property
    def flag(self) -> str:
        return 'C' if self is OptionType.CALL else 'P'

    @classmethod
    def from_flag(cls, flag: str) -> 'OptionType':
        flag = flag.strip().upper()
        if flag in ('C', 'CALL'):
            return cls.CALL
        if flag in ('P', 'PUT'):
            return cls.PUT
        raise ValueError(f"Unknown option type flag: {flag!r}")


class AggressorSide(Enum):
    """Which side crossed the spread to cause a trade"""
    BUY = "buy"
    SELL = "sell"
    UNKNOWN = "unknown"


class SessionState(Enum):
    """Connection state of a venue session"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    NEGOTIATING = "negotiating"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"


class EventType(Enum):
    """Events published by venue sessions and the orchestrator"""
    TICKER_UPDATE = "ticker_update"
    OPTION_UPDATE = "option_update"
    OPTION_TRADE = "option_trade"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class ParsedOptionSymbol:
    """Components of a canonical option symbol"""

    root: str
    expiration: date
    option_type: OptionType
    strike: float


@dataclass
class NormalizedTicker:
    """Latest equity/index snapshot for one symbol on one venue"""

    symbol: str
    spot: float = 0.0
    bid: float = 0.0
    bid_size: float = 0.0
    ask: float = 0.0
    ask_size: float = 0.0
    last: float = 0.0
    volume: float = 0.0
    timestamp: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NormalizedOption:
    """Latest snapshot for one option contract on one venue"""

    occ_symbol: str
    underlying: str
    strike: float
    expiration: str  # YYYY-MM-DD
    expiration_timestamp: int
    option_type: OptionType

    bid: float = 0.0
    bid_size: float = 0.0
    ask: float = 0.0
    ask_size: float = 0.0
    mark: float = 0.0
    last: float = 0.0
    volume: float = 0.0

    open_interest: float = 0.0
    live_open_interest: float = 0.0
    implied_volatility: float = 0.0
    timestamp: int = 0

    # Set only on updates produced by a trade; quote-only updates clear them
    last_aggressor_side: Optional[AggressorSide] = None
    estimated_oi_change: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['option_type'] = self.option_type.value
        if self.last_aggressor_side is not None:
            data['last_aggressor_side'] = self.last_aggressor_side.value
        return data


@dataclass(frozen=True)
class IntradayTrade:
    """One classified option trade; never mutated once recorded"""

    occ_symbol: str
    price: float
    size: float
    bid: float
    ask: float
    aggressor_side: AggressorSide
    timestamp: int
    estimated_oi_change: float


@dataclass
class FlowSummary:
    """Derived view over a symbol's intraday trade log"""

    buy_volume: float = 0.0
    sell_volume: float = 0.0
    unknown_volume: float = 0.0
    net_oi_change: float = 0.0
    trade_count: int = 0


@dataclass
class ConnectionEvent:
    """Payload of connected/disconnected events"""

    venue: Venue
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
