"""
OptionFlow - Multi-broker options and equity streaming

Normalizes real-time quotes and trades from IBKR, TastyTrade, Schwab,
Tradier and TradeStation into one event model, and estimates intraday
open interest from trade aggressor classification.

Key Features:
- Canonical OCC option symbols across every venue
- One venue-scoped cache of ticker and option snapshots per session
- Aggressor classification with a pluggable open-interest delta strategy
- Reconnection with exponential backoff and subscription replay
- A single client surface that is independent of the active venue
"""

__version__ = "1.0.0"

from .client import OptionFlowClient
from .brokers import (
    VenueSession,
    IBKRSession,
    TastyTradeSession,
    SchwabSession,
    TradierSession,
    TradeStationSession,
    create_session,
)
from .realtime import (
    Venue,
    OptionType,
    AggressorSide,
    SessionState,
    EventType,
    NormalizedTicker,
    NormalizedOption,
    IntradayTrade,
    FlowSummary,
    ConnectionEvent,
    EventEmitter,
    Subscription,
)
from .realtime.cache import NormalizedCache
from .realtime.estimator import (
    OpenInterestEstimator,
    OIDeltaStrategy,
    AggressorOIDeltaStrategy,
    classify_aggressor,
)
from .symbols import to_canonical, to_native, get_translator, build_occ_symbol, parse_occ_symbol
from .utils.error_handler import (
    StreamError,
    AuthError,
    NetworkError,
    ProtocolError,
    SymbolError,
    SessionError,
    ListenerError,
    ReconnectExhaustedError,
)

__all__ = [
    '__version__',
    'OptionFlowClient',
    'VenueSession',
    'IBKRSession',
    'TastyTradeSession',
    'SchwabSession',
    'TradierSession',
    'TradeStationSession',
    'create_session',
    'Venue',
    'OptionType',
    'AggressorSide',
    'SessionState',
    'EventType',
    'NormalizedTicker',
    'NormalizedOption',
    'IntradayTrade',
    'FlowSummary',
    'ConnectionEvent',
    'EventEmitter',
    'Subscription',
    'NormalizedCache',
    'OpenInterestEstimator',
    'OIDeltaStrategy',
    'AggressorOIDeltaStrategy',
    'classify_aggressor',
    'to_canonical',
    'to_native',
    'get_translator',
    'build_occ_symbol',
    'parse_occ_symbol',
    'StreamError',
    'AuthError',
    'NetworkError',
    'ProtocolError',
    'SymbolError',
    'SessionError',
    'ListenerError',
    'ReconnectExhaustedError',
]
