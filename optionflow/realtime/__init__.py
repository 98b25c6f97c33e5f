"""
Real-time data model and event surface

The cache and estimator live in ``optionflow.realtime.cache`` and
``optionflow.realtime.estimator``; they are imported from there directly
because the symbol utilities depend on this package's types.
"""

from .types import (
    Venue,
    OptionType,
    AggressorSide,
    SessionState,
    EventType,
    ParsedOptionSymbol,
    NormalizedTicker,
    NormalizedOption,
    IntradayTrade,
    FlowSummary,
    ConnectionEvent,
)
from .events import EventEmitter, Subscription

__all__ = [
    'Venue',
    'OptionType',
    'AggressorSide',
    'SessionState',
    'EventType',
    'ParsedOptionSymbol',
    'NormalizedTicker',
    'NormalizedOption',
    'IntradayTrade',
    'FlowSummary',
    'ConnectionEvent',
    'EventEmitter',
    'Subscription',
]
