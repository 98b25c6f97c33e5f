"""
Constants and enumerations for the options streaming layer

This module defines the constants, wire field tables and fixed values used
throughout the venue sessions. Field tables are kept as data so that a
decoder can be extended by editing a table rather than a decode loop.
"""

from enum import IntEnum
from typing import Dict, List

# =============================================================================
# OCC SYMBOL CONSTANTS
# =============================================================================

# Root is padded to this width in the standard (padded) OCC rendering
OCC_ROOT_WIDTH = 6
OCC_DATE_LENGTH = 6
OCC_STRIKE_DIGITS = 8
OCC_STRIKE_SCALE = 1000

# Option roots that trade on a different underlying ticker
OPTION_ROOT_TO_UNDERLYING: Dict[str, str] = {
    'SPXW': 'SPX',
    'SPXPM': 'SPX',
    'NDXP': 'NDX',
    'RUTW': 'RUT',
    'DJXW': 'DJX',
}

# =============================================================================
# RECONNECTION / TIMING CONSTANTS
# =============================================================================

DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_BASE_RECONNECT_DELAY_MS = 1000

MILLISECONDS_PER_SECOND = 1_000

# =============================================================================
# AGGRESSOR CLASSIFICATION CONSTANTS
# =============================================================================

# Tolerance as a fraction of the spread, and the floor used for locked quotes
AGGRESSOR_SPREAD_TOLERANCE = 0.001
AGGRESSOR_MIN_TOLERANCE = 0.001

# =============================================================================
# IBKR WEB API CONSTANTS
# =============================================================================

class IBKRField:
    """Market data field tags for snapshot and streaming requests"""
    LAST_PRICE = '31'
    LAST_SIZE = '32'
    CHANGE = '82'
    CHANGE_PERCENT = '83'
    BID_PRICE = '84'
    BID_SIZE = '85'
    ASK_PRICE = '86'
    ASK_SIZE = '88'
    UNDERLYING_CONID = '6457'
    CONTRACT_DESC = '6509'
    VOLUME = '7059'
    OPEN_INTEREST = '7089'
    MARK = '7219'
    IMPLIED_VOLATILITY = '7283'
    LAST_TIMESTAMP = '7295'
    OPEN = '7296'
    HIGH = '7297'
    LOW = '7298'
    CLOSE = '7299'
    DELTA = '7308'
    GAMMA = '7309'
    THETA = '7310'
    VEGA = '7311'


IBKR_STREAM_FIELDS: List[str] = [
    IBKRField.LAST_PRICE,
    IBKRField.BID_PRICE,
    IBKRField.BID_SIZE,
    IBKRField.ASK_PRICE,
    IBKRField.ASK_SIZE,
    IBKRField.VOLUME,
    IBKRField.OPEN_INTEREST,
    IBKRField.IMPLIED_VOLATILITY,
    IBKRField.LAST_SIZE,
]

IBKR_PRIME_FIELDS: List[str] = [
    IBKRField.LAST_PRICE,
    IBKRField.BID_PRICE,
    IBKRField.BID_SIZE,
    IBKRField.ASK_PRICE,
    IBKRField.ASK_SIZE,
    IBKRField.VOLUME,
]

IBKR_SNAPSHOT_FIELDS: List[str] = [
    IBKRField.BID_PRICE,
    IBKRField.BID_SIZE,
    IBKRField.ASK_PRICE,
    IBKRField.ASK_SIZE,
    IBKRField.LAST_PRICE,
    IBKRField.VOLUME,
    IBKRField.OPEN_INTEREST,
    IBKRField.IMPLIED_VOLATILITY,
]

IBKR_MONTH_CODES = ['JAN', 'FEB', 'MAR', 'APR', 'MAY', 'JUN',
                    'JUL', 'AUG', 'SEP', 'OCT', 'NOV', 'DEC']

# =============================================================================
# TASTYTRADE DXLINK CONSTANTS
# =============================================================================

DXLINK_PROTOCOL_VERSION = '0.1-DXF-JS/1.0.0'
DXLINK_CONTROL_CHANNEL = 0
DXLINK_FEED_CHANNEL = 1

# Field order for COMPACT feed data, per event type
DXLINK_EVENT_FIELDS: Dict[str, List[str]] = {
    'Quote': ['eventType', 'eventSymbol', 'bidPrice', 'askPrice', 'bidSize', 'askSize'],
    'Trade': ['eventType', 'eventSymbol', 'price', 'dayVolume', 'size'],
    'TradeETH': ['eventType', 'eventSymbol', 'price', 'dayVolume', 'size'],
    'Greeks': ['eventType', 'eventSymbol', 'volatility', 'delta', 'gamma', 'theta', 'rho', 'vega'],
    'Profile': ['eventType', 'eventSymbol', 'description', 'shortSaleRestriction', 'tradingStatus',
                'statusReason', 'haltStartTime', 'haltEndTime', 'highLimitPrice', 'lowLimitPrice',
                'high52WeekPrice', 'low52WeekPrice'],
    'Summary': ['eventType', 'eventSymbol', 'openInterest', 'dayOpenPrice', 'dayHighPrice',
                'dayLowPrice', 'prevDayClosePrice'],
}

DXLINK_OPTION_EVENTS = ['Quote', 'Trade', 'Greeks', 'Summary']
DXLINK_EQUITY_EVENTS = ['Quote', 'Trade', 'TradeETH', 'Summary', 'Profile']

# =============================================================================
# SCHWAB STREAMER CONSTANTS
# =============================================================================

class SchwabEquityField(IntEnum):
    """LEVELONE_EQUITIES field numbers"""
    SYMBOL = 0
    BID_PRICE = 1
    ASK_PRICE = 2
    LAST_PRICE = 3
    BID_SIZE = 4
    ASK_SIZE = 5
    ASK_ID = 6
    BID_ID = 7
    TOTAL_VOLUME = 8
    LAST_SIZE = 9
    HIGH_PRICE = 10
    LOW_PRICE = 11
    CLOSE_PRICE = 12
    MARK = 33
    QUOTE_TIME_MILLIS = 34
    TRADE_TIME_MILLIS = 35


class SchwabOptionField(IntEnum):
    """LEVELONE_OPTIONS field numbers"""
    SYMBOL = 0
    DESCRIPTION = 1
    BID_PRICE = 2
    ASK_PRICE = 3
    LAST_PRICE = 4
    HIGH_PRICE = 5
    LOW_PRICE = 6
    CLOSE_PRICE = 7
    TOTAL_VOLUME = 8
    OPEN_INTEREST = 9
    VOLATILITY = 10
    OPTION_ROOT = 13
    UNDERLYING = 16
    DELTA = 22
    GAMMA = 23
    THETA = 24
    VEGA = 25
    RHO = 26
    UNDERLYING_PRICE = 29
    MARK = 31
    QUOTE_TIME_MILLIS = 32
    TRADE_TIME_MILLIS = 33
    STRIKE_PRICE = 45
    BID_SIZE = 46
    ASK_SIZE = 47
    LAST_SIZE = 48


class SchwabBookField(IntEnum):
    """OPTIONS_BOOK field numbers"""
    SYMBOL = 0
    BOOK_TIME = 1
    BIDS = 2
    ASKS = 3


SCHWAB_EQUITY_FIELD_LIST = ','.join(str(i) for i in range(50))
SCHWAB_OPTION_FIELD_LIST = ','.join(str(i) for i in range(56))
SCHWAB_BOOK_FIELD_LIST = '0,1,2,3'

# =============================================================================
# TRADESTATION CONSTANTS
# =============================================================================

TRADESTATION_STREAM_ACCEPT = 'application/vnd.tradestation.streams.v2+json'
TRADESTATION_GO_AWAY = 'GoAway'
TRADESTATION_END_SNAPSHOT = 'EndSnapshot'

# =============================================================================
# LOGGING CONSTANTS
# =============================================================================

# Log message formats
LOG_FORMATS = {
    'detailed': '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
    'simple': '%(asctime)s - %(levelname)s - %(component)s - %(message)s',
    'minimal': '%(levelname)s: %(message)s',
}
