"""
Venue Sessions

One streaming session per supported brokerage venue, all sharing the
``VenueSession`` contract:

- IBKRSession          WebSocket push with REST session renegotiation
- TastyTradeSession    DxLink multi-round handshake, compact feed encoding
- SchwabSession        REST streamer credentials, LOGIN frame, order book
- TradierSession       REST stream session, rebuild on unsubscribe
- TradeStationSession  chunked NDJSON HTTP streams with GoAway restarts
"""

from typing import Dict, Optional, Type, Union

from optionflow.realtime.types import Venue
from optionflow.utils.error_handler import SessionError
from .base import VenueSession
from .ibkr import IBKRSession
from .tastytrade import TastyTradeSession
from .schwab import SchwabSession
from .tradier import TradierSession
from .tradestation import TradeStationSession

SESSION_TYPES: Dict[Venue, Type[VenueSession]] = {
    Venue.IBKR: IBKRSession,
    Venue.TASTYTRADE: TastyTradeSession,
    Venue.SCHWAB: SchwabSession,
    Venue.TRADIER: TradierSession,
    Venue.TRADESTATION: TradeStationSession,
}


def create_session(venue: Union[Venue, str], credential: Optional[str] = None, **options) -> VenueSession:
    """
    Build the session for ``venue``.

    ``credential`` is the venue's access or session token (optional for an
    IBKR gateway that authenticates by cookie). Remaining keyword options
    go to the session constructor.
    """
    try:
        venue = Venue(venue.strip().lower()) if isinstance(venue, str) else Venue(venue)
    except ValueError as exc:
        raise SessionError(f"Unsupported venue: {venue!r}") from exc
    return SESSION_TYPES[venue](credential, **options)


__all__ = [
    'VenueSession',
    'IBKRSession',
    'TastyTradeSession',
    'SchwabSession',
    'TradierSession',
    'TradeStationSession',
    'SESSION_TYPES',
    'create_session',
]
