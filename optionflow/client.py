"""
Session Orchestrator

OptionFlowClient is the single entry point for consumers. It holds at most
one active venue session, routes control calls to it and republishes every
event the session emits on its own event surface, so listeners registered
on the client survive switching venues.

Data flow:
┌──────────────┐    ┌──────────────────┐    ┌──────────────────┐
│  Venue wire  │───▶│   VenueSession   │───▶│ NormalizedCache  │
└──────────────┘    └──────────────────┘    └──────────────────┘
                             │ events
                             ▼
                    ┌──────────────────┐    ┌──────────────────┐
                    │ OptionFlowClient │───▶│    listeners     │
                    └──────────────────┘    └──────────────────┘

Example:
    >>> client = OptionFlowClient()
    >>> client.on("option_update", print)
    >>> await client.connect("tradier", "ACCESS_TOKEN")
    >>> await client.subscribe_to_options(["QQQ240119C00400000"])
    >>> await client.fetch_open_interest()
"""

from typing import Dict, Iterable, List, Optional, Union

import pandas as pd

from config.settings import StreamConfig, get_config
from optionflow.brokers import VenueSession, create_session
from optionflow.realtime.estimator import OIDeltaStrategy
from optionflow.realtime.events import EventEmitter, Listener, Subscription
from optionflow.realtime.types import (
    EventType,
    FlowSummary,
    IntradayTrade,
    NormalizedOption,
    NormalizedTicker,
    Venue,
)
from optionflow.utils.error_handler import SessionError
from optionflow.utils.logger import get_logger


class OptionFlowClient:
    """
    Venue-agnostic streaming client

    Nothing above this class needs to know which venue is active: every
    venue session exposes the same operations and the same events.
    """

    def __init__(self,
                 stream_config: Optional[StreamConfig] = None,
                 oi_strategy: Optional[OIDeltaStrategy] = None):
        self.stream_config = stream_config or get_config().stream
        self.oi_strategy = oi_strategy
        self.logger = get_logger("OptionFlowClient")
        self.events = EventEmitter("OptionFlowClientEvents", logger=self.logger)

        self.session: Optional[VenueSession] = None
        self._forwarders: List[Subscription] = []

    @property
    def venue(self) -> Optional[Venue]:
        return self.session.venue if self.session is not None else None

    # ==================== Lifecycle ====================

    async def connect(self, venue: Union[Venue, str], credential: Optional[str] = None, **options) -> None:
        """
        Replace any active session with a new one for ``venue`` and connect it.

        Keyword options are passed to the venue session constructor.

        Raises:
            AuthError: the venue rejected ``credential``
            NetworkError: the venue could not be reached
            SessionError: ``venue`` is not supported
        """
        await self.disconnect()

        options.setdefault('stream_config', self.stream_config)
        options.setdefault('oi_strategy', self.oi_strategy)
        session = create_session(venue, credential, **options)
        self._attach(session)

        try:
            await session.connect()
        except BaseException:
            self._detach()
            raise
        self.logger.info(f"Active venue: {session.venue.value}")

    async def disconnect(self) -> None:
        """Tear down the active session, if any"""
        session = self.session
        if session is None:
            return
        try:
            await session.disconnect()
        finally:
            self._detach()

    def _attach(self, session: VenueSession) -> None:
        self.session = session
        for event in EventType:
            self._forwarders.append(
                session.on(event, lambda payload, event=event: self.events.emit(event, payload)))

    def _detach(self) -> None:
        for subscription in self._forwarders:
            subscription.unsubscribe()
        self._forwarders = []
        self.session = None

    def _require_session(self) -> VenueSession:
        if self.session is None:
            raise SessionError("No active venue session; call connect() first")
        return self.session

    def is_connected(self) -> bool:
        return self.session is not None and self.session.is_connected()

    async def __aenter__(self) -> 'OptionFlowClient':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    # ==================== Subscriptions ====================

    async def subscribe_to_tickers(self, symbols: Iterable[str]) -> List[str]:
        return await self._require_session().subscribe(symbols)

    async def subscribe_to_options(self, symbols: Iterable[str]) -> List[str]:
        return await self._require_session().subscribe(symbols)

    async def unsubscribe_from_tickers(self, symbols: Iterable[str]) -> List[str]:
        return await self._require_session().unsubscribe(symbols)

    async def unsubscribe_from_options(self, symbols: Iterable[str]) -> List[str]:
        return await self._require_session().unsubscribe(symbols)

    async def unsubscribe_from_all(self) -> List[str]:
        return await self._require_session().unsubscribe_from_all()

    def get_subscribed_tickers(self) -> List[str]:
        return self.session.get_subscribed_tickers() if self.session is not None else []

    def get_subscribed_options(self) -> List[str]:
        return self.session.get_subscribed_options() if self.session is not None else []

    # ==================== REST ====================

    async def fetch_open_interest(self, symbols: Optional[Iterable[str]] = None) -> None:
        """Backfill base open interest; defaults to every subscribed option"""
        session = self._require_session()
        targets = list(symbols) if symbols is not None else session.get_subscribed_options()
        if not targets:
            self.logger.debug("No option symbols to backfill")
            return
        await session.fetch_open_interest(targets)

    async def fetch_options_chain(self, underlying: str, expiration: Optional[str] = None) -> List[NormalizedOption]:
        return await self._require_session().fetch_options_chain(underlying, expiration)

    # ==================== Reads ====================

    def get_option(self, symbol: str) -> Optional[NormalizedOption]:
        return self.session.get_option(symbol) if self.session is not None else None

    def get_all_options(self) -> Dict[str, NormalizedOption]:
        return self.session.get_all_options() if self.session is not None else {}

    def get_ticker(self, symbol: str) -> Optional[NormalizedTicker]:
        return self.session.get_ticker(symbol) if self.session is not None else None

    def get_all_tickers(self) -> Dict[str, NormalizedTicker]:
        return self.session.get_all_tickers() if self.session is not None else {}

    def get_intraday_trades(self, symbol: str) -> List[IntradayTrade]:
        return self.session.get_intraday_trades(symbol) if self.session is not None else []

    def get_flow_summary(self, symbol: str) -> FlowSummary:
        return self.session.get_flow_summary(symbol) if self.session is not None else FlowSummary()

    def reset_intraday_data(self, symbols: Optional[Iterable[str]] = None) -> None:
        if self.session is not None:
            self.session.reset_intraday_data(symbols)

    def trades_frame(self, symbol: Optional[str] = None) -> pd.DataFrame:
        return self._require_session().trades_frame(symbol)

    # ==================== Events ====================

    def on(self, event: Union[EventType, str], listener: Listener) -> Subscription:
        return self.events.on(event, listener)

    def once(self, event: Union[EventType, str], listener: Listener) -> Subscription:
        return self.events.once(event, listener)

    def off(self, event: Union[EventType, str], listener: Listener) -> bool:
        return self.events.off(event, listener)

    def __repr__(self):
        return f"OptionFlowClient(session={self.session!r})"
