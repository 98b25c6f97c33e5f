"""
TastyTrade DxLink session

Market data is served by dxFeed's DxLink WebSocket using a short-lived API
quote token obtained over REST. The handshake runs over the control channel
(0) and then the feed channel (1):

    -> SETUP
    <- SETUP
    <- AUTH_STATE UNAUTHORIZED      expected: the server wants credentials
    -> AUTH {token}
    <- AUTH_STATE AUTHORIZED        keepalives start
    -> CHANNEL_REQUEST FEED
    <- CHANNEL_OPENED
    -> FEED_SETUP COMPACT
    <- FEED_CONFIG                  subscriptions are accepted from here on
    -> FEED_SUBSCRIPTION

FEED_DATA in COMPACT format carries positional arrays,
``["Quote", ["Quote", ".SPY240119C500", 1.2, 1.3, 10, 12, ...]]``, decoded by
zipping the values against ``DXLINK_EVENT_FIELDS``. An UNAUTHORIZED state
received after authorization means the token was revoked: it is reported
and the session reconnects with a fresh token.
"""

import asyncio
from typing import Any, Dict, List, Optional

from config.settings import StreamConfig, TastyTradeConfig, get_config
from optionflow.realtime.estimator import OIDeltaStrategy
from optionflow.realtime.types import SessionState, Venue
from optionflow.symbols.occ import (
    is_canonical_symbol,
    is_option_symbol,
    normalize_occ_symbol,
    parse_occ_symbol,
    underlying_for_root,
)
from optionflow.utils.constants import (
    DXLINK_CONTROL_CHANNEL,
    DXLINK_EQUITY_EVENTS,
    DXLINK_EVENT_FIELDS,
    DXLINK_FEED_CHANNEL,
    DXLINK_OPTION_EVENTS,
    DXLINK_PROTOCOL_VERSION,
)
from optionflow.utils.error_handler import AuthError, NetworkError, ProtocolError, SymbolError
from optionflow.utils.helpers import now_ms, optional_number, positive_or_none
from .base import ChainQuote, VenueSession

USER_AGENT = 'optionflow/1.0'


def decode_compact(event_type: str, values: List[Any]) -> List[Dict[str, Any]]:
    """
    Zip COMPACT values into named records using the event's field schema.

    ``values`` may hold several events back to back.

    Example:
        >>> decode_compact('Quote', ['Quote', 'SPY', 500.1, 500.2, 3, 4])
        [{'eventType': 'Quote', 'eventSymbol': 'SPY', 'bidPrice': 500.1, 'askPrice': 500.2, 'bidSize': 3, 'askSize': 4}]
    """
    fields = DXLINK_EVENT_FIELDS.get(event_type)
    if fields is None:
        raise ProtocolError(f"No field schema for event type {event_type!r}")
    width = len(fields)
    return [dict(zip(fields, values[i:i + width])) for i in range(0, len(values), width)]


class TastyTradeSession(VenueSession):
    """
    TastyTrade streaming session over DxLink

    Example:
        >>> session = await TastyTradeSession.from_credentials("user", "secret")
        >>> await session.connect()
        >>> await session.subscribe(["SPY", "SPY240119C00500000"])
    """

    venue = Venue.TASTYTRADE

    def __init__(self,
                 session_token: str,
                 sandbox: Optional[bool] = None,
                 tastytrade_config: Optional[TastyTradeConfig] = None,
                 stream_config: Optional[StreamConfig] = None,
                 oi_strategy: Optional[OIDeltaStrategy] = None):
        super().__init__(stream_config, oi_strategy)
        self.tastytrade_config = tastytrade_config or get_config().tastytrade
        self.sandbox = self.tastytrade_config.sandbox if sandbox is None else sandbox
        self.api_base_url = (self.tastytrade_config.sandbox_api_base_url if self.sandbox
                             else self.tastytrade_config.api_base_url).rstrip('/')
        self.session_token = session_token

        # Ephemeral, per connection
        self.quote_token: Optional[str] = None
        self.dxlink_url: Optional[str] = None
        self.auth_sent = False
        self.authorized = False

        self.streamer_to_occ: Dict[str, str] = {}
        self.occ_to_streamer: Dict[str, str] = {}

    @classmethod
    async def from_credentials(cls, username: str, password: str,
                               remember_me: bool = False, **kwargs) -> 'TastyTradeSession':
        """Log in with username and password and build a session from the token"""
        session = cls(session_token='', **kwargs)
        response = await session._request_json(
            'POST', f"{session.api_base_url}/sessions",
            headers={'Accept': 'application/json', 'User-Agent': USER_AGENT},
            json_body={'login': username, 'password': password, 'remember-me': remember_me},
        )
        try:
            session.session_token = response['data']['session-token']
        except (KeyError, TypeError) as exc:
            raise AuthError("TastyTrade login response carried no session token") from exc
        return session

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f"Bearer {self.session_token}",
            'Accept': 'application/json',
            'User-Agent': USER_AGENT,
        }

    # ==================== Handshake ====================

    async def _establish(self) -> None:
        self.state = SessionState.AUTHENTICATING
        await self._fetch_quote_token()

        self.auth_sent = False
        self.authorized = False
        await self._start_socket(self.dxlink_url)
        await self._send({
            'type': 'SETUP',
            'channel': DXLINK_CONTROL_CHANNEL,
            'version': DXLINK_PROTOCOL_VERSION,
            'keepaliveTimeout': self.tastytrade_config.keepalive_timeout,
            'acceptKeepaliveTimeout': self.tastytrade_config.keepalive_timeout,
        })

    async def _fetch_quote_token(self) -> None:
        response = await self._request_json('GET', f"{self.api_base_url}/api-quote-tokens", headers=self._headers())
        try:
            self.quote_token = response['data']['token']
            self.dxlink_url = response['data']['dxlink-url']
        except (KeyError, TypeError) as exc:
            raise AuthError("TastyTrade quote token response is missing token or dxlink-url") from exc

    def _clear_credentials(self) -> None:
        self.quote_token = None
        self.dxlink_url = None
        self.auth_sent = False
        self.authorized = False

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tastytrade_config.keepalive_interval)
            try:
                await self._send({'type': 'KEEPALIVE', 'channel': DXLINK_CONTROL_CHANNEL})
            except NetworkError as exc:
                self.logger.warning(f"Keepalive failed: {exc}")
                return

    # ==================== Inbound ====================

    async def _handle_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            raise ProtocolError("DxLink frames are JSON objects")
        kind = message.get('type')

        if kind == 'AUTH_STATE':
            await self._handle_auth_state(message.get('state'))
        elif kind == 'CHANNEL_OPENED':
            if message.get('channel') == DXLINK_FEED_CHANNEL:
                await self._send({
                    'type': 'FEED_SETUP',
                    'channel': DXLINK_FEED_CHANNEL,
                    'acceptAggregationPeriod': self.tastytrade_config.aggregation_period,
                    'acceptDataFormat': 'COMPACT',
                    'acceptEventFields': DXLINK_EVENT_FIELDS,
                })
        elif kind == 'FEED_CONFIG':
            if self.state is not SessionState.STREAMING:
                self.logger.info("Feed configured")
                await self._mark_streaming()
        elif kind == 'FEED_DATA':
            self._handle_feed_data(message.get('data') or [])
        elif kind == 'ERROR':
            error = ProtocolError(f"DxLink error: {message.get('error')} - {message.get('message')}")
            if not self._fail_handshake(error):
                self._report_error(error)
        elif kind in ('SETUP', 'KEEPALIVE', 'CHANNEL_CLOSED'):
            pass
        else:
            self.logger.debug(f"Ignoring DxLink message type {kind!r}")

    async def _handle_auth_state(self, state: Optional[str]) -> None:
        if state == 'UNAUTHORIZED' and not self.auth_sent:
            # First state after SETUP; answer with the quote token
            self.auth_sent = True
            await self._send({'type': 'AUTH', 'channel': DXLINK_CONTROL_CHANNEL, 'token': self.quote_token})
        elif state == 'AUTHORIZED':
            self.authorized = True
            self.state = SessionState.NEGOTIATING
            self.logger.info("DxLink authorized")
            self._spawn(self._keepalive_loop(), "keepalive")
            await self._send({
                'type': 'CHANNEL_REQUEST',
                'channel': DXLINK_FEED_CHANNEL,
                'service': 'FEED',
                'parameters': {'contract': 'AUTO'},
            })
        elif state == 'UNAUTHORIZED' and self.authorized:
            self.authorized = False
            self._report_error(AuthError("DxLink authorization lost"))
            await self._on_transport_lost("authorization lost")
        elif state == 'UNAUTHORIZED':
            if not self._fail_handshake(AuthError("DxLink rejected the quote token")):
                self._report_error(AuthError("DxLink rejected the quote token"))
        else:
            raise ProtocolError(f"Unknown AUTH_STATE {state!r}")

    def _handle_feed_data(self, data: List[Any]) -> None:
        # [eventType, [values...], eventType, [values...], ...]
        for i in range(0, len(data) - 1, 2):
            event_type, values = data[i], data[i + 1]
            if event_type not in DXLINK_EVENT_FIELDS:
                self.logger.debug(f"Skipping unknown event type {event_type!r}")
                continue
            for event in decode_compact(event_type, values):
                self._process_event(event_type, event)

    def _canonical_for(self, streamer_symbol: str) -> Optional[str]:
        mapped = self.streamer_to_occ.get(streamer_symbol)
        if mapped is not None:
            return mapped
        try:
            return self.translator.to_canonical(streamer_symbol)
        except SymbolError as exc:
            self._drop_frame(str(exc), streamer_symbol)
            return None

    def _process_event(self, event_type: str, event: Dict[str, Any]) -> None:
        streamer_symbol = event.get('eventSymbol')
        if not streamer_symbol:
            return
        is_option = str(streamer_symbol).startswith('.')
        symbol = self._canonical_for(streamer_symbol) if is_option else streamer_symbol
        if symbol is None:
            return
        timestamp = now_ms()

        if event_type == 'Quote':
            bid, ask = optional_number(event.get('bidPrice')), optional_number(event.get('askPrice'))
            bid_size, ask_size = optional_number(event.get('bidSize')), optional_number(event.get('askSize'))
            if is_option:
                self.cache.upsert_option_from_quote(symbol, bid, bid_size, ask, ask_size, timestamp)
            else:
                self.cache.upsert_ticker_from_quote(symbol, bid, bid_size, ask, ask_size, timestamp)

        elif event_type in ('Trade', 'TradeETH'):
            price = positive_or_none(event.get('price'))
            if price is None:
                return
            size = optional_number(event.get('size')) or 0.0
            day_volume = positive_or_none(event.get('dayVolume'))
            if is_option:
                self.cache.upsert_option_from_trade(symbol, price, size, day_volume, timestamp)
            else:
                self.cache.upsert_ticker_from_trade(symbol, price, size, day_volume, timestamp)

        elif event_type == 'Greeks' and is_option:
            volatility = positive_or_none(event.get('volatility'))
            if volatility is not None:
                self.cache.upsert_option(symbol, timestamp, implied_volatility=volatility)

        elif event_type == 'Summary' and is_option:
            open_interest = positive_or_none(event.get('openInterest'))
            if open_interest is not None:
                self.cache.estimator.set_base_open_interest(symbol, open_interest)
                self.cache.upsert_option(symbol, timestamp, open_interest=open_interest)

    # ==================== Subscriptions ====================

    def _streamer_symbol(self, symbol: str) -> str:
        if symbol in self.occ_to_streamer:
            return self.occ_to_streamer[symbol]
        if is_canonical_symbol(symbol):
            return self.translator.to_native(symbol)
        return symbol

    def _feed_entries(self, symbols: List[str]) -> List[Dict[str, str]]:
        entries = []
        for symbol in symbols:
            streamer_symbol = self._streamer_symbol(symbol)
            events = DXLINK_OPTION_EVENTS if streamer_symbol.startswith('.') else DXLINK_EQUITY_EVENTS
            entries.extend({'type': event, 'symbol': streamer_symbol} for event in events)
        return entries

    async def _subscribe_on_wire(self, symbols: List[str]) -> None:
        await self._send({
            'type': 'FEED_SUBSCRIPTION',
            'channel': DXLINK_FEED_CHANNEL,
            'reset': False,
            'add': self._feed_entries(symbols),
        })
        self.logger.info(f"Subscribed to {len(symbols)} symbols")

    async def _unsubscribe_on_wire(self, symbols: List[str]) -> None:
        await self._send({
            'type': 'FEED_SUBSCRIPTION',
            'channel': DXLINK_FEED_CHANNEL,
            'remove': self._feed_entries(symbols),
        })

    # ==================== REST ====================

    async def _chain_entries(self, underlying: str, expiration: Optional[str]) -> List[Dict[str, Any]]:
        """
        Option chain items for ``underlying``, optionally for one expiration.

        Nested chains are flattened to one item per contract carrying
        ``symbol``, ``streamer-symbol``, ``expiration-date``, ``strike-price``
        and ``option-type``.
        """
        response = await self._request_json(
            'GET', f"{self.api_base_url}/option-chains/{underlying}/nested", headers=self._headers())
        items = (response or {}).get('data', {}).get('items', [])

        contracts = []
        for item in items:
            if 'expirations' not in item:
                contracts.append(item)
                continue
            for exp in item['expirations']:
                for strike in exp.get('strikes', []):
                    for flag, key in (('C', 'call'), ('P', 'put')):
                        if strike.get(key):
                            contracts.append({
                                'symbol': strike[key],
                                'streamer-symbol': strike.get(f'{key}-streamer-symbol'),
                                'root-symbol': item.get('root-symbol'),
                                'expiration-date': exp.get('expiration-date'),
                                'strike-price': strike.get('strike-price'),
                                'option-type': flag,
                            })

        if expiration is not None:
            contracts = [c for c in contracts if c.get('expiration-date') == expiration]
        return contracts

    def _contract_symbol(self, item: Dict[str, Any]) -> Optional[str]:
        occ = item.get('symbol')
        if occ and is_option_symbol(occ):
            return normalize_occ_symbol(occ)
        streamer_symbol = item.get('streamer-symbol')
        if streamer_symbol:
            return self.translator.try_to_canonical(streamer_symbol)
        return None

    def _chain_quote(self, item: Dict[str, Any]) -> Optional[ChainQuote]:
        occ_symbol = self._contract_symbol(item)
        if occ_symbol is None:
            return None
        streamer_symbol = item.get('streamer-symbol')
        if streamer_symbol:
            self.streamer_to_occ[streamer_symbol] = occ_symbol
            self.occ_to_streamer[occ_symbol] = streamer_symbol
        return occ_symbol, {
            'bid': optional_number(item.get('bid')),
            'bid_size': optional_number(item.get('bid-size')),
            'ask': optional_number(item.get('ask')),
            'ask_size': optional_number(item.get('ask-size')),
            'last': optional_number(item.get('last')),
            'volume': optional_number(item.get('volume')),
            'open_interest': optional_number(item.get('open-interest')),
            'implied_volatility': optional_number(item.get('implied-volatility')),
        }

    async def fetch_open_interest(self, symbols: List[str]) -> None:
        """Backfill base open interest from each underlying's option chain"""
        groups: Dict[str, set] = {}
        for symbol in symbols:
            canonical = self.normalize_symbol(symbol)
            try:
                root = parse_occ_symbol(canonical).root
            except SymbolError:
                continue
            groups.setdefault(underlying_for_root(root), set()).add(canonical)

        async def backfill(underlying: str, targets: set):
            for item in await self._chain_entries(underlying, None):
                quote = self._chain_quote(item)
                if quote is not None and quote[0] in targets:
                    self._apply_chain_quote(*quote, now_ms())

        await asyncio.gather(*(backfill(u, t) for u, t in groups.items()))
