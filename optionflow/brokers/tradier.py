"""
Tradier streaming session

A REST call creates a short-lived stream session id; the WebSocket payload
then names the full symbol list for that session. The stream has no way to
drop individual symbols, so unsubscribing tears the connection down and
rebuilds it with whatever remains subscribed.

Events consumed:
    quote     top of book
    trade     last print with cumulative day volume (cvol)
    timesale  individual prints with the NBBO in force; option prints are
              classified from these
"""

import asyncio
from typing import Any, Dict, List, Optional

from config.settings import StreamConfig, TradierConfig, get_config
from optionflow.realtime.estimator import OIDeltaStrategy
from optionflow.realtime.types import SessionState, Venue
from optionflow.symbols.occ import is_canonical_symbol, parse_occ_symbol, underlying_for_root
from optionflow.utils.error_handler import AuthError, ProtocolError, StreamError, SymbolError
from optionflow.utils.helpers import now_ms, optional_number, positive_or_none, timestamp_to_ms
from .base import ChainQuote, VenueSession

STREAM_FILTER = ['quote', 'trade', 'timesale']


class TradierSession(VenueSession):
    """
    Tradier streaming session

    Example:
        >>> session = TradierSession(access_token="...")
        >>> await session.connect()
        >>> await session.subscribe(["QQQ", "QQQ240119C00400000"])
    """

    venue = Venue.TRADIER

    def __init__(self,
                 access_token: str,
                 tradier_config: Optional[TradierConfig] = None,
                 stream_config: Optional[StreamConfig] = None,
                 oi_strategy: Optional[OIDeltaStrategy] = None):
        super().__init__(stream_config, oi_strategy)
        self.tradier_config = tradier_config or get_config().tradier
        self.api_base_url = self.tradier_config.api_base_url.rstrip('/')
        self.access_token = access_token
        self.session_id: Optional[str] = None

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f"Bearer {self.access_token}",
            'Accept': 'application/json',
        }

    # ==================== Handshake ====================

    async def _establish(self) -> None:
        self.state = SessionState.AUTHENTICATING
        response = await self._request_json(
            'POST', f"{self.api_base_url}/markets/events/session", headers=self._headers())
        session_id = ((response or {}).get('stream') or {}).get('sessionid')
        if not session_id:
            raise AuthError("Tradier did not return a stream session id")
        self.session_id = session_id

        await self._start_socket(self.tradier_config.ws_url)
        self.state = SessionState.NEGOTIATING
        await self._mark_streaming(session_id=session_id)

    def _clear_credentials(self) -> None:
        self.session_id = None

    # ==================== Subscriptions ====================

    async def _subscribe_on_wire(self, symbols: List[str]) -> None:
        # Each payload replaces the session's symbol list
        await self._send({
            'sessionid': self.session_id,
            'symbols': [self.translator.to_native(s) if is_canonical_symbol(s) else s
                        for s in self.subscribed_symbols],
            'filter': STREAM_FILTER,
            'linebreak': True,
        })
        self.logger.info(f"Streaming {len(self.subscribed_symbols)} symbols")

    async def _unsubscribe_on_wire(self, symbols: List[str]) -> None:
        await self._rebuild()

    async def _rebuild(self) -> None:
        """Reconnect from a fresh stream session carrying the remaining symbols"""
        self.logger.info(f"Rebuilding stream with {len(self.subscribed_symbols)} symbols")
        self.state = SessionState.CONNECTING
        await self._release_transport()
        self.session_id = None
        try:
            await self._open()
        except AuthError as exc:
            await self._give_up(exc)
        except StreamError as exc:
            await self._on_transport_lost(f"rebuild failed ({exc})")

    # ==================== Inbound ====================

    async def _handle_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            raise ProtocolError("Tradier frames are JSON objects")
        if 'error' in message:
            self._report_error(ProtocolError(f"Tradier stream error: {message['error']}"))
            return

        event_type = message.get('type')
        if event_type == 'quote':
            self._handle_quote(message)
        elif event_type == 'trade':
            self._handle_trade(message)
        elif event_type == 'timesale':
            self._handle_timesale(message)

    def _canonical(self, symbol: str) -> Optional[str]:
        return self.translator.try_to_canonical(symbol)

    def _handle_quote(self, event: Dict[str, Any]) -> None:
        symbol = event['symbol']
        timestamp = timestamp_to_ms(event.get('biddate') or event.get('askdate'))
        bid = positive_or_none(event.get('bid'))
        bid_size = optional_number(event.get('bidsz'))
        ask = positive_or_none(event.get('ask'))
        ask_size = optional_number(event.get('asksz'))

        occ_symbol = self._canonical(symbol)
        if occ_symbol is not None:
            self.cache.upsert_option_from_quote(occ_symbol, bid, bid_size, ask, ask_size, timestamp)
        else:
            self.cache.upsert_ticker_from_quote(symbol, bid, bid_size, ask, ask_size, timestamp)

    def _handle_trade(self, event: Dict[str, Any]) -> None:
        symbol = event['symbol']
        timestamp = timestamp_to_ms(event.get('date'))
        price = optional_number(event.get('price', event.get('last')))
        if price is None:
            raise ProtocolError("trade event without a price")
        day_volume = optional_number(event.get('cvol'))

        occ_symbol = self._canonical(symbol)
        if occ_symbol is not None:
            # Option prints are classified from timesale events
            self.cache.upsert_option(occ_symbol, timestamp, last=price, volume=day_volume)
        else:
            self.cache.upsert_ticker_from_trade(
                symbol, price, optional_number(event.get('size')), day_volume, timestamp)

    def _handle_timesale(self, event: Dict[str, Any]) -> None:
        occ_symbol = self._canonical(event['symbol'])
        if occ_symbol is None or event.get('cancel') in (True, 'true'):
            return
        price = optional_number(event.get('last'))
        size = optional_number(event.get('size'))
        if not price or not size:
            return

        existing = self.cache.options.get(occ_symbol)
        self.cache.upsert_option_from_timesale(
            occ_symbol, price, size,
            optional_number(event.get('bid')) or 0.0,
            optional_number(event.get('ask')) or 0.0,
            timestamp_to_ms(event.get('date')),
            # Day volume comes from trade events
            day_volume=existing.volume if existing is not None else None,
        )

    # ==================== REST ====================

    async def fetch_option_expirations(self, underlying: str) -> List[str]:
        response = await self._request_json(
            'GET', f"{self.api_base_url}/markets/options/expirations",
            headers=self._headers(), params={'symbol': underlying})
        dates = ((response or {}).get('expirations') or {}).get('date') or []
        return [dates] if isinstance(dates, str) else list(dates)

    async def _chain_entries(self, underlying: str, expiration: Optional[str]) -> List[Dict[str, Any]]:
        """Chain entries for one expiration, or for every listed expiration"""
        expirations = [expiration] if expiration else await self.fetch_option_expirations(underlying)

        contracts = []
        for day in expirations:
            response = await self._request_json(
                'GET', f"{self.api_base_url}/markets/options/chains",
                headers=self._headers(),
                params={'symbol': underlying, 'expiration': day, 'greeks': 'true'})
            options = ((response or {}).get('options') or {}).get('option') or []
            contracts.extend([options] if isinstance(options, dict) else options)
        return contracts

    def _chain_quote(self, contract: Dict[str, Any]) -> Optional[ChainQuote]:
        occ_symbol = self._canonical(contract.get('symbol', ''))
        if occ_symbol is None:
            return None
        greeks = contract.get('greeks') or {}
        return occ_symbol, {
            'bid': optional_number(contract.get('bid')),
            'bid_size': optional_number(contract.get('bidsize')),
            'ask': optional_number(contract.get('ask')),
            'ask_size': optional_number(contract.get('asksize')),
            'last': optional_number(contract.get('last')),
            'volume': optional_number(contract.get('volume')),
            'open_interest': optional_number(contract.get('open_interest')),
            'implied_volatility': optional_number(greeks.get('mid_iv')),
        }

    async def fetch_open_interest(self, symbols: List[str]) -> None:
        """Backfill base open interest, one chain request per underlying and expiration"""
        groups: Dict[tuple, set] = {}
        for symbol in symbols:
            canonical = self.normalize_symbol(symbol)
            try:
                parsed = parse_occ_symbol(canonical)
            except SymbolError:
                continue
            key = (underlying_for_root(parsed.root), parsed.expiration.isoformat())
            groups.setdefault(key, set()).add(canonical)

        async def backfill(underlying: str, expiration: str, targets: set):
            for contract in await self._chain_entries(underlying, expiration):
                quote = self._chain_quote(contract)
                if quote is not None and quote[0] in targets:
                    self._apply_chain_quote(*quote, now_ms())

        await asyncio.gather(*(backfill(u, e, t) for (u, e), t in groups.items()))
