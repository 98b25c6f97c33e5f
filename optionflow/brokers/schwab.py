"""
Schwab streamer session

Streaming credentials are ephemeral: a REST ``userPreference`` call returns
the customer id, correlation id, channel, function id and socket URL for
this connection. They are used in an ADMIN/LOGIN request, and nothing else
is accepted on the socket until the LOGIN response reports code 0.

Services:
    LEVELONE_EQUITIES   top of book and trades for tickers
    LEVELONE_OPTIONS    top of book, last, volume, open interest for options
    OPTIONS_BOOK        price levels; the best level supplements top of book

Option trades are not reported individually. A trade is inferred when the
last price changes and total volume increases, with the volume delta as its
size, classified against the quote in force before the update.
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional

from config.settings import SchwabConfig, StreamConfig, get_config
from optionflow.realtime.estimator import OIDeltaStrategy
from optionflow.realtime.types import SessionState, Venue
from optionflow.symbols.occ import is_canonical_symbol, parse_occ_symbol, underlying_for_root
from optionflow.utils.constants import (
    SCHWAB_BOOK_FIELD_LIST,
    SCHWAB_EQUITY_FIELD_LIST,
    SCHWAB_OPTION_FIELD_LIST,
    SchwabBookField,
    SchwabEquityField,
    SchwabOptionField,
)
from optionflow.utils.error_handler import AuthError, NetworkError, ProtocolError, SymbolError
from optionflow.utils.helpers import now_ms, optional_number, timestamp_to_ms
from .base import ChainQuote, VenueSession


def _value(content: Dict[str, Any], field: int) -> Optional[float]:
    return optional_number(content.get(str(int(field))))


class SchwabSession(VenueSession):
    """
    Schwab streaming session

    Example:
        >>> session = SchwabSession(access_token="...")
        >>> await session.connect()
        >>> await session.subscribe(["SPY", "SPY240119C00500000"])
    """

    venue = Venue.SCHWAB

    def __init__(self,
                 access_token: str,
                 schwab_config: Optional[SchwabConfig] = None,
                 stream_config: Optional[StreamConfig] = None,
                 oi_strategy: Optional[OIDeltaStrategy] = None):
        super().__init__(stream_config, oi_strategy)
        self.schwab_config = schwab_config or get_config().schwab
        self.api_base_url = self.schwab_config.api_base_url.rstrip('/')
        self.access_token = access_token

        # Ephemeral, per connection
        self.streamer_info: Dict[str, Any] = {}
        self.logged_in = False
        self._request_ids = itertools.count()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f"Bearer {self.access_token}",
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }

    # ==================== Handshake ====================

    async def _establish(self) -> None:
        self.state = SessionState.AUTHENTICATING
        await self._fetch_streamer_info()

        self.logged_in = False
        await self._start_socket(self.streamer_info['streamerSocketUrl'])
        await self._send_requests(self._request('ADMIN', 'LOGIN', {
            'Authorization': self.access_token,
            'SchwabClientChannel': self.streamer_info.get('schwabClientChannel'),
            'SchwabClientFunctionId': self.streamer_info.get('schwabClientFunctionId'),
        }))

    async def _fetch_streamer_info(self) -> None:
        preferences = await self._request_json(
            'GET', f"{self.api_base_url}/trader/v1/userPreference", headers=self._headers())
        try:
            info = preferences['streamerInfo'][0]
        except (KeyError, IndexError, TypeError) as exc:
            raise AuthError("Schwab user preferences carry no streamer info") from exc
        if not info.get('streamerSocketUrl'):
            raise AuthError("Schwab streamer info has no socket URL")
        self.streamer_info = info

    async def _close_protocol(self) -> None:
        if self.logged_in:
            await self._send_requests(self._request('ADMIN', 'LOGOUT', {}))

    def _clear_credentials(self) -> None:
        self.streamer_info = {}
        self.logged_in = False
        self._request_ids = itertools.count()

    async def _qos_loop(self) -> None:
        while True:
            await asyncio.sleep(self.schwab_config.qos_interval)
            try:
                await self._send_requests(self._request('ADMIN', 'QOS', {'qoslevel': '0'}))
            except NetworkError as exc:
                self.logger.warning(f"Keepalive failed: {exc}")
                return

    # ==================== Requests ====================

    def _request(self, service: str, command: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'service': service,
            'requestid': str(next(self._request_ids)),
            'command': command,
            'SchwabClientCustomerId': self.streamer_info.get('schwabClientCustomerId', ''),
            'SchwabClientCorrelId': self.streamer_info.get('schwabClientCorrelId', ''),
            'parameters': parameters,
        }

    async def _send_requests(self, *requests: Dict[str, Any]) -> None:
        await self._send({'requests': list(requests)})

    def _split(self, symbols: List[str]):
        tickers = [s for s in symbols if not is_canonical_symbol(s)]
        options = [self.translator.to_native(s) for s in symbols if is_canonical_symbol(s)]
        return tickers, options

    async def _subscribe_on_wire(self, symbols: List[str]) -> None:
        tickers, options = self._split(symbols)
        requests = []
        if tickers:
            requests.append(self._request('LEVELONE_EQUITIES', 'SUBS', {
                'keys': ','.join(tickers), 'fields': SCHWAB_EQUITY_FIELD_LIST}))
        if options:
            keys = ','.join(options)
            requests.append(self._request('LEVELONE_OPTIONS', 'SUBS', {
                'keys': keys, 'fields': SCHWAB_OPTION_FIELD_LIST}))
            requests.append(self._request('OPTIONS_BOOK', 'SUBS', {
                'keys': keys, 'fields': SCHWAB_BOOK_FIELD_LIST}))
        if requests:
            await self._send_requests(*requests)
            self.logger.info(f"Subscribed to {len(tickers)} tickers and {len(options)} options")

    async def _unsubscribe_on_wire(self, symbols: List[str]) -> None:
        tickers, options = self._split(symbols)
        requests = []
        if tickers:
            requests.append(self._request('LEVELONE_EQUITIES', 'UNSUBS', {'keys': ','.join(tickers)}))
        if options:
            keys = ','.join(options)
            requests.append(self._request('LEVELONE_OPTIONS', 'UNSUBS', {'keys': keys}))
            requests.append(self._request('OPTIONS_BOOK', 'UNSUBS', {'keys': keys}))
        if requests:
            await self._send_requests(*requests)

    # ==================== Inbound ====================

    async def _handle_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            raise ProtocolError("Schwab frames are JSON objects")

        for response in message.get('response', []):
            await self._handle_response(response)
        for item in message.get('data', []):
            self._handle_data(item)
        # 'notify' frames are heartbeats

    async def _handle_response(self, response: Dict[str, Any]) -> None:
        content = response.get('content') or {}
        code = content.get('code')

        if response.get('service') == 'ADMIN' and response.get('command') == 'LOGIN':
            if code == 0:
                self.logged_in = True
                self.logger.info("Logged in to Schwab streamer")
                self._spawn(self._qos_loop(), "qos")
                await self._mark_streaming()
            else:
                error = AuthError(f"Schwab login failed: {content.get('msg')}")
                if not self._fail_handshake(error):
                    self._report_error(error)
        elif code not in (0, None):
            self._report_error(ProtocolError(
                f"Schwab {response.get('service')}/{response.get('command')} failed: {content.get('msg')}"))

    def _handle_data(self, item: Dict[str, Any]) -> None:
        service = item.get('service')
        timestamp = timestamp_to_ms(item.get('timestamp'))
        for content in item.get('content', []):
            if not content.get('key'):
                continue
            if service == 'LEVELONE_EQUITIES':
                self._handle_equity(content, timestamp)
            elif service == 'LEVELONE_OPTIONS':
                self._handle_option(content, timestamp)
            elif service == 'OPTIONS_BOOK':
                self._handle_book(content, timestamp)

    def _handle_equity(self, content: Dict[str, Any], timestamp: int) -> None:
        self.cache.upsert_ticker(
            content['key'], timestamp,
            bid=_value(content, SchwabEquityField.BID_PRICE),
            bid_size=_value(content, SchwabEquityField.BID_SIZE),
            ask=_value(content, SchwabEquityField.ASK_PRICE),
            ask_size=_value(content, SchwabEquityField.ASK_SIZE),
            last=_value(content, SchwabEquityField.LAST_PRICE),
            volume=_value(content, SchwabEquityField.TOTAL_VOLUME),
        )

    def _option_symbol(self, native: str) -> Optional[str]:
        try:
            return self.translator.to_canonical(native)
        except SymbolError as exc:
            self._drop_frame(str(exc), native)
            return None

    def _handle_option(self, content: Dict[str, Any], timestamp: int) -> None:
        occ_symbol = self._option_symbol(content['key'])
        if occ_symbol is None:
            return

        bid = _value(content, SchwabOptionField.BID_PRICE)
        ask = _value(content, SchwabOptionField.ASK_PRICE)
        last = _value(content, SchwabOptionField.LAST_PRICE)
        volume = _value(content, SchwabOptionField.TOTAL_VOLUME)
        open_interest = _value(content, SchwabOptionField.OPEN_INTEREST)
        quote_fields = {
            'bid_size': _value(content, SchwabOptionField.BID_SIZE),
            'ask_size': _value(content, SchwabOptionField.ASK_SIZE),
            'open_interest': open_interest,
            'implied_volatility': _value(content, SchwabOptionField.VOLATILITY),
        }

        if open_interest:
            self.cache.estimator.set_base_open_interest(occ_symbol, open_interest)

        if self._record_inferred_trade(occ_symbol, last, volume, bid, ask, timestamp, **quote_fields):
            return
        self.cache.upsert_option(
            occ_symbol, timestamp, bid=bid, ask=ask, last=last, volume=volume,
            mark=_value(content, SchwabOptionField.MARK),
            strike=_value(content, SchwabOptionField.STRIKE_PRICE),
            **quote_fields,
        )

    def _handle_book(self, content: Dict[str, Any], timestamp: int) -> None:
        occ_symbol = self._option_symbol(content['key'])
        if occ_symbol is None:
            return

        bids = content.get(str(int(SchwabBookField.BIDS))) or []
        asks = content.get(str(int(SchwabBookField.ASKS))) or []
        if not bids and not asks:
            return
        best_bid = bids[0] if bids else {}
        best_ask = asks[0] if asks else {}
        self.cache.upsert_option_from_quote(
            occ_symbol,
            optional_number(best_bid.get('0')) or None,
            optional_number(best_bid.get('1')) or None,
            optional_number(best_ask.get('0')) or None,
            optional_number(best_ask.get('1')) or None,
            timestamp,
        )

    # ==================== REST ====================

    async def _chain_entries(self, underlying: str, expiration: Optional[str]) -> List[Dict[str, Any]]:
        """Contracts from ``/marketdata/v1/chains``, flattened across both maps"""
        params = {'symbol': underlying, 'contractType': 'ALL', 'includeUnderlyingQuote': 'true'}
        if expiration is not None:
            params['fromDate'] = expiration
            params['toDate'] = expiration
        chain = await self._request_json(
            'GET', f"{self.api_base_url}/marketdata/v1/chains", headers=self._headers(), params=params)

        contracts = []
        for key in ('callExpDateMap', 'putExpDateMap'):
            for strikes in (chain or {}).get(key, {}).values():
                for entries in strikes.values():
                    contracts.extend(entries)
        return contracts

    def _chain_quote(self, contract: Dict[str, Any]) -> Optional[ChainQuote]:
        occ_symbol = self.translator.try_to_canonical(contract.get('symbol', ''))
        if occ_symbol is None:
            return None
        return occ_symbol, {
            'bid': optional_number(contract.get('bid')),
            'bid_size': optional_number(contract.get('bidSize')),
            'ask': optional_number(contract.get('ask')),
            'ask_size': optional_number(contract.get('askSize')),
            'mark': optional_number(contract.get('mark')),
            'last': optional_number(contract.get('last')),
            'volume': optional_number(contract.get('totalVolume')),
            'open_interest': optional_number(contract.get('openInterest')),
            'implied_volatility': optional_number(contract.get('volatility')),
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
            for contract in await self._chain_entries(underlying, None):
                quote = self._chain_quote(contract)
                if quote is not None and quote[0] in targets:
                    self._apply_chain_quote(*quote, now_ms())

        await asyncio.gather(*(backfill(u, t) for u, t in groups.items()))
