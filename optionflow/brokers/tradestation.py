"""
TradeStation HTTP streaming session

TradeStation streams market data over long-lived chunked HTTP responses
instead of a socket. Every stream carries newline-delimited JSON; records
may be split across network chunks, so bytes are accumulated until a
newline completes a record.

Streams are keyed by id:
    quotes, quotes_2, ...      equity quotes, one per symbol group
    options, options_2, ...    option quotes (legs[i].Symbol parameters)
    chain_<underlying>         option chain stream for one underlying

A ``StreamStatus: GoAway`` record means the server is rotating the stream;
the same stream is reopened with the same parameters after the base
reconnect delay. ``EndSnapshot`` marks the end of the initial snapshot.
"""

import asyncio
import codecs
import json
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

from config.settings import StreamConfig, TradeStationConfig, get_config
from optionflow.realtime.estimator import OIDeltaStrategy
from optionflow.realtime.types import NormalizedTicker, SessionState, Venue
from optionflow.symbols.occ import build_occ_symbol, is_canonical_symbol
from optionflow.utils.constants import (
    MILLISECONDS_PER_SECOND,
    TRADESTATION_END_SNAPSHOT,
    TRADESTATION_GO_AWAY,
    TRADESTATION_STREAM_ACCEPT,
)
from optionflow.utils.error_handler import AuthError, NetworkError, ProtocolError, SymbolError
from optionflow.utils.helpers import now_ms, optional_number, timestamp_to_ms
from .base import TRANSPORT_EXCEPTIONS, ChainQuote, VenueSession

QUOTES = 'quotes'
OPTIONS = 'options'
CHAIN_PREFIX = 'chain_'

# The symbols endpoint accepts at most 50 symbols per request
SYMBOL_DETAILS_BATCH = 50

RecordHandler = Callable[[Dict[str, Any]], None]
StreamSpec = Tuple[str, Optional[Dict[str, str]], RecordHandler]


class TradeStationSession(VenueSession):
    """
    TradeStation streaming session

    Example:
        >>> session = TradeStationSession(access_token="...")
        >>> await session.connect()
        >>> await session.subscribe(["MSFT", "MSFT 220916C305"])
        >>> await session.stream_option_chain("MSFT", expiration="2022-09-16")
    """

    venue = Venue.TRADESTATION

    def __init__(self,
                 access_token: str,
                 tradestation_config: Optional[TradeStationConfig] = None,
                 stream_config: Optional[StreamConfig] = None,
                 oi_strategy: Optional[OIDeltaStrategy] = None):
        super().__init__(stream_config, oi_strategy)
        self.tradestation_config = tradestation_config or get_config().tradestation
        self.api_base_url = self.tradestation_config.api_base_url.rstrip('/')
        self.access_token = access_token

        # Chain streams requested by the caller, by underlying
        self.chain_streams: Dict[str, Dict[str, str]] = {}
        self._streams: Dict[str, asyncio.Task] = {}
        self._stream_specs: Dict[str, StreamSpec] = {}

    def update_access_token(self, access_token: str) -> None:
        """Use a refreshed token for subsequent requests and stream restarts"""
        self.access_token = access_token

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f"Bearer {self.access_token}",
            'Accept': 'application/json',
        }

    def _stream_headers(self) -> Dict[str, str]:
        return {
            'Authorization': f"Bearer {self.access_token}",
            'Accept': TRADESTATION_STREAM_ACCEPT,
        }

    # ==================== Handshake ====================

    async def _establish(self) -> None:
        self.state = SessionState.AUTHENTICATING
        # Token check; a 401 surfaces as AuthError
        await self._request_json('GET', f"{self.api_base_url}/brokerage/accounts", headers=self._headers())

        self.state = SessionState.NEGOTIATING
        await self._mark_streaming()
        for underlying in list(self.chain_streams):
            self._start_chain_stream(underlying)

    def _clear_credentials(self) -> None:
        self.chain_streams.clear()
        self._streams.clear()
        self._stream_specs.clear()

    # ==================== Stream groups ====================

    def _symbol_groups(self, symbols: List[str]) -> List[List[str]]:
        size = self.tradestation_config.max_symbols_per_stream
        return [symbols[i:i + size] for i in range(0, len(symbols), size)]

    @staticmethod
    def _group_id(kind: str, index: int) -> str:
        return kind if index == 0 else f"{kind}_{index + 1}"

    def _quote_stream_spec(self, tickers: List[str]) -> StreamSpec:
        path = quote(','.join(tickers), safe='')
        return f"{self.api_base_url}/marketdata/stream/quotes/{path}", None, self._handle_quote_record

    def _option_stream_spec(self, options: List[str]) -> StreamSpec:
        params = {}
        for index, symbol in enumerate(options):
            params[f"legs[{index}].Symbol"] = self.translator.to_native(symbol)
            params[f"legs[{index}].Ratio"] = '1'
        params['enableGreeks'] = 'true'
        return f"{self.api_base_url}/marketdata/stream/options/quotes", params, self._handle_option_record

    def _refresh_streams(self, kind: str) -> None:
        """Restart one stream kind so it carries the current subscriptions"""
        if kind == QUOTES:
            groups = self._symbol_groups(self.get_subscribed_tickers())
            specs = [self._quote_stream_spec(group) for group in groups]
        else:
            groups = self._symbol_groups(self.get_subscribed_options())
            specs = [self._option_stream_spec(group) for group in groups]

        wanted = set()
        for index, spec in enumerate(specs):
            stream_id = self._group_id(kind, index)
            wanted.add(stream_id)
            self._start_stream(stream_id, *spec)

        stale = [s for s in self._stream_specs
                 if (s == kind or s.startswith(f"{kind}_")) and s not in wanted]
        for stream_id in stale:
            self._stop_stream(stream_id)

    @staticmethod
    def _kinds(symbols: List[str]) -> List[str]:
        kinds = {OPTIONS if is_canonical_symbol(s) else QUOTES for s in symbols}
        return sorted(kinds, reverse=True)

    async def _subscribe_on_wire(self, symbols: List[str]) -> None:
        for kind in self._kinds(symbols):
            self._refresh_streams(kind)

    async def _unsubscribe_on_wire(self, symbols: List[str]) -> None:
        for kind in self._kinds(symbols):
            self._refresh_streams(kind)

    # ==================== Chain streams ====================

    async def stream_option_chain(self,
                                  underlying: str,
                                  expiration: Optional[str] = None,
                                  strike_proximity: Optional[int] = None,
                                  enable_greeks: Optional[bool] = None,
                                  option_type: Optional[str] = None) -> None:
        """
        Stream the option chain for ``underlying``.

        Chain legs carry open interest, which seeds base open interest. The
        stream is restarted with the same parameters after reconnects.
        """
        underlying = underlying.strip().upper()
        params = {}
        if expiration:
            params['expiration'] = expiration
        if strike_proximity:
            params['strikeProximity'] = str(strike_proximity)
        if enable_greeks is not None:
            params['enableGreeks'] = 'true' if enable_greeks else 'false'
        if option_type:
            params['optionType'] = option_type

        self.chain_streams[underlying] = params
        if self.is_connected():
            self._start_chain_stream(underlying)

    async def stop_option_chain(self, underlying: str) -> None:
        underlying = underlying.strip().upper()
        self.chain_streams.pop(underlying, None)
        self._stop_stream(f"{CHAIN_PREFIX}{underlying}")

    def _start_chain_stream(self, underlying: str) -> None:
        url = f"{self.api_base_url}/marketdata/stream/options/chains/{quote(underlying, safe='')}"
        self._start_stream(f"{CHAIN_PREFIX}{underlying}", url,
                           dict(self.chain_streams[underlying]) or None, self._handle_option_record)

    # ==================== Stream plumbing ====================

    def _start_stream(self, stream_id: str, url: str,
                      params: Optional[Dict[str, str]], handler: RecordHandler) -> None:
        self._stop_stream(stream_id)
        self._stream_specs[stream_id] = (url, params, handler)
        self._streams[stream_id] = self._spawn(self._run_stream(stream_id, url, params, handler),
                                               f"stream-{stream_id}")

    def _stop_stream(self, stream_id: str) -> None:
        self._stream_specs.pop(stream_id, None)
        task = self._streams.pop(stream_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def active_streams(self) -> List[str]:
        return [s for s, task in self._streams.items() if not task.done()]

    async def _run_stream(self, stream_id: str, url: str,
                          params: Optional[Dict[str, str]], handler: RecordHandler) -> None:
        """Read one chunked response, splitting records on newlines"""
        try:
            chunks = await self._open_stream(url, headers=self._stream_headers(), params=params)
        except AuthError as exc:
            self._report_error(exc)
            return
        except TRANSPORT_EXCEPTIONS + (NetworkError,) as exc:
            await self._stream_lost(stream_id, f"stream {stream_id} failed to open ({exc})")
            return

        self.logger.debug(f"Stream {stream_id} open")
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        buffer = ''
        try:
            async for chunk in chunks:
                buffer += decoder.decode(chunk)
                lines = buffer.split('\n')
                buffer = lines.pop()
                for line in lines:
                    if self._handle_line(stream_id, line, handler):
                        self._spawn(self._restart_after_go_away(stream_id), f"restart-{stream_id}")
                        return
            reason = f"stream {stream_id} ended"
        except TRANSPORT_EXCEPTIONS as exc:
            reason = f"stream {stream_id} failed ({exc})"
        finally:
            await chunks.aclose()
        await self._stream_lost(stream_id, reason)

    async def _stream_lost(self, stream_id: str, reason: str) -> None:
        if self._streams.get(stream_id) is asyncio.current_task() and not self._closing:
            await self._on_transport_lost(reason)

    async def _restart_after_go_away(self, stream_id: str) -> None:
        await asyncio.sleep(self.config.base_reconnect_delay_ms / MILLISECONDS_PER_SECOND)
        spec = self._stream_specs.get(stream_id)
        if spec is None or not self.is_connected():
            return
        self.logger.info(f"Restarting stream {stream_id}")
        self._start_stream(stream_id, *spec)

    def _handle_line(self, stream_id: str, line: str, handler: RecordHandler) -> bool:
        """Process one NDJSON record; returns True when the server sent GoAway"""
        line = line.strip()
        if not line:
            return False
        if self.config.verbose:
            self.logger.debug(f"<< [{stream_id}] {line[:500]}")

        try:
            record = json.loads(line)
        except ValueError:
            self._drop_frame("malformed JSON record", line)
            return False
        if not isinstance(record, dict):
            self._drop_frame("unexpected record", line)
            return False

        status = record.get('StreamStatus')
        if status == TRADESTATION_GO_AWAY:
            self.logger.info(f"Stream {stream_id} received GoAway")
            return True
        if status == TRADESTATION_END_SNAPSHOT:
            self.logger.debug(f"Stream {stream_id} snapshot complete")
            return False
        if status or 'Heartbeat' in record:
            return False
        if record.get('Error'):
            self._report_error(ProtocolError(f"TradeStation {stream_id} error: {record['Error']}"))
            return False

        try:
            handler(record)
        except Exception as exc:
            self._drop_frame(repr(exc), line)
        return False

    # ==================== Records ====================

    def _handle_quote_record(self, record: Dict[str, Any]) -> None:
        symbol = record.get('Symbol')
        if not symbol:
            return
        self.cache.upsert_ticker(
            symbol, timestamp_to_ms(record.get('TradeTime')),
            bid=optional_number(record.get('Bid')),
            bid_size=optional_number(record.get('BidSize')),
            ask=optional_number(record.get('Ask')),
            ask_size=optional_number(record.get('AskSize')),
            last=optional_number(record.get('Last')),
            volume=optional_number(record.get('Volume')),
        )

    def _handle_option_record(self, record: Dict[str, Any]) -> None:
        for leg in record.get('Legs') or []:
            occ_symbol = self.translator.try_to_canonical(leg.get('Symbol', ''))
            if occ_symbol is None:
                self._drop_frame("untranslatable leg symbol", leg.get('Symbol'))
                continue
            self._apply_option_quote(occ_symbol, record, leg)

    def _apply_option_quote(self, occ_symbol: str, record: Dict[str, Any], leg: Dict[str, Any]) -> None:
        timestamp = now_ms()
        open_interest = optional_number(record.get('DailyOpenInterest')) or optional_number(leg.get('OpenInterest'))
        if open_interest:
            self.cache.estimator.set_base_open_interest(occ_symbol, open_interest)

        bid = optional_number(record.get('Bid'))
        ask = optional_number(record.get('Ask'))
        last = optional_number(record.get('Last'))
        volume = optional_number(record.get('Volume'))
        fields = {
            'bid_size': optional_number(record.get('BidSize')),
            'ask_size': optional_number(record.get('AskSize')),
            'open_interest': open_interest,
            'implied_volatility': optional_number(record.get('ImpliedVolatility')),
        }
        if self._record_inferred_trade(occ_symbol, last, volume, bid, ask, timestamp, **fields):
            return
        self.cache.upsert_option(occ_symbol, timestamp, bid=bid, ask=ask, last=last, volume=volume,
                                 mark=optional_number(record.get('Mid')), **fields)

    # ==================== REST ====================

    async def _quotes(self, natives: List[str]) -> List[Dict[str, Any]]:
        path = quote(','.join(natives), safe='')
        response = await self._request_json(
            'GET', f"{self.api_base_url}/marketdata/quotes/{path}", headers=self._headers())
        return [q for q in (response or {}).get('Quotes', []) if not q.get('Error')]

    async def fetch_quotes(self, symbols: List[str]) -> List[NormalizedTicker]:
        """Snapshot quotes for tickers; results are cached like streamed quotes"""
        batches = self._symbol_groups([s.strip().upper() for s in symbols])
        tickers = []
        for batch in await asyncio.gather(*(self._quotes(b) for b in batches)):
            for record in batch:
                self._handle_quote_record(record)
                ticker = self.cache.get_ticker(record.get('Symbol', ''))
                if ticker is not None:
                    tickers.append(ticker)
        return tickers

    async def fetch_option_expirations(self, underlying: str) -> List[str]:
        response = await self._request_json(
            'GET', f"{self.api_base_url}/marketdata/options/expirations/{quote(underlying, safe='')}",
            headers=self._headers())
        return [e['Date'] for e in (response or {}).get('Expirations', [])]

    async def fetch_symbol_details(self, symbols: List[str]) -> Dict[str, List[Any]]:
        details = {'Symbols': [], 'Errors': []}
        for start in range(0, len(symbols), SYMBOL_DETAILS_BATCH):
            batch = quote(','.join(symbols[start:start + SYMBOL_DETAILS_BATCH]), safe='')
            response = await self._request_json(
                'GET', f"{self.api_base_url}/marketdata/symbols/{batch}", headers=self._headers())
            details['Symbols'].extend((response or {}).get('Symbols', []))
            details['Errors'].extend((response or {}).get('Errors', []))
        return details

    async def _chain_entries(self, underlying: str, expiration: Optional[str]) -> List[str]:
        """Canonical symbols for every listed strike, calls and puts"""
        expirations = [expiration] if expiration else await self.fetch_option_expirations(underlying)

        symbols = []
        for day in expirations:
            response = await self._request_json(
                'GET', f"{self.api_base_url}/marketdata/options/strikes/{quote(underlying, safe='')}",
                headers=self._headers(), params={'expiration': day[:10]})
            for strikes in (response or {}).get('Strikes', []):
                strike = optional_number(strikes[0] if isinstance(strikes, list) else strikes)
                if strike is None:
                    continue
                for option_type in ('C', 'P'):
                    try:
                        symbols.append(build_occ_symbol(underlying, day, option_type, strike))
                    except SymbolError as exc:
                        self.logger.debug(f"Skipping strike {strike}: {exc}")
        return symbols

    def _chain_quote(self, occ_symbol: str) -> Optional[ChainQuote]:
        # Strike listings carry no quotes
        return occ_symbol, {}

    async def fetch_open_interest(self, symbols: List[str]) -> None:
        """Seed base open interest from option quote snapshots"""
        options = [c for c in (self.normalize_symbol(s) for s in symbols) if is_canonical_symbol(c)]
        batches = self._symbol_groups([self.translator.to_native(s) for s in options])

        for batch in await asyncio.gather(*(self._quotes(b) for b in batches)):
            for record in batch:
                occ_symbol = self.translator.try_to_canonical(record.get('Symbol', ''))
                if occ_symbol is None:
                    continue
                open_interest = optional_number(record.get('DailyOpenInterest'))
                if open_interest:
                    self.cache.estimator.set_base_open_interest(occ_symbol, open_interest)
                self.cache.upsert_option(
                    occ_symbol, timestamp_to_ms(record.get('TradeTime')),
                    bid=optional_number(record.get('Bid')),
                    bid_size=optional_number(record.get('BidSize')),
                    ask=optional_number(record.get('Ask')),
                    ask_size=optional_number(record.get('AskSize')),
                    last=optional_number(record.get('Last')),
                    volume=optional_number(record.get('Volume')),
                    open_interest=open_interest,
                )
