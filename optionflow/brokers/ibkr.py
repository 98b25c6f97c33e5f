"""
Interactive Brokers Web API session

Streams market data from the Client Portal Gateway (or the OAuth Web API)
WebSocket. The brokerage session is validated over REST before the socket
opens, instruments are addressed by contract id (conid), and every conid
must be primed with a REST snapshot before the socket publishes it.

Wire format:
    subscribe     smd+<conid>+{"fields": [...]}
    unsubscribe   umd+<conid>+{}
    keepalive     tic
    data          {"topic": "smd+<conid>", "conid": ..., "84": "1.25", ...}

The gateway may report mid-stream that the brokerage session is no longer
authenticated (``sts`` frame) or ask the client to renegotiate (``system``
frame). Both return the session to channel negotiation: the session is
re-validated over REST and the full subscription list is replayed on the
same socket.
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from config.settings import IBKRConfig, StreamConfig, get_config
from optionflow.realtime.estimator import OIDeltaStrategy
from optionflow.realtime.types import SessionState, Venue
from optionflow.symbols.occ import build_occ_symbol, is_canonical_symbol, parse_occ_symbol, underlying_for_root
from optionflow.utils.constants import (
    IBKR_MONTH_CODES,
    IBKR_PRIME_FIELDS,
    IBKR_SNAPSHOT_FIELDS,
    IBKR_STREAM_FIELDS,
    IBKRField,
)
from optionflow.utils.error_handler import AuthError, NetworkError, StreamError, SymbolError
from optionflow.utils.helpers import optional_number, timestamp_to_ms
from .base import ChainQuote, VenueSession


def _field(message: Dict[str, Any], tag: str) -> Optional[float]:
    """Numeric value of a field tag; absent tags stay None"""
    value = message.get(tag)
    if isinstance(value, str):
        value = value.replace(',', '').rstrip('%')
    return optional_number(value)


def month_code(expiration: str) -> str:
    """'2024-01-19' -> 'JAN24'"""
    day = datetime.strptime(expiration, '%Y-%m-%d')
    return f"{IBKR_MONTH_CODES[day.month - 1]}{day.year % 100:02d}"


class IBKRSession(VenueSession):
    """
    Interactive Brokers streaming session

    Example:
        >>> session = IBKRSession(base_url="https://localhost:5000/v1/api", verify_ssl=False)
        >>> await session.connect()
        >>> await session.subscribe(["SPY", "SPY240119C00500000"])
    """

    venue = Venue.IBKR

    def __init__(self,
                 access_token: Optional[str] = None,
                 base_url: Optional[str] = None,
                 account_id: Optional[str] = None,
                 verify_ssl: Optional[bool] = None,
                 ibkr_config: Optional[IBKRConfig] = None,
                 stream_config: Optional[StreamConfig] = None,
                 oi_strategy: Optional[OIDeltaStrategy] = None):
        super().__init__(stream_config, oi_strategy)
        self.ibkr_config = ibkr_config or get_config().ibkr
        self.base_url = (base_url or self.ibkr_config.base_url).rstrip('/')
        self.access_token = access_token
        self.account_id = account_id
        self.verify_ssl = self.ibkr_config.verify_ssl if verify_ssl is None else verify_ssl

        # Contract id lookups; reference data, kept across reconnects
        self.occ_to_conid: Dict[str, int] = {}
        self.conid_to_occ: Dict[int, str] = {}
        self.symbol_to_conid: Dict[str, int] = {}
        self.conid_to_symbol: Dict[int, str] = {}

        self.primed_conids: Set[int] = set()
        self._renegotiating = False

    @property
    def ws_url(self) -> str:
        url = self.base_url.replace('https://', 'wss://').replace('http://', 'ws://')
        return url.replace('/v1/api', '/v1/api/ws')

    # ==================== REST ====================

    def _headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json', 'Content-Type': 'application/json'}
        if self.access_token:
            headers['Authorization'] = f"Bearer {self.access_token}"
        return headers

    async def _api(self, endpoint: str, method: str = 'GET', params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request_json(method, f"{self.base_url}{endpoint}", headers=self._headers(), params=params)

    async def _validate_session(self) -> None:
        response = await self._api('/sso/validate')
        if not isinstance(response, dict) or not response.get('validated'):
            raise AuthError("IBKR session not validated; log in to the gateway first")
        self.logger.info("Brokerage session validated")

    # ==================== Handshake ====================

    async def _establish(self) -> None:
        self.state = SessionState.AUTHENTICATING
        await self._validate_session()

        await self._start_socket(self.ws_url)
        self._spawn(self._heartbeat_loop(), "heartbeat")

        self.state = SessionState.NEGOTIATING
        await self._mark_streaming()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ibkr_config.heartbeat_interval)
            try:
                await self._send('tic')
            except NetworkError as exc:
                self.logger.warning(f"Keepalive failed: {exc}")
                return

    def _clear_credentials(self) -> None:
        self.primed_conids.clear()
        self._renegotiating = False

    # ==================== Inbound ====================

    async def _handle_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            return
        topic = str(message.get('topic', ''))

        if topic.startswith('smd+'):
            self._handle_market_data(message)
        elif topic == 'sts':
            args = message.get('args') or {}
            if args.get('authenticated') is False:
                self._begin_renegotiation("brokerage session unauthenticated")
        elif topic == 'system':
            if message.get('renegotiate') or (message.get('args') or {}).get('renegotiate'):
                self._begin_renegotiation("server requested renegotiation")
        elif 'error' in message:
            self.logger.warning(f"Gateway error: {message.get('error')}")

    def _handle_market_data(self, message: Dict[str, Any]) -> None:
        conid = int(message.get('conid') or message['topic'][4:])
        timestamp = timestamp_to_ms(message.get('_updated'))

        occ_symbol = self.conid_to_occ.get(conid)
        if occ_symbol is not None:
            self._update_option(occ_symbol, message, timestamp)
            return
        ticker = self.conid_to_symbol.get(conid)
        if ticker is not None:
            self.cache.upsert_ticker(
                ticker, timestamp,
                bid=_field(message, IBKRField.BID_PRICE),
                bid_size=_field(message, IBKRField.BID_SIZE),
                ask=_field(message, IBKRField.ASK_PRICE),
                ask_size=_field(message, IBKRField.ASK_SIZE),
                last=_field(message, IBKRField.LAST_PRICE),
                volume=_field(message, IBKRField.VOLUME),
            )
            return
        self.logger.debug(f"Market data for unmapped conid {conid}")

    def _update_option(self, occ_symbol: str, message: Dict[str, Any], timestamp: int) -> None:
        bid = _field(message, IBKRField.BID_PRICE)
        bid_size = _field(message, IBKRField.BID_SIZE)
        ask = _field(message, IBKRField.ASK_PRICE)
        ask_size = _field(message, IBKRField.ASK_SIZE)
        last = _field(message, IBKRField.LAST_PRICE)
        last_size = _field(message, IBKRField.LAST_SIZE)
        volume = _field(message, IBKRField.VOLUME)
        open_interest = _field(message, IBKRField.OPEN_INTEREST)
        iv = _field(message, IBKRField.IMPLIED_VOLATILITY)

        if open_interest:
            self.cache.estimator.set_base_open_interest(occ_symbol, open_interest)

        if last and last_size and last > 0 and last_size > 0:
            existing = self.cache.options.get(occ_symbol)
            trade_bid = bid if bid is not None else (existing.bid if existing else 0.0)
            trade_ask = ask if ask is not None else (existing.ask if existing else 0.0)
            self.cache.upsert_option_from_timesale(
                occ_symbol, last, last_size, trade_bid, trade_ask, timestamp,
                day_volume=volume, bid_size=bid_size, ask_size=ask_size,
                open_interest=open_interest, implied_volatility=iv,
            )
            return

        self.cache.upsert_option(
            occ_symbol, timestamp,
            bid=bid, bid_size=bid_size, ask=ask, ask_size=ask_size,
            last=last, volume=volume, open_interest=open_interest, implied_volatility=iv,
        )

    # ==================== Renegotiation ====================

    def _begin_renegotiation(self, reason: str) -> None:
        if self._renegotiating or self.state is not SessionState.STREAMING:
            return
        self._renegotiating = True
        self.state = SessionState.NEGOTIATING
        self.logger.info(f"Renegotiating channel: {reason}")
        # REST calls must not block the reader
        self._spawn(self._renegotiate(), "renegotiate")

    async def _renegotiate(self) -> None:
        try:
            await self._validate_session()
            await self._api('/tickle', method='POST')
            await self._mark_streaming(renegotiated=True)
        except AuthError as exc:
            await self._give_up(exc)
        except StreamError as exc:
            await self._on_transport_lost(f"renegotiation failed ({exc})")
        finally:
            self._renegotiating = False

    # ==================== Subscriptions ====================

    def _conid_for(self, symbol: str) -> Optional[int]:
        if is_canonical_symbol(symbol):
            return self.occ_to_conid.get(symbol)
        return self.symbol_to_conid.get(symbol)

    async def _resolve_conids(self, symbols: List[str]) -> None:
        for symbol in symbols:
            if self._conid_for(symbol) is not None:
                continue
            if is_canonical_symbol(symbol):
                await self.resolve_option_conid(symbol)
            else:
                await self.resolve_underlying_conid(symbol)

    async def _subscribe_on_wire(self, symbols: List[str]) -> None:
        await self._resolve_conids(symbols)
        conids = []
        for symbol in symbols:
            conid = self._conid_for(symbol)
            if conid is None:
                self.logger.warning(f"No contract id for {symbol}; not streamed")
                continue
            conids.append(conid)

        await self._prime([c for c in conids if c not in self.primed_conids], IBKR_PRIME_FIELDS)

        fields = json.dumps({'fields': IBKR_STREAM_FIELDS})
        for conid in conids:
            await self._send(f"smd+{conid}+{fields}")
        self.logger.info(f"Subscribed to {len(conids)} contracts")

    async def _unsubscribe_on_wire(self, symbols: List[str]) -> None:
        for symbol in symbols:
            conid = self._conid_for(symbol)
            if conid is not None:
                await self._send(f"umd+{conid}+{{}}")

    async def _prime(self, conids: List[int], fields: List[str]) -> Any:
        """Request a snapshot; IBKR only streams conids that were snapshotted first"""
        if not conids:
            return []
        response = await self._api('/iserver/marketdata/snapshot', params={
            'conids': ','.join(str(c) for c in conids),
            'fields': ','.join(fields),
        })
        self.primed_conids.update(conids)
        return response

    # ==================== Contract resolution ====================

    async def resolve_underlying_conid(self, symbol: str) -> Optional[int]:
        """Stock conid, falling back to an index search"""
        cached = self.symbol_to_conid.get(symbol)
        if cached is not None:
            return cached

        for sec_type in ('STK', 'IND'):
            try:
                results = await self._api('/iserver/secdef/search', params={'symbol': symbol, 'secType': sec_type})
            except NetworkError as exc:
                self.logger.warning(f"Contract search for {symbol} failed: {exc}")
                return None
            if results:
                conid = int(results[0]['conid'])
                self.symbol_to_conid[symbol] = conid
                self.conid_to_symbol[conid] = symbol
                return conid

        self.logger.warning(f"No contract found for {symbol}")
        return None

    async def resolve_option_conid(self, occ_symbol: str) -> Optional[int]:
        cached = self.occ_to_conid.get(occ_symbol)
        if cached is not None:
            return cached
        try:
            parsed = parse_occ_symbol(occ_symbol)
        except SymbolError as exc:
            self.logger.warning(str(exc))
            return None

        underlying = underlying_for_root(parsed.root)
        try:
            await self._chain_entries(underlying, parsed.expiration.isoformat())
        except NetworkError as exc:
            self.logger.warning(f"Could not resolve {occ_symbol}: {exc}")
            return None
        return self.occ_to_conid.get(occ_symbol)

    def _option_info_to_occ(self, info: Dict[str, Any]) -> Optional[str]:
        maturity = str(info.get('maturityDate') or '')
        if len(maturity) != 8:
            return None
        try:
            return build_occ_symbol(
                info.get('tradingClass') or info['symbol'],
                datetime.strptime(maturity, '%Y%m%d').date(),
                info['right'],
                float(info['strike']),
            )
        except (KeyError, ValueError, SymbolError):
            return None

    async def fetch_option_months(self, underlying: str) -> List[str]:
        """Contract months ('JAN24') with listed options for ``underlying``"""
        results = await self._api('/iserver/secdef/search', params={'symbol': underlying})
        months: List[str] = []
        for result in results or []:
            for section in result.get('sections') or []:
                if section.get('secType') != 'OPT':
                    continue
                for month in str(section.get('months') or '').split(';'):
                    if month and month not in months:
                        months.append(month)
            if months:
                break
        return months

    async def _chain_entries(self, underlying: str, expiration: Optional[str]) -> List[Dict[str, Any]]:
        """
        Contracts for one expiration ('YYYY-MM-DD'), or for every listed
        contract month when no expiration is given. Conids are registered
        as contracts are found.

        Strikes are listed per contract month, then each strike's contracts
        are fetched and filtered down to the exact maturity date.
        """
        underlying_conid = await self.resolve_underlying_conid(underlying)
        if underlying_conid is None:
            return []

        if expiration is not None:
            months = [month_code(expiration)]
            target = expiration.replace('-', '')
        else:
            months = await self.fetch_option_months(underlying)
            target = None

        contracts = []
        for month in months:
            strikes = await self._api('/iserver/secdef/strikes', params={
                'conid': underlying_conid, 'sectype': 'OPT', 'month': month, 'exchange': 'SMART',
            })
            if not isinstance(strikes, dict) or not strikes.get('call'):
                self.logger.info(f"No strikes for {underlying} {expiration or month}")
                continue

            for strike in sorted(set(strikes.get('call', [])) | set(strikes.get('put', []))):
                infos = await self._api('/iserver/secdef/info', params={
                    'conid': underlying_conid, 'sectype': 'OPT', 'month': month,
                    'strike': strike, 'exchange': 'SMART',
                })
                for info in infos or []:
                    if target is not None and str(info.get('maturityDate')) != target:
                        continue
                    contracts.append(info)
                    occ_symbol = self._option_info_to_occ(info)
                    if occ_symbol:
                        self.occ_to_conid[occ_symbol] = int(info['conid'])
                        self.conid_to_occ[int(info['conid'])] = occ_symbol

        self.logger.info(f"Loaded {len(contracts)} contracts for {underlying} {expiration or 'all months'}")
        return contracts

    def _chain_quote(self, info: Dict[str, Any]) -> Optional[ChainQuote]:
        occ_symbol = self._option_info_to_occ(info)
        return (occ_symbol, {}) if occ_symbol else None

    # ==================== Open interest ====================

    async def fetch_open_interest(self, symbols: List[str]) -> None:
        """Snapshot open interest in batches; each batch is primed first"""
        occ_symbols = [self.normalize_symbol(s) for s in symbols]
        conids = []
        for occ_symbol in occ_symbols:
            conid = self.occ_to_conid.get(occ_symbol) or await self.resolve_option_conid(occ_symbol)
            if conid is not None:
                conids.append(conid)

        batch_size = self.ibkr_config.snapshot_batch_size
        for start in range(0, len(conids), batch_size):
            batch = conids[start:start + batch_size]
            await self._prime(batch, IBKR_SNAPSHOT_FIELDS)
            await asyncio.sleep(self.ibkr_config.snapshot_settle_delay)
            snapshots = await self._prime(batch, IBKR_SNAPSHOT_FIELDS)
            for snapshot in snapshots or []:
                occ_symbol = self.conid_to_occ.get(int(snapshot.get('conid', 0)))
                if occ_symbol is not None:
                    self._update_option(occ_symbol, snapshot, timestamp_to_ms(snapshot.get('_updated')))
