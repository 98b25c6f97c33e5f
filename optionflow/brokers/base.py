"""
Venue Session base class

This module defines the interface every venue session implements and the
machinery they share: the venue-scoped cache, the event surface, the
subscribed-symbol set, the reconnection policy and the transport hooks.

Session lifecycle:

    DISCONNECTED -> CONNECTING -> AUTHENTICATING -> NEGOTIATING -> STREAMING
    STREAMING -> RECONNECTING -> (NEGOTIATING -> STREAMING | DISCONNECTED)

Key Features:
- One network connection per session, frames processed in arrival order
- Subscriptions tracked locally and replayed after every reconnect
- Exponential backoff with a terminal error once the attempt cap is reached
- Idempotent disconnect that releases the transport from any state
- Transport I/O isolated in small overridable coroutines
"""

import asyncio
import json
import ssl
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import aiohttp
import pandas as pd
import websockets
import websockets.exceptions

from config.settings import StreamConfig, get_config
from optionflow.realtime.cache import NormalizedCache, option_snapshot
from optionflow.realtime.estimator import OIDeltaStrategy
from optionflow.realtime.events import EventEmitter, Listener, Subscription
from optionflow.realtime.types import (
    ConnectionEvent,
    EventType,
    FlowSummary,
    IntradayTrade,
    NormalizedOption,
    NormalizedTicker,
    SessionState,
    Venue,
)
from optionflow.symbols.occ import is_canonical_symbol, normalize_occ_symbol
from optionflow.symbols.translator import get_translator
from optionflow.utils.error_handler import (
    AuthError,
    ErrorHandler,
    NetworkError,
    ProtocolError,
    ReconnectExhaustedError,
    StreamError,
    SymbolError,
)
from optionflow.utils.helpers import now_ms
from optionflow.utils.logger import LogContext, get_logger
from optionflow.utils.websocket_reconnect import ReconnectPolicy

# Failures of the underlying libraries that count as transport errors
TRANSPORT_EXCEPTIONS = (
    aiohttp.ClientError,
    websockets.exceptions.WebSocketException,
    OSError,
    asyncio.TimeoutError,
)

# Canonical option symbol plus the snapshot fields a chain entry reports
ChainQuote = Tuple[str, Dict[str, Optional[float]]]


class VenueSession(ABC):
    """
    Abstract base class for venue streaming sessions

    Subclasses implement the venue's handshake in ``_establish`` and call
    ``_mark_streaming`` once the venue accepts subscriptions. Frames read by
    the socket reader are handed to ``_handle_message`` one at a time.
    """

    venue: Venue

    def __init__(self,
                 stream_config: Optional[StreamConfig] = None,
                 oi_strategy: Optional[OIDeltaStrategy] = None):
        self.config = stream_config or get_config().stream
        self.logger = get_logger(self.__class__.__name__)
        self.translator = get_translator(self.venue)

        self.events = EventEmitter(f"{self.__class__.__name__}Events", logger=self.logger)
        self.cache = NormalizedCache(
            on_ticker=lambda ticker: self.events.emit(EventType.TICKER_UPDATE, ticker),
            on_option=lambda option: self.events.emit(EventType.OPTION_UPDATE, option),
            on_trade=lambda trade: self.events.emit(EventType.OPTION_TRADE, trade),
            oi_strategy=oi_strategy,
            name=f"{self.__class__.__name__}Cache",
        )

        self.state = SessionState.DISCONNECTED
        # Insertion-ordered set of canonical symbols
        self.subscribed_symbols: Dict[str, None] = {}
        self.reconnect_policy = ReconnectPolicy(
            max_attempts=self.config.max_reconnect_attempts,
            base_delay_ms=self.config.base_reconnect_delay_ms,
            name=f"{self.__class__.__name__}Reconnect",
        )
        self.verify_ssl = True

        self._socket = None
        self._http: Optional[aiohttp.ClientSession] = None
        self._tasks: List[asyncio.Task] = []
        self._reconnect_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._closing = False

    # ==================== Venue-specific hooks ====================

    @abstractmethod
    async def _establish(self) -> None:
        """Authenticate and open the transport; may finish the handshake itself"""

    @abstractmethod
    async def _subscribe_on_wire(self, symbols: List[str]) -> None:
        """Send subscription frames for canonical ``symbols``"""

    @abstractmethod
    async def _unsubscribe_on_wire(self, symbols: List[str]) -> None:
        """Send unsubscription frames for canonical ``symbols``"""

    @abstractmethod
    async def fetch_open_interest(self, symbols: List[str]) -> None:
        """Backfill base open interest for option ``symbols`` over REST"""

    @abstractmethod
    async def _chain_entries(self, underlying: str, expiration: Optional[str]) -> List[Any]:
        """The venue's chain listing for ``underlying``, optionally one expiration"""

    @abstractmethod
    def _chain_quote(self, entry: Any) -> Optional[ChainQuote]:
        """Canonical symbol and snapshot fields of one chain entry, None to skip it"""

    async def _handle_message(self, message: Any) -> None:
        """Process one decoded inbound frame (socket venues)"""
        raise NotImplementedError

    async def _close_protocol(self) -> None:
        """Say goodbye on the wire before the transport is released"""

    def _clear_credentials(self) -> None:
        """Forget ephemeral per-connection credentials"""

    # ==================== Public API ====================

    async def connect(self) -> None:
        """
        Open the stream and complete the venue handshake.

        Raises:
            AuthError: credentials were rejected
            NetworkError: the venue could not be reached or the handshake timed out
        """
        if self.state is not SessionState.DISCONNECTED:
            self.logger.info("Already connected; reconnecting from scratch")
            await self.disconnect()

        self._closing = False
        self.state = SessionState.CONNECTING
        with LogContext(self.logger, venue=self.venue.value):
            self.logger.info(f"Connecting to {self.venue.value}")
            try:
                await self._open()
            except BaseException:
                await self._release_transport()
                self.state = SessionState.DISCONNECTED
                raise
        self.logger.info(f"Streaming from {self.venue.value}")

    async def disconnect(self) -> None:
        """Tear the session down; safe to call from any state, any number of times"""
        was_active = self.state is not SessionState.DISCONNECTED
        self._closing = True

        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        if was_active and self._socket is not None:
            try:
                await self._close_protocol()
            except TRANSPORT_EXCEPTIONS as exc:
                self.logger.debug(f"Goodbye frame not delivered: {exc}")

        await self._release_transport()
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(NetworkError("Disconnected during handshake"))
            # The waiting connect() call retrieves it
        self._ready = None

        self.subscribed_symbols.clear()
        self._clear_credentials()
        self.cache.clear()
        self.reconnect_policy.reset()
        self.state = SessionState.DISCONNECTED

        if was_active:
            self.logger.info(f"Disconnected from {self.venue.value}")
            self.events.emit(EventType.DISCONNECTED, ConnectionEvent(self.venue, reason="client disconnect"))

    async def subscribe(self, symbols: Iterable[str]) -> List[str]:
        """
        Track ``symbols`` and subscribe on the wire when streaming.

        Symbols may be tickers, canonical option symbols or the venue's
        native option symbols. Returns the newly added canonical symbols.
        """
        added = []
        for symbol in symbols:
            canonical = self.normalize_symbol(symbol)
            if canonical not in self.subscribed_symbols:
                self.subscribed_symbols[canonical] = None
                added.append(canonical)

        if added and self.is_connected():
            await self._subscribe_on_wire(added)
        return added

    async def unsubscribe(self, symbols: Iterable[str]) -> List[str]:
        """Stop tracking ``symbols``; returns the canonical symbols removed"""
        removed = []
        for symbol in symbols:
            canonical = self.normalize_symbol(symbol)
            if canonical in self.subscribed_symbols:
                del self.subscribed_symbols[canonical]
                removed.append(canonical)

        if removed and self.is_connected():
            await self._unsubscribe_on_wire(removed)
        return removed

    async def unsubscribe_from_all(self) -> List[str]:
        return await self.unsubscribe(list(self.subscribed_symbols))

    def is_connected(self) -> bool:
        return self.state is SessionState.STREAMING

    @property
    def reconnect_attempts(self) -> int:
        return self.reconnect_policy.attempt_count

    def normalize_symbol(self, symbol: str) -> str:
        """Canonical option symbol, or the upper-cased ticker"""
        canonical = self.translator.try_to_canonical(symbol)
        return canonical if canonical is not None else symbol.strip().upper()

    def get_subscribed_tickers(self) -> List[str]:
        return [s for s in self.subscribed_symbols if not is_canonical_symbol(s)]

    def get_subscribed_options(self) -> List[str]:
        return [s for s in self.subscribed_symbols if is_canonical_symbol(s)]

    # ==================== Cache reads ====================

    def get_option(self, symbol: str) -> Optional[NormalizedOption]:
        return self.cache.get_option(symbol)

    def get_ticker(self, symbol: str) -> Optional[NormalizedTicker]:
        return self.cache.get_ticker(symbol)

    def get_all_options(self) -> Dict[str, NormalizedOption]:
        return self.cache.get_all_options()

    def get_all_tickers(self) -> Dict[str, NormalizedTicker]:
        return self.cache.get_all_tickers()

    def get_intraday_trades(self, symbol: str) -> List[IntradayTrade]:
        return self.cache.estimator.get_intraday_trades(normalize_occ_symbol(symbol))

    def get_flow_summary(self, symbol: str) -> FlowSummary:
        return self.cache.estimator.get_flow_summary(normalize_occ_symbol(symbol))

    def reset_intraday_data(self, symbols: Optional[Iterable[str]] = None) -> None:
        if symbols is not None:
            symbols = [normalize_occ_symbol(s) for s in symbols]
        self.cache.estimator.reset_intraday_data(symbols)

    def trades_frame(self, symbol: Optional[str] = None) -> pd.DataFrame:
        if symbol is not None:
            symbol = normalize_occ_symbol(symbol)
        return self.cache.estimator.trades_frame(symbol)

    # ==================== Option chains ====================

    async def fetch_options_chain(self, underlying: str, expiration: Optional[str] = None) -> List[NormalizedOption]:
        """
        Listed contracts for ``underlying`` as venue-agnostic snapshots.

        ``expiration`` ('YYYY-MM-DD') limits the listing to one expiration;
        without it every listed expiration is returned. Snapshots carry
        whatever quote and open-interest fields the venue's listing reports.
        They are not cached or published; subscribe to stream a contract.
        """
        timestamp = now_ms()
        contracts = []
        for entry in await self._chain_entries(underlying, expiration):
            quote = self._chain_quote(entry)
            if quote is None:
                continue
            occ_symbol, fields = quote
            try:
                contracts.append(option_snapshot(occ_symbol, timestamp, **fields))
            except SymbolError as exc:
                self.logger.debug(f"Skipping chain entry {occ_symbol!r}: {exc}")
        self.logger.info(f"Listed {len(contracts)} {underlying} contracts")
        return contracts

    def _apply_chain_quote(self, occ_symbol: str, fields: Dict[str, Optional[float]], timestamp: int) -> None:
        """Seed base open interest from a chain entry and merge its fields"""
        open_interest = fields.get('open_interest')
        if open_interest:
            self.cache.estimator.set_base_open_interest(occ_symbol, open_interest)
        self.cache.upsert_option(occ_symbol, timestamp, **fields)

    # ==================== Events ====================

    def on(self, event, listener: Listener) -> Subscription:
        return self.events.on(event, listener)

    def once(self, event, listener: Listener) -> Subscription:
        return self.events.once(event, listener)

    def off(self, event, listener: Listener) -> bool:
        return self.events.off(event, listener)

    # ==================== Handshake plumbing ====================

    async def _open(self) -> None:
        """Run the venue handshake and wait until it reports streaming"""
        ready = self._ready = asyncio.get_running_loop().create_future()
        try:
            await self._establish()
            await asyncio.wait_for(asyncio.shield(ready), timeout=self.config.connect_timeout)
        except StreamError:
            raise
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"{self.venue.value} handshake timed out") from exc
        except TRANSPORT_EXCEPTIONS as exc:
            raise NetworkError(f"{self.venue.value} transport failure: {exc}") from exc
        finally:
            # A failed attempt must not leave a handshake pending
            if not ready.done():
                ready.cancel()

    async def _mark_streaming(self, **metadata) -> None:
        """Handshake complete: replay subscriptions and announce the connection"""
        self.state = SessionState.STREAMING
        self.reconnect_policy.reset()
        if self.subscribed_symbols:
            await self._subscribe_on_wire(list(self.subscribed_symbols))
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(True)
        self.events.emit(EventType.CONNECTED, ConnectionEvent(self.venue, metadata=metadata))

    def _fail_handshake(self, error: StreamError) -> bool:
        """Fail a pending connect(); returns False when no handshake is pending"""
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
            return True
        return False

    def _report_error(self, error: Exception) -> None:
        self.events.emit(EventType.ERROR, error)

    def _drop_frame(self, reason: str, frame: Any = None) -> None:
        """Log and discard one malformed or unexpected frame"""
        ErrorHandler.log_warning(f"{self.venue.value}: dropped frame ({reason}): {str(frame)[:200]}")

    def _record_inferred_trade(self, occ_symbol: str, last: Optional[float], volume: Optional[float],
                               bid: Optional[float], ask: Optional[float], timestamp: int,
                               **fields) -> bool:
        """
        Level-one option feeds report last price and day volume, not prints.

        A changed last price together with higher day volume is recorded as
        one trade of the volume difference, classified against the quote
        cached before this update. Returns False when no trade is implied.
        """
        existing = self.cache.options.get(occ_symbol)
        if existing is None or not last or last <= 0 or last == existing.last or volume is None:
            return False
        traded = volume - existing.volume
        if traded <= 0:
            return False
        self.cache.upsert_option_from_trade(occ_symbol, last, traded, volume, timestamp,
                                            quote_bid=bid, quote_ask=ask, **fields)
        return True

    # ==================== Reader and reconnection ====================

    def _spawn(self, coro, name: str) -> asyncio.Task:
        self._tasks = [t for t in self._tasks if not t.done()]
        task = asyncio.create_task(coro, name=f"{self.venue.value}-{name}")
        self._tasks.append(task)
        return task

    async def _read_loop(self, socket) -> None:
        """Consume the socket in arrival order until it closes"""
        reason = "stream ended"
        try:
            async for raw in socket:
                await self._handle_raw(raw)
        except websockets.exceptions.ConnectionClosed as exc:
            reason = f"connection closed ({exc})"
        except TRANSPORT_EXCEPTIONS as exc:
            reason = f"transport failure ({exc})"
        if socket is self._socket and not self._closing:
            await self._on_transport_lost(reason)

    async def _handle_raw(self, raw: Any) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8', errors='replace')
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            message = raw
        if self.config.verbose:
            self.logger.debug(f"<< {str(raw)[:500]}")
        try:
            await self._handle_message(message)
        except ProtocolError as exc:
            self._drop_frame(str(exc), raw)
        except StreamError as exc:
            if not self._fail_handshake(exc):
                self._report_error(exc)
        except Exception as exc:
            # Wrongly shaped frames fail anywhere in the handlers
            self._drop_frame(repr(exc), raw)

    async def _on_transport_lost(self, reason: str) -> None:
        """Connection dropped: fail a pending handshake or start reconnecting"""
        self.logger.warning(f"{self.venue.value} connection lost: {reason}")
        await self._release_transport()
        if self._fail_handshake(NetworkError(f"Connection lost during handshake: {reason}")):
            return
        if self._closing or self.state is SessionState.RECONNECTING:
            return
        self.state = SessionState.RECONNECTING
        self.events.emit(EventType.DISCONNECTED, ConnectionEvent(self.venue, reason=reason))
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name=f"{self.venue.value}-reconnect")

    async def _reconnect_loop(self) -> None:
        """Retry with exponential backoff until streaming or the cap is reached"""
        while not self._closing:
            try:
                await self.reconnect_policy.wait()
            except ReconnectExhaustedError as exc:
                await self._give_up(exc)
                return

            self.state = SessionState.CONNECTING
            try:
                await self._open()
                self.logger.info(f"Reconnected to {self.venue.value}")
                return
            except AuthError as exc:
                await self._give_up(exc)
                return
            except StreamError as exc:
                self.logger.warning(f"Reconnection attempt {self.reconnect_attempts} failed: {exc}")
                await self._release_transport()
                self.state = SessionState.RECONNECTING

    async def _give_up(self, error: StreamError) -> None:
        ErrorHandler.log_error(error, extra_info={'venue': self.venue.value})
        await self._release_transport()
        self.state = SessionState.DISCONNECTED
        self._reconnect_task = None
        self._report_error(error)

    async def _release_transport(self) -> None:
        """Cancel background tasks and close socket and HTTP session"""
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks = [t for t in self._tasks if t is current]

        socket, self._socket = self._socket, None
        if socket is not None:
            try:
                await socket.close()
            except TRANSPORT_EXCEPTIONS as exc:
                self.logger.debug(f"Socket close failed: {exc}")

        http, self._http = self._http, None
        if http is not None and not http.closed:
            await http.close()

    # ==================== Transport hooks ====================

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if self.verify_ssl:
            return None
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context

    async def _open_socket(self, url: str):
        """Open the venue WebSocket"""
        kwargs = {'open_timeout': self.config.connect_timeout}
        if url.startswith('wss://') and not self.verify_ssl:
            kwargs['ssl'] = self._ssl_context()
        return await websockets.connect(url, **kwargs)

    async def _start_socket(self, url: str) -> None:
        """Open the socket and start the reader task"""
        self._socket = await self._open_socket(url)
        self._spawn(self._read_loop(self._socket), "reader")

    async def _send(self, payload: Any) -> None:
        """Send one frame; dicts and lists are JSON encoded"""
        if self._socket is None:
            raise NetworkError(f"{self.venue.value} socket is not open")
        frame = payload if isinstance(payload, str) else json.dumps(payload)
        if self.config.verbose:
            self.logger.debug(f">> {frame[:500]}")
        await self._socket.send(frame)

    def _http_session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.connect_timeout * 3)
            )
        return self._http

    async def _request_json(self,
                            method: str,
                            url: str,
                            headers: Optional[Dict[str, str]] = None,
                            params: Optional[Dict[str, Any]] = None,
                            json_body: Optional[Any] = None,
                            data: Optional[Any] = None) -> Any:
        """
        Issue one REST call and decode the JSON body.

        Raises:
            AuthError: on HTTP 401/403
            NetworkError: on any other failure
        """
        kwargs: Dict[str, Any] = {'headers': headers, 'params': params}
        if json_body is not None:
            kwargs['json'] = json_body
        if data is not None:
            kwargs['data'] = data
        if not self.verify_ssl:
            kwargs['ssl'] = False

        try:
            async with self._http_session().request(method, url, **kwargs) as response:
                if response.status in (401, 403):
                    raise AuthError(f"{self.venue.value} rejected credentials (HTTP {response.status})")
                if response.status >= 400:
                    body = await response.text()
                    raise NetworkError(f"{self.venue.value} {method} {url} failed: HTTP {response.status} {body[:200]}")
                if response.status == 204:
                    return {}
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"{self.venue.value} {method} {url} failed: {exc}") from exc

    async def _open_stream(self,
                           url: str,
                           headers: Optional[Dict[str, str]] = None,
                           params: Optional[Dict[str, Any]] = None) -> AsyncIterator[bytes]:
        """Long-lived chunked HTTP response as an async iterator of raw chunks"""
        session = self._http_session()
        response = await session.get(url, headers=headers, params=params,
                                     timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.config.connect_timeout))
        if response.status in (401, 403):
            response.release()
            raise AuthError(f"{self.venue.value} rejected credentials (HTTP {response.status})")
        if response.status >= 400:
            body = await response.text()
            response.release()
            raise NetworkError(f"{self.venue.value} stream {url} failed: HTTP {response.status} {body[:200]}")
        return self._iter_chunks(response)

    @staticmethod
    async def _iter_chunks(response: aiohttp.ClientResponse) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.content.iter_any():
                yield chunk
        finally:
            response.release()

    def __repr__(self):
        return f"{self.__class__.__name__}(state={self.state.value}, symbols={len(self.subscribed_symbols)})"
