"""
Test doubles for venue transports

Sessions reach the network only through three overridable hooks:
``_open_socket``, ``_request_json`` and ``_open_stream``. The doubles below
replace them on a session instance so the real protocol handling runs
against scripted venue behaviour.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

from optionflow.realtime.types import EventType

_END = object()


class FakeSocket:
    """In-memory WebSocket: frames fed by the test are read by the session"""

    def __init__(self, url: str, responder: Optional[Callable[['FakeSocket', Any], None]] = None):
        self.url = url
        self.responder = responder
        self.sent: List[str] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, frame: str):
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(frame)
        if self.responder is not None:
            try:
                decoded = json.loads(frame)
            except ValueError:
                decoded = frame
            self.responder(self, decoded)

    def feed(self, message: Any):
        """Queue one inbound frame; dicts and lists are JSON encoded"""
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def drop(self):
        """Simulate the server closing the connection"""
        self._inbox.put_nowait(_END)

    async def close(self):
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_END)

    def json_frames(self) -> List[Any]:
        frames = []
        for frame in self.sent:
            try:
                frames.append(json.loads(frame))
            except ValueError:
                frames.append(frame)
        return frames

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _END:
            raise StopAsyncIteration
        return item


class SocketFactory:
    """Replacement for ``VenueSession._open_socket``"""

    def __init__(self, responder: Optional[Callable[[FakeSocket, Any], None]] = None):
        self.responder = responder
        self.sockets: List[FakeSocket] = []
        self.failures: List[Exception] = []

    async def __call__(self, url: str) -> FakeSocket:
        if self.failures:
            raise self.failures.pop(0)
        socket = FakeSocket(url, self.responder)
        self.sockets.append(socket)
        return socket

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]


class RestStub:
    """
    Replacement for ``VenueSession._request_json``

    Routes are keyed by (method, URL suffix); the longest matching suffix
    wins. A route value may be a response body, an exception instance to
    raise, or a callable taking the request params.
    """

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Any]] = None):
        self.routes: Dict[Tuple[str, str], Any] = dict(routes or {})
        self.calls: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []

    def route(self, method: str, suffix: str, response: Any):
        self.routes[(method, suffix)] = response

    async def __call__(self, method, url, headers=None, params=None, json_body=None, data=None):
        self.calls.append((method, url, params))
        matches = [(m, s) for (m, s) in self.routes if m == method and url.endswith(s)]
        if not matches:
            raise AssertionError(f"Unexpected REST call {method} {url}")
        response = self.routes[max(matches, key=lambda key: len(key[1]))]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(params)
        return response

    def calls_to(self, suffix: str) -> List[Tuple[str, str, Optional[Dict[str, Any]]]]:
        return [call for call in self.calls if call[1].endswith(suffix)]


class FakeChunkStream:
    """Chunked HTTP response body fed by the test"""

    def __init__(self, url: str, params: Optional[Dict[str, str]]):
        self.url = url
        self.params = params
        self.closed = False
        self._chunks: asyncio.Queue = asyncio.Queue()

    def push(self, chunk):
        self._chunks.put_nowait(chunk.encode('utf-8') if isinstance(chunk, str) else chunk)

    def push_records(self, *records: Dict[str, Any]):
        self.push(''.join(json.dumps(record) + '\n' for record in records))

    def end(self):
        self._chunks.put_nowait(_END)

    def fail(self, exc: Exception):
        self._chunks.put_nowait(exc)

    async def aclose(self):
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._chunks.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class StreamFactory:
    """Replacement for ``VenueSession._open_stream``"""

    def __init__(self):
        self.streams: List[FakeChunkStream] = []

    async def __call__(self, url, headers=None, params=None) -> FakeChunkStream:
        stream = FakeChunkStream(url, params)
        self.streams.append(stream)
        return stream

    def opened_for(self, fragment: str) -> List[FakeChunkStream]:
        return [s for s in self.streams if fragment in s.url]


class EventRecorder:
    """Collects every event published by a session or client"""

    def __init__(self, source):
        self.events: List[Tuple[EventType, Any]] = []
        for event in EventType:
            source.on(event, lambda payload, event=event: self.events.append((event, payload)))

    def of(self, event: EventType) -> List[Any]:
        return [payload for kind, payload in self.events if kind is event]

    def clear(self):
        self.events.clear()


async def settle(rounds: int = 20):
    """Let queued frames and spawned tasks run"""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)
