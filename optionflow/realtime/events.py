"""
Typed publish/subscribe surface shared by venue sessions and the orchestrator.

Listeners are plain callables invoked synchronously, in registration order,
with the event payload. ``on``/``once`` return a ``Subscription`` handle whose
``unsubscribe()`` cancels that one registration. A listener that raises does
not stop the remaining listeners: the failure is wrapped in ``ListenerError``
and published on the ``error`` channel. Failures raised by ``error``
listeners are logged and never re-published.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from optionflow.utils.error_handler import ListenerError
from optionflow.utils.logger import get_logger
from .types import EventType

Listener = Callable[[Any], None]
EventKey = Union[EventType, str]


class Subscription:
    """Handle for a single listener registration"""

    __slots__ = ('_emitter', 'event', 'listener', 'once', 'active')

    def __init__(self, emitter: 'EventEmitter', event: EventType, listener: Listener, once: bool = False):
        self._emitter = emitter
        self.event = event
        self.listener = listener
        self.once = once
        self.active = True

    def unsubscribe(self) -> bool:
        """Cancel this registration; returns False if it was already inactive"""
        if not self.active:
            return False
        self.active = False
        self._emitter._remove(self)
        return True

    def __repr__(self):
        name = getattr(self.listener, '__name__', repr(self.listener))
        return f"Subscription({self.event.value}, {name}, active={self.active})"


class EventEmitter:
    """Synchronous, ordered event dispatch keyed by ``EventType``"""

    def __init__(self, name: str = "EventEmitter", logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or get_logger(name)
        self._subscriptions: Dict[EventType, List[Subscription]] = {event: [] for event in EventType}
        self._dispatching_error = False

    @staticmethod
    def _key(event: EventKey) -> EventType:
        return event if isinstance(event, EventType) else EventType(event)

    def on(self, event: EventKey, listener: Listener) -> Subscription:
        """Register ``listener`` for ``event``"""
        subscription = Subscription(self, self._key(event), listener)
        self._subscriptions[subscription.event].append(subscription)
        return subscription

    def once(self, event: EventKey, listener: Listener) -> Subscription:
        """Register ``listener`` for the next ``event`` only"""
        subscription = Subscription(self, self._key(event), listener, once=True)
        self._subscriptions[subscription.event].append(subscription)
        return subscription

    def off(self, event: EventKey, listener: Listener) -> bool:
        """Remove the earliest active registration of ``listener`` for ``event``"""
        for subscription in self._subscriptions[self._key(event)]:
            if subscription.listener == listener and subscription.active:
                return subscription.unsubscribe()
        return False

    def _remove(self, subscription: Subscription):
        registered = self._subscriptions[subscription.event]
        if subscription in registered:
            registered.remove(subscription)

    def listener_count(self, event: EventKey) -> int:
        return len(self._subscriptions[self._key(event)])

    def remove_all_listeners(self, event: Optional[EventKey] = None):
        events = [self._key(event)] if event is not None else list(EventType)
        for key in events:
            for subscription in list(self._subscriptions[key]):
                subscription.unsubscribe()

    def emit(self, event: EventKey, payload: Any = None) -> int:
        """
        Dispatch ``payload`` to every listener of ``event``.

        Returns the number of listeners invoked.
        """
        key = self._key(event)
        snapshot = list(self._subscriptions[key])

        if key is EventType.ERROR and not snapshot:
            self.logger.error(f"Unhandled error: {payload!r}")
            return 0

        invoked = 0
        for subscription in snapshot:
            if not subscription.active:
                continue
            if subscription.once:
                subscription.unsubscribe()
            invoked += 1
            try:
                subscription.listener(payload)
            except Exception as exc:
                self._report_listener_failure(key, subscription.listener, exc)
        return invoked

    def _report_listener_failure(self, event: EventType, listener: Listener, exc: Exception):
        failure = ListenerError(event.value, listener, exc)
        if event is EventType.ERROR or self._dispatching_error:
            self.logger.error(f"Error listener failed: {failure}")
            return
        self.logger.warning(str(failure))
        self._dispatching_error = True
        try:
            self.emit(EventType.ERROR, failure)
        finally:
            self._dispatching_error = False
