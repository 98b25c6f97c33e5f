"""
Error taxonomy and centralized error logging with correlation IDs.
"""
import uuid
import logging

logger = logging.getLogger("optionflow")


class StreamError(Exception):
    """Base class for every error raised by the streaming layer"""


class AuthError(StreamError):
    """Credential rejected or expired; never retried automatically"""


class NetworkError(StreamError):
    """Socket or HTTP stream failure; retried by the session's backoff policy"""


TransportError = NetworkError


class ReconnectExhaustedError(NetworkError):
    """Terminal error raised once the reconnect attempt cap is exceeded"""

    def __init__(self, attempts: int):
        super().__init__(f"Max reconnection attempts reached ({attempts})")
        self.attempts = attempts


class ProtocolError(StreamError):
    """Malformed or unexpected server frame"""


class SymbolError(ProtocolError, ValueError):
    """Symbol that cannot be translated to or from the canonical form"""


class SessionError(StreamError):
    """Orchestrator misuse, e.g. subscribing with no active session"""


class ListenerError(StreamError):
    """A registered event listener raised while handling an event"""

    def __init__(self, event, listener, original: BaseException):
        name = getattr(listener, '__name__', repr(listener))
        super().__init__(f"Listener {name} failed on '{event}': {original!r}")
        self.event = event
        self.listener = listener
        self.original = original


class ErrorHandler:
    @staticmethod
    def log_error(error, correlation_id=None, extra_info=None):
        corr_id = correlation_id or str(uuid.uuid4())
        logger.error(f"[CorrID: {corr_id}] {repr(error)} | Extra: {extra_info}")
        return corr_id

    @staticmethod
    def log_warning(message, correlation_id=None):
        corr_id = correlation_id or str(uuid.uuid4())
        logger.warning(f"[CorrID: {corr_id}] {message}")
        return corr_id

    @staticmethod
    def log_info(message, correlation_id=None):
        corr_id = correlation_id or str(uuid.uuid4())
        logger.info(f"[CorrID: {corr_id}] {message}")
        return corr_id
