"""
Utility modules for the options streaming layer

This package contains logging, error types, reconnection policy, constants
and small helpers shared by every venue session.
"""

from .logger import setup_logger, get_logger, LogContext, StructuredLogger
from .error_handler import (
    StreamError,
    AuthError,
    NetworkError,
    TransportError,
    ReconnectExhaustedError,
    ProtocolError,
    SymbolError,
    SessionError,
    ListenerError,
    ErrorHandler,
)
from .websocket_reconnect import ReconnectPolicy

__all__ = [
    'setup_logger',
    'get_logger',
    'LogContext',
    'StructuredLogger',
    'StreamError',
    'AuthError',
    'NetworkError',
    'TransportError',
    'ReconnectExhaustedError',
    'ProtocolError',
    'SymbolError',
    'SessionError',
    'ListenerError',
    'ErrorHandler',
    'ReconnectPolicy',
]
