"""
Logging for venue sessions and the streaming pipeline

Every component logs through ``get_logger(name)``: loggers live under the
``optionflow`` namespace, are configured once from ``LoggingConfig`` and
never propagate to the root logger, so an application embedding the client
keeps control of its own handlers.

Console records use a compact format tagged with the component (and the
venue while a handshake is in progress); the optional rotating file keeps
the detailed format with function and line numbers.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from config.settings import get_config
from .constants import LOG_FORMATS

# Configured loggers, keyed by short name
_loggers: Dict[str, logging.Logger] = {}

ROOT_LOGGER_NAME = 'optionflow'

_SIZE_UNITS = {'KB': 1024, 'MB': 1024 ** 2, 'GB': 1024 ** 3}


class StreamFormatter(logging.Formatter):
    """Tags records with a component name and prints milliseconds"""

    def format(self, record):
        component = getattr(record, 'component', None) or record.name.rsplit('.', 1)[-1]
        venue = getattr(record, 'venue', None)
        record.component = f"{component}[{venue}]" if venue else component
        return super().format(record)

    def formatTime(self, record, datefmt=None):
        return f"{super().formatTime(record, datefmt)}.{int(record.msecs):03d}"


def parse_file_size(size: str) -> int:
    """'10MB' -> bytes; a bare number is taken as bytes"""
    text = str(size).strip().upper()
    for suffix, multiplier in _SIZE_UNITS.items():
        if text.endswith(suffix):
            return int(float(text[:-len(suffix)]) * multiplier)
    if text.isdigit():
        return int(text)
    return 10 * _SIZE_UNITS['MB']


def setup_logger(
    name: str,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    console_output: bool = True,
    max_file_size: Optional[str] = None,
    backup_count: Optional[int] = None
) -> logging.Logger:
    """
    Configure the ``optionflow.<name>`` logger once and cache it

    Unset arguments fall back to ``LoggingConfig``. Calling again with the
    same name returns the cached logger unchanged.

    Example:
        >>> logger = setup_logger('TradierSession', level='DEBUG')
        >>> logger.info("Stream session created")
    """
    if name in _loggers:
        return _loggers[name]

    settings = get_config().logging
    level = (level or settings.console_level).upper()
    if log_file is None and settings.log_file:
        log_file = str(Path(settings.log_dir) / settings.log_file)

    logger = logging.getLogger(name if name == ROOT_LOGGER_NAME else f"{ROOT_LOGGER_NAME}.{name}")
    logger.setLevel(getattr(logging, level))
    logger.handlers.clear()
    logger.propagate = False

    if console_output:
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(getattr(logging, level))
        console.setFormatter(StreamFormatter(LOG_FORMATS['simple'], datefmt='%H:%M:%S'))
        logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=parse_file_size(max_file_size or settings.max_file_size),
            backupCount=settings.backup_count if backup_count is None else backup_count,
            encoding='utf-8',
        )
        rotating.setLevel(getattr(logging, settings.file_level.upper()))
        rotating.setFormatter(StreamFormatter(LOG_FORMATS['detailed'], datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(rotating)

    _loggers[name] = logger
    return logger


def get_logger(name: str) -> logging.Logger:
    """Cached logger for ``name``, configured with defaults on first use"""
    return _loggers.get(name) or setup_logger(name)


class _ContextFilter(logging.Filter):
    def __init__(self, context: Dict[str, Any]):
        super().__init__()
        self.context = context

    def filter(self, record):
        for key, value in self.context.items():
            setattr(record, key, value)
        return True


class LogContext:
    """
    Attach attributes to every record one logger emits inside the block

    Only ``logger`` is affected, so sessions connecting concurrently do not
    tag each other's records.

    Example:
        >>> with LogContext(logger, venue="tradier"):
        ...     logger.info("Opening stream")  # record.venue == "tradier"
    """

    def __init__(self, logger: logging.Logger, **context):
        self.logger = logger
        self._filter = _ContextFilter(context)

    def __enter__(self):
        self.logger.addFilter(self._filter)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logger.removeFilter(self._filter)


class StructuredLogger:
    """
    key=value message formatting on top of a component logger

    Example:
        >>> slogger = StructuredLogger('OpenInterestEstimator')
        >>> slogger.info("Trade classified", symbol="SPY240119C00500000", side="buy", size=2)
    """

    def __init__(self, name: str):
        self.logger = get_logger(name)

    def _format_message(self, message: str, **fields) -> str:
        if not fields:
            return message
        return " | ".join([message] + [f"{key}={value}" for key, value in fields.items()])

    def _log(self, level: int, message: str, fields: Dict[str, Any]):
        # Skip formatting for suppressed levels; the estimator logs every trade
        if self.logger.isEnabledFor(level):
            self.logger.log(level, self._format_message(message, **fields))

    def debug(self, message: str, **fields):
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields):
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields):
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, **fields):
        self._log(logging.ERROR, message, fields)
