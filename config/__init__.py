"""
Configuration module for the options streaming layer

This module provides centralized configuration management for the venue
sessions and the session orchestrator.
"""

from .settings import (
    config,
    get_config,
    load_config,
    ConfigManager,
    StreamConfig,
    IBKRConfig,
    TastyTradeConfig,
    SchwabConfig,
    TradierConfig,
    TradeStationConfig,
    LoggingConfig,
    PROJECT_ROOT,
    LOGS_DIR,
)

__all__ = [
    'config',
    'get_config',
    'load_config',
    'ConfigManager',
    'StreamConfig',
    'IBKRConfig',
    'TastyTradeConfig',
    'SchwabConfig',
    'TradierConfig',
    'TradeStationConfig',
    'LoggingConfig',
    'PROJECT_ROOT',
    'LOGS_DIR',
]
