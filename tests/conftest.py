"""
Pytest Configuration and Fixtures for OptionFlow Tests

This module provides shared test fixtures and configuration for all tests
in the OptionFlow test suite.

Notes:
- Venue sessions are exercised against in-memory transports (tests/helpers.py)
- Reconnect delays are shortened so backoff paths run in milliseconds
- Fixtures can be scoped to control their lifecycle
"""

import pytest

from config.settings import (
    IBKRConfig,
    SchwabConfig,
    StreamConfig,
    TastyTradeConfig,
    TradeStationConfig,
    TradierConfig,
)
from optionflow.realtime.cache import NormalizedCache
from tests.helpers import RestStub, SocketFactory, StreamFactory


@pytest.fixture
def stream_config():
    """Fast reconnection settings for tests"""
    return StreamConfig(max_reconnect_attempts=3, base_reconnect_delay_ms=10, connect_timeout=1.0)


@pytest.fixture
def sample_option():
    """Standard test option symbol"""
    return "SPY240119C00500000"


@pytest.fixture
def sample_ticker():
    """Standard test ticker"""
    return "SPY"


@pytest.fixture
def recorded_cache():
    """Cache whose published updates are collected in lists"""
    published = {'tickers': [], 'options': [], 'trades': []}
    cache = NormalizedCache(
        on_ticker=published['tickers'].append,
        on_option=published['options'].append,
        on_trade=published['trades'].append,
    )
    return cache, published


@pytest.fixture
def rest():
    return RestStub()


@pytest.fixture
def streams():
    return StreamFactory()


@pytest.fixture
def ibkr_config():
    return IBKRConfig(base_url="https://localhost:5000/v1/api", heartbeat_interval=3600,
                      snapshot_settle_delay=0)


@pytest.fixture
def tastytrade_config():
    return TastyTradeConfig(keepalive_interval=3600)


@pytest.fixture
def schwab_config():
    return SchwabConfig(qos_interval=3600)


@pytest.fixture
def tradier_config():
    return TradierConfig()


@pytest.fixture
def tradestation_config():
    return TradeStationConfig(max_symbols_per_stream=2)


@pytest.fixture
def socket_factory():
    return SocketFactory()


# Test configuration
def pytest_configure(config):
    """Configure pytest"""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection"""
    # Add markers to tests based on their location
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
