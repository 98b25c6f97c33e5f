"""
Global configuration settings for the options streaming layer

This module contains all configuration parameters for the venue sessions and
the session orchestrator. Settings are organized by component and can be
overridden via environment variables or a YAML configuration file.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict
import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent
LOGS_DIR = PROJECT_ROOT / "logs"


@dataclass
class StreamConfig:
    """Connection and reconnection settings shared by every venue session"""

    # Reconnection policy
    max_reconnect_attempts: int = 5
    base_reconnect_delay_ms: int = 1000

    # Connection parameters
    connect_timeout: float = 10.0

    # Verbose protocol logging (per-message DEBUG lines)
    verbose: bool = False


@dataclass
class IBKRConfig:
    """Configuration for the Interactive Brokers Web API session"""

    # Client Portal Gateway default; OAuth users point this at api.ibkr.com
    base_url: str = "https://localhost:5000/v1/api"
    heartbeat_interval: float = 60.0
    verify_ssl: bool = True

    # Snapshot requests are limited per call
    snapshot_batch_size: int = 50
    snapshot_settle_delay: float = 0.25


@dataclass
class TastyTradeConfig:
    """Configuration for the TastyTrade DxLink session"""

    api_base_url: str = "https://api.tastyworks.com"
    sandbox_api_base_url: str = "https://api.cert.tastyworks.com"
    sandbox: bool = False

    # DxLink keepalive (server timeout is twice the send interval)
    keepalive_interval: float = 30.0
    keepalive_timeout: int = 60
    aggregation_period: float = 0.1


@dataclass
class SchwabConfig:
    """Configuration for the Schwab streamer session"""

    api_base_url: str = "https://api.schwabapi.com"
    qos_interval: float = 60.0


@dataclass
class TradierConfig:
    """Configuration for the Tradier streaming session"""

    api_base_url: str = "https://api.tradier.com/v1"
    ws_url: str = "wss://ws.tradier.com/v1/markets/events"


@dataclass
class TradeStationConfig:
    """Configuration for the TradeStation HTTP streaming session"""

    api_base_url: str = "https://api.tradestation.com/v3"
    max_symbols_per_stream: int = 100


@dataclass
class LoggingConfig:
    """Configuration for logging"""

    # Log levels
    console_level: str = "INFO"
    file_level: str = "DEBUG"

    # Log files (empty log_file disables the file handler)
    log_dir: Path = LOGS_DIR
    log_file: str = ""
    max_file_size: str = "10MB"
    backup_count: int = 5


# Section name -> dataclass; ConfigManager exposes one attribute per entry
SECTIONS = {
    'stream': StreamConfig,
    'ibkr': IBKRConfig,
    'tastytrade': TastyTradeConfig,
    'schwab': SchwabConfig,
    'tradier': TradierConfig,
    'tradestation': TradeStationConfig,
    'logging': LoggingConfig,
}

# Environment variable -> (section, field, type)
ENV_OVERRIDES = {
    'OPTIONFLOW_LOG_LEVEL': ('logging', 'console_level', str),
    'OPTIONFLOW_LOG_FILE': ('logging', 'log_file', str),
    'OPTIONFLOW_MAX_RECONNECT_ATTEMPTS': ('stream', 'max_reconnect_attempts', int),
    'OPTIONFLOW_BASE_RECONNECT_DELAY_MS': ('stream', 'base_reconnect_delay_ms', int),
    'OPTIONFLOW_CONNECT_TIMEOUT': ('stream', 'connect_timeout', float),
    'OPTIONFLOW_VERBOSE': ('stream', 'verbose', bool),
    'OPTIONFLOW_IBKR_BASE_URL': ('ibkr', 'base_url', str),
    'OPTIONFLOW_IBKR_VERIFY_SSL': ('ibkr', 'verify_ssl', bool),
    'OPTIONFLOW_TASTYTRADE_SANDBOX': ('tastytrade', 'sandbox', bool),
    'OPTIONFLOW_TRADESTATION_MAX_SYMBOLS': ('tradestation', 'max_symbols_per_stream', int),
}


def _env_value(raw: str, type_func):
    if type_func is bool:
        return raw.strip().lower() in ('true', '1', 'yes', 'on')
    return type_func(raw)


class ConfigManager:
    """
    Defaults, then an optional YAML file, then ``OPTIONFLOW_*`` variables

    Unknown sections and keys in the file are ignored.
    """

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file
        self._load_config()

    def _load_config(self):
        for section, section_type in SECTIONS.items():
            setattr(self, section, section_type())

        if self.config_file and os.path.exists(self.config_file):
            with open(self.config_file, 'r') as f:
                self._update_from_dict(yaml.safe_load(f) or {})

        self._load_from_env()

    def _update_from_dict(self, config_dict: Dict[str, Any]):
        for section, values in config_dict.items():
            if section not in SECTIONS or not isinstance(values, dict):
                continue
            section_obj = getattr(self, section)
            for key, value in values.items():
                if hasattr(section_obj, key):
                    setattr(section_obj, key, value)

    def _load_from_env(self):
        for env_var, (section, key, type_func) in ENV_OVERRIDES.items():
            raw = os.getenv(env_var)
            if raw is not None:
                setattr(getattr(self, section), key, _env_value(raw, type_func))

    def to_dict(self) -> Dict[str, Any]:
        """Every section as plain, YAML-safe dictionaries"""
        return {
            section: {key: str(value) if isinstance(value, Path) else value
                      for key, value in asdict(getattr(self, section)).items()}
            for section in SECTIONS
        }

    def save_config(self, filename: str):
        with open(filename, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)

    def validate_config(self) -> bool:
        """Check limits the sessions rely on; problems are logged"""
        checks = [
            (self.stream.max_reconnect_attempts > 0, "stream.max_reconnect_attempts must be positive"),
            (self.stream.base_reconnect_delay_ms > 0, "stream.base_reconnect_delay_ms must be positive"),
            (self.stream.connect_timeout > 0, "stream.connect_timeout must be positive"),
            (self.tradestation.max_symbols_per_stream > 0, "tradestation.max_symbols_per_stream must be positive"),
            (self.ibkr.snapshot_batch_size > 0, "ibkr.snapshot_batch_size must be positive"),
        ]
        errors = [message for ok, message in checks if not ok]
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return not errors


# Global configuration instance
config = ConfigManager()


def get_config() -> ConfigManager:
    """The process-wide configuration"""
    return config


def load_config(config_file: str) -> ConfigManager:
    """A fresh configuration read from ``config_file``"""
    return ConfigManager(config_file)
