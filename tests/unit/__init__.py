"""
Unit Tests for OptionFlow Components

Test Modules:
- test_symbols.py: canonical symbols and venue translators
- test_cache.py: normalized cache merges and trade application
- test_estimator.py: aggressor classification and open interest estimation
- test_events.py: listener registration, ordering and failure isolation
- test_reconnect.py: backoff schedule and exhaustion
- test_config.py: configuration loading and logger setup
- test_transport.py: REST and stream status mapping
"""
