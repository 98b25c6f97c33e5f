"""
Integration Tests for OptionFlow

Each venue session runs its real protocol handling against scripted venue
behaviour from tests/helpers.py.

Test Modules:
- test_ibkr_session.py
- test_tastytrade_session.py
- test_schwab_session.py
- test_tradier_session.py
- test_tradestation_session.py
- test_client.py: the venue-agnostic orchestrator
"""
