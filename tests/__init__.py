"""
Test Suite for OptionFlow

Test Structure:
- unit/: symbol translation, cache, estimator, events, backoff, configuration
- integration/: venue sessions and the client driven over in-memory transports
- helpers.py: transport doubles shared by both
"""
