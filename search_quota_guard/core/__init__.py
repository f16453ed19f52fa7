"""
Core modules for Search Quota Guard.

This package contains the usage ledger, response cache, circuit breaker,
rate governor and request orchestrator.
"""
