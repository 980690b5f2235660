"""
Core modules for the AI Usage Gateway.

This package contains the resource guards (rate limiter, circuit breaker),
the response cache, pricing, usage tracking and the daily quota ledger.
"""
