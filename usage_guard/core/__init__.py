"""
Core modules for Usage Guard.

This package contains the quota store, rate limiter, circuit breaker,
usage accountant and retention sweeper.
"""
