"""Rate limit record store adapters.

This package provides a small abstraction layer so the service can keep its
counters in process memory for a single worker, or in Redis when several
workers must share one view of every (identifier, action) pair.
"""
