"""Shared libraries for the wide-event insight engine.

This package contains reusable components:
- common: configuration, error taxonomy, outcome counters, logging setup
- caching: Redis client, session stores, vector-result cache
- memory: session history, context compression, query reformulation
- storage: log storage port and its Redis-backed implementation
"""
