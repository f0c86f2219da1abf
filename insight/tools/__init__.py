"""Latency classification, query metadata and provider adapters."""
