"""LLM-backed synthesis."""
