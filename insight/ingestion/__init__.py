"""Dual-layer summaries and the embedding pipeline."""
