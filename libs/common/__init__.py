"""Configuration, error taxonomy, counters and logging setup."""
