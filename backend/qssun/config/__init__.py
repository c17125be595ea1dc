"""Configuration package (settings, database pool, logging, observability)."""
