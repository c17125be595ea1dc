"""Qssun back-office API: quotations, custody sheets, notifications and daily serials."""

__version__ = "1.0.0"
