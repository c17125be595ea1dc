"""Shared helpers (error envelopes, response shaping)."""
