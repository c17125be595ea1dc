"""API routers package.

Routers stay thin: they parse the request, open a trace span and delegate to
``qssun.services``. Domain exceptions bubble up to the global handlers in
``qssun.main`` which render the standard error envelope.
"""

__all__ = [
    "quotations",
    "instant_expenses",
    "notifications",
    "webpush",
    "system",
    "metrics",
]
