"""Models package marker.

Allows relative imports from sibling packages (e.g. services -> models).
Exposes Base for simplified imports (Alembic env, test fixtures).
"""
from .database import Base  # noqa: F401
