"""SQLite schema migrations for runtime state tables."""

from marketauth.core.migrations.runner import apply_migrations

__all__ = ["apply_migrations"]
