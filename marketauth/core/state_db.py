"""Shared SQLite connection handling for runtime state stores."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from marketauth.core.migrations import apply_migrations
from marketauth.core.retry import DependencyTimeoutError, DependencyUnavailableError


class StoreTimeoutError(DependencyTimeoutError):
    """State database stayed locked past the configured busy timeout."""

    dependency = "state_store"


class StoreUnavailableError(DependencyUnavailableError):
    """State database could not execute the statement."""

    dependency = "state_store"


def connect_state_db(database_path: Path, *, timeout_seconds: float = 5.0) -> sqlite3.Connection:
    """Migrate and open a thread-shareable connection to the state database."""
    apply_migrations(database_path)
    connection = sqlite3.connect(
        str(database_path),
        timeout=timeout_seconds,
        check_same_thread=False,
    )
    connection.row_factory = sqlite3.Row
    return connection


@contextmanager
def store_errors() -> Iterator[None]:
    """Translate SQLite operational failures into dependency errors."""
    try:
        yield
    except sqlite3.OperationalError as exc:
        if "locked" in str(exc).lower() or "busy" in str(exc).lower():
            raise StoreTimeoutError(str(exc)) from exc
        raise StoreUnavailableError(str(exc)) from exc
