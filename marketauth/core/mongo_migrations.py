"""Versioned MongoDB schema migrations for account and resource collections."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

import pymongo
from pymongo.errors import PyMongoError

from marketauth.core.config import StorageConfig
from marketauth.core.logging import CORRELATION_ID_CTX

LOGGER = logging.getLogger(__name__)

MigrationFn = Callable[[Any], None]

_NON_EMPTY = {"$gt": ""}


def _migration_0001_account_indexes(db: Any) -> None:
    db["auth_users"].create_index("user_id", unique=True)
    db["auth_users"].create_index(
        "email", unique=True, partialFilterExpression={"email": _NON_EMPTY}
    )
    db["auth_users"].create_index(
        "phone", unique=True, partialFilterExpression={"phone": _NON_EMPTY}
    )
    db["auth_refresh_tokens"].create_index("jti", unique=True)
    db["auth_refresh_tokens"].create_index([("user_id", pymongo.ASCENDING), ("revoked", pymongo.ASCENDING)])


def _migration_0002_resource_indexes(db: Any) -> None:
    db["owned_resources"].create_index(
        [("resource_type", pymongo.ASCENDING), ("resource_id", pymongo.ASCENDING)], unique=True
    )
    db["owned_resources"].create_index(
        [("resource_type", pymongo.ASCENDING), ("owner_id", pymongo.ASCENDING)]
    )


MIGRATIONS: list[tuple[str, MigrationFn]] = [
    ("0001_account_indexes", _migration_0001_account_indexes),
    ("0002_resource_indexes", _migration_0002_resource_indexes),
]


def run_mongo_migrations(db: Any) -> list[str]:
    """Apply pending migrations to ``db`` and return the ids applied now."""
    migration_collection = db["schema_migrations"]
    migration_collection.create_index("migration_id", unique=True)

    applied: list[str] = []
    for migration_id, migration_fn in MIGRATIONS:
        if migration_collection.find_one({"migration_id": migration_id}):
            continue
        migration_fn(db)
        migration_collection.insert_one(
            {
                "migration_id": migration_id,
                "applied_at": datetime.now(timezone.utc),
                "correlation_id": CORRELATION_ID_CTX.get(),
            }
        )
        applied.append(migration_id)
    return applied


def apply_mongo_migrations(storage: StorageConfig) -> list[str]:
    """Apply MongoDB migrations if a Mongo URI is configured."""
    if not storage.mongo_uri:
        return []

    client: Any = pymongo.MongoClient(storage.mongo_uri, serverSelectionTimeoutMS=3000)
    try:
        client.admin.command("ping")
        applied = run_mongo_migrations(client[storage.mongo_db])
    except PyMongoError:
        LOGGER.warning("mongo_migrations_skipped", exc_info=True)
        return []
    finally:
        client.close()
    if applied:
        LOGGER.info("mongo_migrations_applied", extra={"outcome": ",".join(applied)})
    return applied
