from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from marketauth.core.config import StorageConfig
from marketauth.core.mongo_migrations import (
    MIGRATIONS,
    apply_mongo_migrations,
    run_mongo_migrations,
)


@dataclass
class _Collection:
    indexes: list[tuple[Any, dict[str, Any]]] = field(default_factory=list)
    docs: list[dict[str, Any]] = field(default_factory=list)

    def create_index(self, keys: Any, **kwargs: Any) -> str:
        self.indexes.append((keys, kwargs))
        return str(keys)

    def find_one(self, query: dict[str, Any]) -> dict[str, Any] | None:
        for doc in self.docs:
            if all(doc.get(key) == value for key, value in query.items()):
                return doc
        return None

    def insert_one(self, doc: dict[str, Any]) -> None:
        self.docs.append(doc)


@dataclass
class _Database:
    collections: dict[str, _Collection] = field(default_factory=dict)

    def __getitem__(self, name: str) -> _Collection:
        return self.collections.setdefault(name, _Collection())


def test_run_mongo_migrations_applies_each_migration_once() -> None:
    db = _Database()

    first = run_mongo_migrations(db)
    second = run_mongo_migrations(db)

    assert first == [migration_id for migration_id, _ in MIGRATIONS]
    assert second == []
    assert len(db["schema_migrations"].docs) == len(MIGRATIONS)


def test_account_indexes_are_unique_on_identifiers() -> None:
    db = _Database()

    run_mongo_migrations(db)

    user_indexes = {str(keys): options for keys, options in db["auth_users"].indexes}
    assert user_indexes["user_id"]["unique"] is True
    assert user_indexes["email"]["partialFilterExpression"] == {"email": {"$gt": ""}}
    assert user_indexes["phone"]["unique"] is True
    token_indexes = {str(keys): options for keys, options in db["auth_refresh_tokens"].indexes}
    assert token_indexes["jti"]["unique"] is True


def test_apply_mongo_migrations_without_uri_is_noop() -> None:
    assert apply_mongo_migrations(StorageConfig(mongo_uri="")) == []
