"""Repository for owned resources and the ownership lookups built on it."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any

from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from marketauth.auth.repository import AuthRepository
from marketauth.resources.models import OwnedResource, ResourceType

LOGGER = logging.getLogger(__name__)


class ResourceRepository:
    """Resource repository with MongoDB primary and file-store fallback."""

    def __init__(self, app_root: Path, *, mongo_uri: str = "", mongo_db: str = "marketauth") -> None:
        self._fallback_dir = app_root / "runtime" / "resource_store"
        self._fallback_dir.mkdir(parents=True, exist_ok=True)
        self._resources_file = self._fallback_dir / "resources.json"
        self._file_lock = Lock()
        self._mongo_resources = None

        if mongo_uri:
            try:
                client: MongoClient = MongoClient(mongo_uri, serverSelectionTimeoutMS=3000)
                client.admin.command("ping")
                self._mongo_resources = client[mongo_db]["owned_resources"]
            except PyMongoError:
                LOGGER.warning("mongo_unavailable_using_file_store", exc_info=True)
                self._mongo_resources = None

    def _read_items(self) -> list[dict[str, Any]]:
        if not self._resources_file.exists():
            return []
        try:
            payload = json.loads(self._resources_file.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            LOGGER.warning("resource_store_unreadable", extra={"path": str(self._resources_file)})
            return []
        return payload if isinstance(payload, list) else []

    def _write_items(self, items: list[dict[str, Any]]) -> None:
        tmp_path = self._resources_file.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(items, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(self._resources_file)

    @staticmethod
    def _matches(row: dict[str, Any], resource_type: ResourceType, resource_id: str) -> bool:
        return row.get("resource_type") == str(resource_type) and row.get("resource_id") == resource_id

    def get(self, resource_type: ResourceType, resource_id: str) -> OwnedResource | None:
        if self._mongo_resources is not None:
            doc = self._mongo_resources.find_one(
                {"resource_type": str(resource_type), "resource_id": resource_id}, {"_id": 0}
            )
            return OwnedResource.model_validate(doc) if doc else None
        for row in self._read_items():
            if self._matches(row, resource_type, resource_id):
                return OwnedResource.model_validate(row)
        return None

    def find_by_owner(self, resource_type: ResourceType, owner_id: str) -> OwnedResource | None:
        """Return the first resource of ``resource_type`` owned by ``owner_id``."""
        if self._mongo_resources is not None:
            doc = self._mongo_resources.find_one(
                {"resource_type": str(resource_type), "owner_id": owner_id}, {"_id": 0}
            )
            return OwnedResource.model_validate(doc) if doc else None
        for row in self._read_items():
            if row.get("resource_type") == str(resource_type) and row.get("owner_id") == owner_id:
                return OwnedResource.model_validate(row)
        return None

    def upsert(self, resource: OwnedResource) -> None:
        doc = resource.model_dump(mode="json")
        if self._mongo_resources is not None:
            self._mongo_resources.update_one(
                {"resource_type": doc["resource_type"], "resource_id": resource.resource_id},
                {"$set": doc},
                upsert=True,
            )
            return
        with self._file_lock:
            items = [
                row
                for row in self._read_items()
                if not self._matches(row, resource.resource_type, resource.resource_id)
            ]
            items.append(doc)
            self._write_items(items)

    def merge_data(
        self, resource_type: ResourceType, resource_id: str, fields: dict[str, Any], *, now: int
    ) -> OwnedResource | None:
        """Merge ``fields`` into the resource data and return the updated resource."""
        if self._mongo_resources is not None:
            updates = {f"data.{key}": value for key, value in fields.items()}
            updates["updated_at"] = now
            doc = self._mongo_resources.find_one_and_update(
                {"resource_type": str(resource_type), "resource_id": resource_id},
                {"$set": updates},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            return OwnedResource.model_validate(doc) if doc else None

        with self._file_lock:
            items = self._read_items()
            updated: dict[str, Any] | None = None
            for row in items:
                if self._matches(row, resource_type, resource_id):
                    row.setdefault("data", {}).update(fields)
                    row["updated_at"] = now
                    updated = row
            if updated is None:
                return None
            self._write_items(items)
            return OwnedResource.model_validate(updated)


class OwnershipResolver:
    """Answers "who owns resource X" for every guarded resource type."""

    def __init__(self, users: AuthRepository, resources: ResourceRepository) -> None:
        self._users = users
        self._resources = resources

    def owner_of(self, resource_type: ResourceType, resource_id: str) -> str | None:
        if resource_type == ResourceType.USER:
            user = self._users.get_user(resource_id)
            return user.user_id if user is not None and user.is_active else None
        resource = self._resources.get(resource_type, resource_id)
        return resource.owner_id if resource is not None else None
