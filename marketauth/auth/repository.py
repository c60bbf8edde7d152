"""Repository for accounts and refresh token persistence."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any

from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from marketauth.auth.models import AuthUser, RefreshTokenRecord, Role
from marketauth.core.targets import TargetChannel, VerificationTarget

LOGGER = logging.getLogger(__name__)

VERIFICATION_FLAGS = {"is_phone_verified", "is_email_verified", "is_identity_verified"}


class DuplicateTargetError(ValueError):
    """Raised when a phone number or email already belongs to an account."""


class AuthRepository:
    """Account repository with MongoDB primary and file-store fallback."""

    def __init__(self, app_root: Path, *, mongo_uri: str = "", mongo_db: str = "marketauth") -> None:
        """Initialize repository storage backends."""
        self._fallback_dir = app_root / "runtime" / "auth_store"
        self._fallback_dir.mkdir(parents=True, exist_ok=True)
        self._users_file = self._fallback_dir / "users.json"
        self._refresh_file = self._fallback_dir / "refresh_tokens.json"
        self._file_lock = Lock()

        self._mongo_users = None
        self._mongo_refresh = None

        if mongo_uri:
            try:
                client: MongoClient = MongoClient(mongo_uri, serverSelectionTimeoutMS=3000)
                client.admin.command("ping")
                db = client[mongo_db]
                self._mongo_users = db["auth_users"]
                self._mongo_refresh = db["auth_refresh_tokens"]
            except PyMongoError:
                LOGGER.warning("mongo_unavailable_using_file_store", exc_info=True)
                self._mongo_users = None
                self._mongo_refresh = None

    def _read_json_file(self, path: Path) -> list[dict[str, Any]]:
        """Read list payload from JSON file with empty fallback."""
        if not path.exists():
            return []
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            LOGGER.warning("auth_store_unreadable", extra={"path": str(path)})
            return []
        return payload if isinstance(payload, list) else []

    def _write_json_file(self, path: Path, items: list[dict[str, Any]]) -> None:
        """Persist list payload to JSON file atomically."""
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(items, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(path)

    def _find_user_row(self, field: str, value: str) -> AuthUser | None:
        if not value:
            return None
        if self._mongo_users is not None:
            doc = self._mongo_users.find_one({field: value}, {"_id": 0})
            return AuthUser.model_validate(doc) if doc else None
        for row in self._read_json_file(self._users_file):
            if str(row.get(field, "")) == value:
                return AuthUser.model_validate(row)
        return None

    def get_user(self, user_id: str) -> AuthUser | None:
        """Get user by id."""
        return self._find_user_row("user_id", user_id)

    def get_user_by_email(self, email: str) -> AuthUser | None:
        """Get user by canonical email."""
        return self._find_user_row("email", email.strip().lower())

    def get_user_by_phone(self, phone: str) -> AuthUser | None:
        """Get user by canonical E.164 phone number."""
        return self._find_user_row("phone", phone.strip())

    def get_user_by_target(self, target: VerificationTarget) -> AuthUser | None:
        if target.channel == TargetChannel.PHONE:
            return self.get_user_by_phone(target.value)
        return self.get_user_by_email(target.value)

    def create_user(self, user: AuthUser) -> None:
        """Insert a new user, refusing a phone or email that is already registered."""
        doc = user.model_dump(mode="json")
        if self._mongo_users is not None:
            try:
                self._mongo_users.insert_one(dict(doc))
            except DuplicateKeyError as exc:
                raise DuplicateTargetError("User with this phone or email already exists") from exc
            return

        with self._file_lock:
            items = self._read_json_file(self._users_file)
            for row in items:
                if (user.email and row.get("email") == user.email) or (
                    user.phone and row.get("phone") == user.phone
                ):
                    raise DuplicateTargetError("User with this phone or email already exists")
            items.append(doc)
            self._write_json_file(self._users_file, items)

    def upsert_user(self, user: AuthUser) -> None:
        """Create or replace user by id."""
        doc = user.model_dump(mode="json")
        if self._mongo_users is not None:
            self._mongo_users.update_one({"user_id": user.user_id}, {"$set": doc}, upsert=True)
            return

        with self._file_lock:
            items = self._read_json_file(self._users_file)
            next_items = [row for row in items if row.get("user_id") != user.user_id]
            next_items.append(doc)
            self._write_json_file(self._users_file, next_items)

    def _update_user_fields(self, user_id: str, fields: dict[str, Any]) -> AuthUser | None:
        if self._mongo_users is not None:
            doc = self._mongo_users.find_one_and_update(
                {"user_id": user_id},
                {"$set": fields},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            return AuthUser.model_validate(doc) if doc else None

        with self._file_lock:
            items = self._read_json_file(self._users_file)
            updated: dict[str, Any] | None = None
            for row in items:
                if row.get("user_id") == user_id:
                    row.update(fields)
                    updated = row
            if updated is None:
                return None
            self._write_json_file(self._users_file, items)
            return AuthUser.model_validate(updated)

    def set_verification_flag(self, user_id: str, flag: str) -> AuthUser | None:
        """Set one of the verification flags to true."""
        if flag not in VERIFICATION_FLAGS:
            raise ValueError(f"Unknown verification flag: {flag}")
        return self._update_user_fields(user_id, {flag: True})

    def set_role(self, user_id: str, role: Role) -> AuthUser | None:
        return self._update_user_fields(user_id, {"role": str(role)})

    def set_password_hash(self, user_id: str, password_hash: str) -> AuthUser | None:
        return self._update_user_fields(user_id, {"password_hash": password_hash})

    def deactivate_user(self, user_id: str) -> AuthUser | None:
        return self._update_user_fields(user_id, {"is_active": False})

    def record_login_failure(
        self, user_id: str, *, now: int, threshold: int, lock_seconds: int
    ) -> AuthUser | None:
        """Count a failed password attempt and lock the account at ``threshold``."""
        if self._mongo_users is not None:
            doc = self._mongo_users.find_one_and_update(
                {"user_id": user_id},
                {"$inc": {"failed_login_count": 1}},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            if doc and int(doc.get("failed_login_count", 0)) >= threshold:
                doc = self._mongo_users.find_one_and_update(
                    {"user_id": user_id, "failed_login_count": {"$gte": threshold}},
                    {"$set": {"failed_login_count": 0, "locked_until": now + lock_seconds}},
                    projection={"_id": 0},
                    return_document=ReturnDocument.AFTER,
                ) or doc
            return AuthUser.model_validate(doc) if doc else None

        with self._file_lock:
            items = self._read_json_file(self._users_file)
            updated: dict[str, Any] | None = None
            for row in items:
                if row.get("user_id") == user_id:
                    count = int(row.get("failed_login_count", 0)) + 1
                    if count >= threshold:
                        row["failed_login_count"] = 0
                        row["locked_until"] = now + lock_seconds
                    else:
                        row["failed_login_count"] = count
                    updated = row
            if updated is None:
                return None
            self._write_json_file(self._users_file, items)
            return AuthUser.model_validate(updated)

    def reset_login_failures(self, user_id: str) -> None:
        self._update_user_fields(user_id, {"failed_login_count": 0, "locked_until": 0})

    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        """Save refresh token record for rotation/revocation."""
        doc = record.model_dump()
        if self._mongo_refresh is not None:
            self._mongo_refresh.update_one({"jti": record.jti}, {"$set": doc}, upsert=True)
            return

        with self._file_lock:
            items = self._read_json_file(self._refresh_file)
            next_items = [row for row in items if str(row.get("jti", "")) != record.jti]
            next_items.append(doc)
            self._write_json_file(self._refresh_file, next_items)

    def get_refresh_token(self, jti: str) -> RefreshTokenRecord | None:
        """Get refresh token record by jti."""
        if self._mongo_refresh is not None:
            doc = self._mongo_refresh.find_one({"jti": jti}, {"_id": 0})
            return RefreshTokenRecord.model_validate(doc) if doc else None

        for row in self._read_json_file(self._refresh_file):
            if str(row.get("jti", "")) == jti:
                return RefreshTokenRecord.model_validate(row)
        return None

    def consume_refresh_token(self, jti: str, *, replaced_by: str) -> bool:
        """Revoke a live refresh token; only one concurrent caller gets ``True``."""
        if self._mongo_refresh is not None:
            doc = self._mongo_refresh.find_one_and_update(
                {"jti": jti, "revoked": False},
                {"$set": {"revoked": True, "replaced_by": replaced_by}},
            )
            return doc is not None

        with self._file_lock:
            items = self._read_json_file(self._refresh_file)
            consumed = False
            for row in items:
                if str(row.get("jti", "")) == jti and not row.get("revoked"):
                    row["revoked"] = True
                    row["replaced_by"] = replaced_by
                    consumed = True
            if consumed:
                self._write_json_file(self._refresh_file, items)
            return consumed

    def revoke_refresh_token(self, jti: str) -> None:
        """Mark refresh token record as revoked."""
        self.consume_refresh_token(jti, replaced_by="")

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        """Revoke every live refresh token of a user."""
        if self._mongo_refresh is not None:
            result = self._mongo_refresh.update_many(
                {"user_id": user_id, "revoked": False}, {"$set": {"revoked": True}}
            )
            return int(result.modified_count)

        with self._file_lock:
            items = self._read_json_file(self._refresh_file)
            revoked = 0
            for row in items:
                if row.get("user_id") == user_id and not row.get("revoked"):
                    row["revoked"] = True
                    revoked += 1
            if revoked:
                self._write_json_file(self._refresh_file, items)
            return revoked
