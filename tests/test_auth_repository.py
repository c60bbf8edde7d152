from __future__ import annotations

import json
from pathlib import Path

import pytest

from marketauth.auth.models import AuthUser, RefreshTokenRecord, Role
from marketauth.auth.repository import AuthRepository, DuplicateTargetError
from marketauth.core.targets import normalize_target
from tests.mock_app import PHONE


def _user(user_id: str = "u1", **overrides) -> AuthUser:
    values = {
        "user_id": user_id,
        "name": "Asha",
        "email": "asha@test.local",
        "phone": PHONE,
        "password_hash": "hash",
    }
    values.update(overrides)
    return AuthUser(**values)


def test_auth_repository_create_and_lookup_by_target(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    repo.create_user(_user())

    by_phone = repo.get_user_by_target(normalize_target(phone="98765 43210"))
    by_email = repo.get_user_by_email(" ASHA@test.local ")

    assert by_phone is not None
    assert by_phone.user_id == "u1"
    assert by_email is not None
    assert by_email.user_id == "u1"
    assert repo.get_user("missing") is None


def test_auth_repository_rejects_duplicate_phone_or_email(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    repo.create_user(_user())

    with pytest.raises(DuplicateTargetError):
        repo.create_user(_user("u2", email="other@test.local"))
    with pytest.raises(DuplicateTargetError):
        repo.create_user(_user("u3", phone="+919000000000"))


def test_auth_repository_allows_users_without_email(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    repo.create_user(_user("u1", email=""))
    repo.create_user(_user("u2", email="", phone="+919000000000"))

    assert repo.get_user("u2") is not None


def test_auth_repository_sets_only_known_verification_flags(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    repo.create_user(_user())

    updated = repo.set_verification_flag("u1", "is_phone_verified")

    assert updated is not None
    assert updated.is_phone_verified is True
    assert updated.is_identity_verified is False
    with pytest.raises(ValueError):
        repo.set_verification_flag("u1", "is_active")
    assert repo.set_verification_flag("missing", "is_phone_verified") is None


def test_auth_repository_role_change_and_deactivation(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    repo.create_user(_user())

    repo.set_role("u1", Role.ARTISAN)
    repo.deactivate_user("u1")
    found = repo.get_user("u1")

    assert found is not None
    assert found.role == Role.ARTISAN
    assert found.is_active is False


def test_auth_repository_locks_account_at_failure_threshold(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    repo.create_user(_user())

    for _ in range(2):
        partial = repo.record_login_failure("u1", now=1000, threshold=3, lock_seconds=60)
    locked = repo.record_login_failure("u1", now=1000, threshold=3, lock_seconds=60)
    repo.reset_login_failures("u1")
    cleared = repo.get_user("u1")

    assert partial.failed_login_count == 2
    assert partial.is_locked(1000) is False
    assert locked.is_locked(1059) is True
    assert locked.is_locked(1060) is False
    assert locked.failed_login_count == 0
    assert cleared.locked_until == 0


def test_auth_repository_save_get_and_revoke_refresh_token(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    token = RefreshTokenRecord(
        jti="j1",
        user_id="u1",
        token_hash="th",
        expires_at=2_000_000_000,
    )

    repo.save_refresh_token(token)
    saved = repo.get_refresh_token("j1")
    repo.revoke_refresh_token("j1")
    revoked = repo.get_refresh_token("j1")

    assert saved is not None
    assert saved.revoked is False
    assert revoked is not None
    assert revoked.revoked is True


def test_auth_repository_consumes_refresh_token_once(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    repo.save_refresh_token(
        RefreshTokenRecord(jti="j1", user_id="u1", token_hash="th", expires_at=2_000_000_000)
    )

    first = repo.consume_refresh_token("j1", replaced_by="j2")
    second = repo.consume_refresh_token("j1", replaced_by="j3")

    assert first is True
    assert second is False
    assert repo.get_refresh_token("j1").replaced_by == "j2"


def test_auth_repository_revokes_all_tokens_of_user(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    for jti, user_id in (("a", "u1"), ("b", "u1"), ("c", "u2")):
        repo.save_refresh_token(
            RefreshTokenRecord(jti=jti, user_id=user_id, token_hash=jti, expires_at=2_000_000_000)
        )

    revoked = repo.revoke_all_refresh_tokens("u1")

    assert revoked == 2
    assert repo.get_refresh_token("c").revoked is False


def test_auth_repository_handles_corrupted_users_file(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    users_file = tmp_path / "runtime" / "auth_store" / "users.json"
    users_file.parent.mkdir(parents=True, exist_ok=True)
    users_file.write_text("{ invalid", encoding="utf-8")

    found = repo.get_user_by_email("broken@test.local")

    assert found is None


def test_auth_repository_upsert_replaces_user_by_id(tmp_path: Path) -> None:
    repo = AuthRepository(tmp_path)
    repo.upsert_user(_user(name="First"))
    repo.upsert_user(_user(name="Second"))

    users_file = tmp_path / "runtime" / "auth_store" / "users.json"
    rows = json.loads(users_file.read_text(encoding="utf-8"))

    assert isinstance(rows, list)
    assert len(rows) == 1
    assert rows[0]["name"] == "Second"
