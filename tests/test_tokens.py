from __future__ import annotations

from pathlib import Path

import pytest

from marketauth.auth.models import AuthUser, Role
from marketauth.auth.repository import AuthRepository
from marketauth.auth.tokens import (
    TokenExpiredError,
    TokenInvalidError,
    TokenIssuer,
    TokenRevokedError,
)
from marketauth.core.clock import FrozenClock
from marketauth.core.security import build_signed_token
from tests.mock_app import make_config


def _issuer(tmp_path: Path) -> tuple[TokenIssuer, AuthRepository, FrozenClock, AuthUser]:
    repo = AuthRepository(tmp_path)
    user = AuthUser(user_id="u1", name="Asha", email="asha@test.local", password_hash="h", role=Role.ARTISAN)
    repo.create_user(user)
    clock = FrozenClock()
    return TokenIssuer(repo, make_config().auth, clock=clock), repo, clock, user


def test_issue_and_verify_access_token(tmp_path: Path) -> None:
    issuer, _, clock, user = _issuer(tmp_path)

    pair = issuer.issue(user)
    claims = issuer.verify(pair.access_token)

    assert pair.token_type == "bearer"
    assert pair.expires_in == 900
    assert claims.user_id == "u1"
    assert claims.role == Role.ARTISAN
    assert claims.expires_at == clock.now() + 900


def test_verify_rejects_expired_access_token(tmp_path: Path) -> None:
    issuer, _, clock, user = _issuer(tmp_path)
    pair = issuer.issue(user)
    clock.advance(901)

    with pytest.raises(TokenExpiredError):
        issuer.verify(pair.access_token)


def test_verify_rejects_refresh_token_and_forgeries(tmp_path: Path) -> None:
    issuer, _, clock, user = _issuer(tmp_path)
    pair = issuer.issue(user)
    forged = build_signed_token(
        {"iss": "marketauth-test", "sub": "u1", "role": "admin", "type": "access",
         "exp": clock.now() + 60},
        "wrong-secret",
    )
    foreign = build_signed_token(
        {"iss": "someone-else", "sub": "u1", "role": "admin", "type": "access",
         "exp": clock.now() + 60},
        "test-secret",
    )

    for token in (pair.refresh_token, forged, foreign, "not-a-token"):
        with pytest.raises(TokenInvalidError):
            issuer.verify(token)


def test_refresh_rotates_token_pair(tmp_path: Path) -> None:
    issuer, repo, _, user = _issuer(tmp_path)
    pair = issuer.issue(user)

    refreshed_user, rotated = issuer.refresh(pair.refresh_token)

    assert refreshed_user.user_id == user.user_id
    assert rotated.refresh_token != pair.refresh_token
    assert issuer.verify(rotated.access_token).user_id == "u1"
    _, again = issuer.refresh(rotated.refresh_token)
    assert again.access_token


def test_refresh_token_replay_revokes_every_session(tmp_path: Path) -> None:
    issuer, _, _, user = _issuer(tmp_path)
    pair = issuer.issue(user)
    other_session = issuer.issue(user)
    _, rotated = issuer.refresh(pair.refresh_token)

    with pytest.raises(TokenRevokedError):
        issuer.refresh(pair.refresh_token)
    with pytest.raises(TokenRevokedError):
        issuer.refresh(rotated.refresh_token)
    with pytest.raises(TokenRevokedError):
        issuer.refresh(other_session.refresh_token)


def test_refresh_rejects_expired_token(tmp_path: Path) -> None:
    issuer, _, clock, user = _issuer(tmp_path)
    pair = issuer.issue(user)
    clock.advance(3601)

    with pytest.raises(TokenExpiredError):
        issuer.refresh(pair.refresh_token)


def test_refresh_rejects_deactivated_user(tmp_path: Path) -> None:
    issuer, repo, _, user = _issuer(tmp_path)
    pair = issuer.issue(user)
    repo.deactivate_user(user.user_id)

    with pytest.raises(TokenInvalidError):
        issuer.refresh(pair.refresh_token)


def test_revoke_ignores_unknown_tokens(tmp_path: Path) -> None:
    issuer, _, _, user = _issuer(tmp_path)
    pair = issuer.issue(user)

    assert issuer.revoke("garbage") is False
    assert issuer.revoke(pair.refresh_token) is True
    with pytest.raises(TokenRevokedError):
        issuer.refresh(pair.refresh_token)


def test_revoke_all_counts_live_tokens(tmp_path: Path) -> None:
    issuer, _, _, user = _issuer(tmp_path)
    issuer.issue(user)
    issuer.issue(user)

    assert issuer.revoke_all(user.user_id) == 2
    assert issuer.revoke_all(user.user_id) == 0
