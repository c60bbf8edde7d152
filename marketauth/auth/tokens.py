"""Access/refresh token issuance, verification and rotation."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from marketauth.auth.models import AuthUser, Claims, RefreshTokenRecord, Role, TokenPair
from marketauth.auth.repository import AuthRepository
from marketauth.core.clock import Clock, SystemClock
from marketauth.core.config import AuthConfig
from marketauth.core.security import (
    TokenDecodeError,
    build_signed_token,
    decode_signed_token,
    digests_match,
    hash_token,
)
from marketauth.core.security import TokenExpiredError as _SignatureExpired

LOGGER = logging.getLogger(__name__)


class TokenInvalidError(ValueError):
    """Token is malformed, forged, of the wrong type or unknown."""


class TokenExpiredError(TokenInvalidError):
    """Token signature is fine but it is past its expiry."""


class TokenRevokedError(TokenInvalidError):
    """Refresh token was already used or explicitly revoked."""


class TokenIssuer:
    """Mints access/refresh pairs; refresh tokens are single-use."""

    def __init__(
        self, repo: AuthRepository, config: AuthConfig, clock: Clock | None = None
    ) -> None:
        self._repo = repo
        self._config = config
        self._clock = clock or SystemClock()

    def issue(self, user: AuthUser) -> TokenPair:
        """Issue a fresh token pair and persist the refresh token hash."""
        pair, _ = self._mint(user)
        return pair

    def _mint(self, user: AuthUser) -> tuple[TokenPair, str]:
        now = self._clock.now()
        refresh_jti = uuid.uuid4().hex
        access_payload = {
            "iss": self._config.issuer,
            "sub": user.user_id,
            "role": str(user.role),
            "type": "access",
            "iat": now,
            "exp": now + self._config.access_token_ttl_seconds,
            "jti": uuid.uuid4().hex,
        }
        refresh_payload = {
            "iss": self._config.issuer,
            "sub": user.user_id,
            "type": "refresh",
            "iat": now,
            "exp": now + self._config.refresh_token_ttl_seconds,
            "jti": refresh_jti,
        }
        access_token = build_signed_token(access_payload, self._config.secret_key)
        refresh_token = build_signed_token(refresh_payload, self._config.secret_key)

        self._repo.save_refresh_token(
            RefreshTokenRecord(
                jti=refresh_jti,
                user_id=user.user_id,
                token_hash=hash_token(refresh_token),
                expires_at=refresh_payload["exp"],
            )
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._config.access_token_ttl_seconds,
        )
        return pair, refresh_jti

    def verify(self, access_token: str) -> Claims:
        """Return claims of a valid access token."""
        payload = self._decode(access_token, expected_type="access")
        try:
            role = Role(str(payload.get("role") or ""))
        except ValueError as exc:
            raise TokenInvalidError("Invalid token role") from exc
        return Claims(
            user_id=str(payload.get("sub") or ""),
            role=role,
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(payload.get("exp") or 0),
            jti=str(payload.get("jti") or ""),
        )

    def refresh(self, refresh_token: str) -> tuple[AuthUser, TokenPair]:
        """Rotate ``refresh_token`` into a new pair for the current user.

        Presenting an already consumed token is treated as theft: every
        refresh token of that user is revoked.
        """
        payload = self._decode(refresh_token, expected_type="refresh")
        jti = str(payload.get("jti") or "")
        record = self._repo.get_refresh_token(jti)
        if record is None or not digests_match(record.token_hash, hash_token(refresh_token)):
            raise TokenInvalidError("Unknown refresh token")
        if record.expires_at < self._clock.now():
            self._repo.revoke_refresh_token(jti)
            raise TokenExpiredError("Refresh token expired")

        user = self._repo.get_user(record.user_id)
        if user is None or not user.is_active:
            raise TokenInvalidError("User not found")

        pair, replacement_jti = self._mint(user)
        if not self._repo.consume_refresh_token(jti, replaced_by=replacement_jti):
            self._repo.revoke_all_refresh_tokens(record.user_id)
            LOGGER.warning(
                "refresh_token_replay",
                extra={"actor_id": record.user_id, "outcome": "revoked_all"},
            )
            raise TokenRevokedError("Refresh token already used")
        return user, pair

    def revoke(self, refresh_token: str) -> bool:
        """Revoke one refresh token; invalid tokens are ignored."""
        try:
            payload = self._decode(refresh_token, expected_type="refresh")
        except TokenInvalidError:
            return False
        jti = str(payload.get("jti") or "")
        record = self._repo.get_refresh_token(jti)
        if record is None or not digests_match(record.token_hash, hash_token(refresh_token)):
            return False
        self._repo.revoke_refresh_token(jti)
        return True

    def revoke_all(self, user_id: str) -> int:
        return self._repo.revoke_all_refresh_tokens(user_id)

    def _decode(self, token: str, *, expected_type: str) -> dict[str, Any]:
        """Decode signed token and validate issuer/type claims."""
        try:
            payload = decode_signed_token(
                token, self._config.secret_key, now=self._clock.now()
            )
        except _SignatureExpired as exc:
            raise TokenExpiredError(str(exc)) from exc
        except TokenDecodeError as exc:
            raise TokenInvalidError(str(exc)) from exc

        if str(payload.get("iss") or "") != self._config.issuer:
            raise TokenInvalidError("Invalid token issuer")
        if str(payload.get("type") or "") != expected_type:
            raise TokenInvalidError("Invalid token type")
        return payload
