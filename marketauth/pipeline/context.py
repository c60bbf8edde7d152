"""Immutable request context threaded through authorization stages."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Mapping

from marketauth.api.errors import ApiErrorCode
from marketauth.auth.models import AuthUser, Claims


@dataclass(frozen=True)
class RequestContext:
    """What a stage may look at; stages return an evolved copy, never mutate."""

    method: str
    path: str
    client_ip: str = "unknown"
    authorization: str = ""
    path_params: Mapping[str, str] = field(default_factory=dict)
    query_params: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    body_size: int = 0
    correlation_id: str = ""
    claims: Claims | None = None
    user: AuthUser | None = None
    resource_id: str = ""
    resource_owner_id: str | None = None
    flags: tuple[str, ...] = ()

    def evolve(self, **changes: Any) -> "RequestContext":
        return dataclasses.replace(self, **changes)

    @property
    def actor_id(self) -> str:
        return self.user.user_id if self.user is not None else ""

    @property
    def actor_role(self) -> str:
        return str(self.user.role) if self.user is not None else ""


@dataclass(frozen=True)
class Denial:
    """Terminal failure of one stage."""

    stage: str
    status_code: int
    error_code: ApiErrorCode
    message: str
    retry_after_seconds: int | None = None
