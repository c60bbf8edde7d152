"""Role x resource permission matrix.

Grants are ``"<action>:<scope>"`` strings. ``own`` covers resources the caller
owns, ``public`` covers the public projection of anyone's resource and ``all``
covers every instance.
"""

from __future__ import annotations

from typing import Mapping

from marketauth.auth.models import Role
from marketauth.resources.models import ResourceType

_ADMIN_ALL = frozenset({"read:all", "create:all", "update:all", "delete:all"})

PERMISSIONS: Mapping[ResourceType, Mapping[Role, frozenset[str]]] = {
    ResourceType.USER: {
        Role.CUSTOMER: frozenset({"read:own", "update:own"}),
        Role.ARTISAN: frozenset({"read:own", "read:public", "update:own"}),
        Role.DISTRIBUTOR: frozenset({"read:own", "read:public", "update:own"}),
        Role.ADMIN: _ADMIN_ALL,
    },
    ResourceType.ARTISAN: {
        Role.CUSTOMER: frozenset({"read:public"}),
        Role.ARTISAN: frozenset({"read:public", "create:own", "update:own"}),
        Role.DISTRIBUTOR: frozenset({"read:public"}),
        Role.ADMIN: _ADMIN_ALL,
    },
    ResourceType.DISTRIBUTOR: {
        Role.CUSTOMER: frozenset({"read:public"}),
        Role.ARTISAN: frozenset({"read:public"}),
        Role.DISTRIBUTOR: frozenset({"read:public", "create:own", "update:own"}),
        Role.ADMIN: _ADMIN_ALL,
    },
    ResourceType.ADDRESS: {
        Role.CUSTOMER: frozenset({"read:own", "create:own", "update:own", "delete:own"}),
        Role.ARTISAN: frozenset({"read:own", "create:own", "update:own", "delete:own"}),
        Role.DISTRIBUTOR: frozenset({"read:own", "create:own", "update:own", "delete:own"}),
        Role.ADMIN: _ADMIN_ALL,
    },
    ResourceType.AUDIT_LOG: {Role.ADMIN: frozenset({"read:all"})},
    ResourceType.OTP: {Role.ADMIN: frozenset({"read:all", "delete:all"})},
}


def has_permission(
    role: Role,
    resource_type: ResourceType,
    action: str,
    scope: str = "own",
    matrix: Mapping[ResourceType, Mapping[Role, frozenset[str]]] = PERMISSIONS,
) -> bool:
    """Return True when ``role`` may perform ``action`` at ``scope`` on the resource."""
    grants = matrix.get(resource_type, {}).get(role, frozenset())
    return f"{action}:{scope}" in grants or f"{action}:all" in grants or "*" in grants
