"""Owned marketplace resources guarded by the authorization pipeline."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from marketauth.auth.models import Role


class ResourceType(StrEnum):
    USER = "user"
    ARTISAN = "artisan"
    DISTRIBUTOR = "distributor"
    ADDRESS = "address"
    AUDIT_LOG = "audit_log"
    OTP = "otp"


class OwnedResource(BaseModel):
    """A resource row with its owning user."""

    resource_type: ResourceType
    resource_id: str
    owner_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: int = 0
    updated_at: int = 0


class ArtisanUpdateRequest(BaseModel):
    """Public artisan profile fields."""

    model_config = ConfigDict(extra="forbid")

    business_name: str | None = Field(default=None, max_length=120)
    description: str | None = Field(default=None, max_length=2000)
    skills: list[str] | None = None
    location: str | None = Field(default=None, max_length=200)


class PayoutUpdateRequest(BaseModel):
    """Bank details; only identity-verified artisans may set them."""

    model_config = ConfigDict(extra="forbid")

    account_holder: str = Field(min_length=1, max_length=120)
    account_number: str = Field(pattern=r"^\d{9,18}$")
    ifsc: str = Field(pattern=r"^[A-Z]{4}0[A-Z0-9]{6}$")


class AddressUpdateRequest(BaseModel):
    """Address owned by the user named in ``user_id``."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    line1: str = Field(min_length=1, max_length=200)
    line2: str = Field(default="", max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(pattern=r"^\d{6}$")
    country: str = Field(default="IN", min_length=2, max_length=2)


class RoleChangeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Role
