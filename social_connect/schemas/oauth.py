from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    # Browser clients send camelCase; Python callers may use field names.
    model_config = ConfigDict(populate_by_name=True)


class RefreshRequest(_CamelModel):
    account_id: UUID | None = Field(default=None, alias="accountId")


class RefreshResponse(_CamelModel):
    success: bool = True
    provider: str
    expires_at: datetime | None = Field(default=None, alias="expiresAt")


class SyncRequest(_CamelModel):
    team_id: UUID = Field(alias="teamId")


class SyncReportOut(BaseModel):
    provider: str
    created: int
    updated: int
    unchanged: int
    failed: int


class DeauthorizeRequest(_CamelModel):
    account_id: UUID | None = Field(default=None, alias="accountId")


class DeauthorizeResponse(_CamelModel):
    success: bool = True
    provider: str
    token_revoked: bool = Field(alias="tokenRevoked")


class SocialAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: str
    provider_user_id: str
    display_name: str | None
    metadata: dict[str, Any] = Field(validation_alias="account_metadata")
    created_at: datetime
    updated_at: datetime


class SyncedResourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: str
    social_account_id: UUID | None
    external_id: str
    kind: str
    name: str | None
    metadata: dict[str, Any] = Field(validation_alias="resource_metadata")
    last_synced_at: datetime
