from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Enum, ForeignKey, Index, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from social_connect.models.base import Base, JSONType, UTCDateTime
from social_connect.models.enums import OAuthProvider, ResourceKind


class SocialAccount(Base):
    __tablename__ = "social_accounts"
    __table_args__ = (
        UniqueConstraint(
            "team_id", "provider", "provider_user_id", name="social_accounts_natural_key"
        ),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    team_id: Mapped[UUID] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[OAuthProvider] = mapped_column(
        Enum(OAuthProvider, name="oauth_provider", native_enum=False, length=32), nullable=False
    )
    # External account/page id; not necessarily the user who authorized.
    provider_user_id: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    vault_token_id: Mapped[UUID] = mapped_column(
        ForeignKey("vault_tokens.id", ondelete="RESTRICT"), nullable=False
    )
    # "metadata" is reserved on declarative classes.
    account_metadata: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )


class SyncedResource(Base):
    __tablename__ = "synced_resources"
    __table_args__ = (
        UniqueConstraint("team_id", "provider", "external_id", name="synced_resources_natural_key"),
        Index("synced_resources_account_idx", "social_account_id"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    team_id: Mapped[UUID] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[OAuthProvider] = mapped_column(
        Enum(OAuthProvider, name="oauth_provider", native_enum=False, length=32), nullable=False
    )
    social_account_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("social_accounts.id", ondelete="SET NULL"), nullable=True
    )
    external_id: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[ResourceKind] = mapped_column(
        Enum(ResourceKind, name="resource_kind", native_enum=False, length=32), nullable=False
    )
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    resource_metadata: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    last_synced_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )
