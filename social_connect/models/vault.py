from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Enum, ForeignKey, LargeBinary, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from social_connect.models.base import Base, UTCDateTime
from social_connect.models.enums import OAuthProvider


class VaultToken(Base):
    """Encrypted credentials for one social account.

    Only ``social_connect.services.vault`` reads this table; dashboards and list
    endpoints go through ``SocialAccount`` instead.
    """

    __tablename__ = "vault_tokens"
    __table_args__ = (
        UniqueConstraint(
            "team_id", "provider", "provider_user_id", name="vault_tokens_natural_key"
        ),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    team_id: Mapped[UUID] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[OAuthProvider] = mapped_column(
        Enum(OAuthProvider, name="oauth_provider", native_enum=False, length=32), nullable=False
    )
    provider_user_id: Mapped[str] = mapped_column(Text, nullable=False)

    encrypted_access_token: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    encrypted_refresh_token: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )
