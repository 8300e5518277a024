from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from social_connect.core.crypto import DecryptionError, EncryptionKeyError, decrypt_text, encrypt_text
from social_connect.core.errors import VaultDecryptionError, VaultEntryNotFound
from social_connect.models.enums import OAuthProvider
from social_connect.models.social import SocialAccount, SyncedResource
from social_connect.models.vault import VaultToken

ACCESS_FIELD = "access_token"
REFRESH_FIELD = "refresh_token"


@dataclass(frozen=True)
class StoredAccount:
    entry_id: UUID
    account_id: UUID


def _aad(*, team_id: UUID, provider: OAuthProvider, provider_user_id: str, field: str) -> bytes:
    # Binds each ciphertext to its row and column; a blob copied elsewhere will not decrypt.
    return f"vault_tokens:{team_id}:{provider.value}:{provider_user_id}:{field}".encode()


def _encrypt(entry_key: tuple[UUID, OAuthProvider, str], value: str, *, field: str) -> bytes:
    team_id, provider, provider_user_id = entry_key
    return encrypt_text(
        value,
        aad=_aad(team_id=team_id, provider=provider, provider_user_id=provider_user_id, field=field),
    )


def _decrypt(entry: VaultToken, blob: bytes, *, field: str) -> str:
    try:
        return decrypt_text(
            blob,
            aad=_aad(
                team_id=entry.team_id,
                provider=entry.provider,
                provider_user_id=entry.provider_user_id,
                field=field,
            ),
        )
    except (DecryptionError, EncryptionKeyError, UnicodeDecodeError) as e:
        raise VaultDecryptionError(
            f"Vault entry {entry.id} {field} could not be decrypted"
        ) from e


def _lock_entry(
    session: Session,
    *,
    team_id: UUID,
    provider: OAuthProvider,
    provider_user_id: str,
) -> VaultToken | None:
    return (
        session.execute(
            select(VaultToken)
            .where(
                VaultToken.team_id == team_id,
                VaultToken.provider == provider,
                VaultToken.provider_user_id == provider_user_id,
            )
            .with_for_update()
        )
        .scalars()
        .first()
    )


def _upsert_entry(
    session: Session,
    *,
    team_id: UUID,
    provider: OAuthProvider,
    provider_user_id: str,
) -> VaultToken:
    entry = _lock_entry(
        session, team_id=team_id, provider=provider, provider_user_id=provider_user_id
    )
    if entry is not None:
        return entry

    entry = VaultToken(
        team_id=team_id,
        provider=provider,
        provider_user_id=provider_user_id,
        encrypted_access_token=b"",
    )
    try:
        with session.begin_nested():
            session.add(entry)
            session.flush()
    except IntegrityError:
        # A concurrent connect for the same key won the insert; write over its row instead.
        entry = _lock_entry(
            session, team_id=team_id, provider=provider, provider_user_id=provider_user_id
        )
        if entry is None:
            raise
    return entry


def store(
    *,
    session: Session,
    team_id: UUID,
    provider: OAuthProvider,
    provider_user_id: str,
    access_token: str,
    refresh_token: str | None,
    expires_at: datetime | None,
    scope: str | None = None,
    display_name: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> StoredAccount:
    """Encrypt and upsert credentials plus the account row for one natural key.

    ``metadata=None`` keeps the account's existing metadata (refresh path).
    """
    if not access_token:
        raise ValueError("access_token is required")

    entry = _upsert_entry(
        session, team_id=team_id, provider=provider, provider_user_id=provider_user_id
    )
    key = (team_id, provider, provider_user_id)
    entry.encrypted_access_token = _encrypt(key, access_token, field=ACCESS_FIELD)
    entry.encrypted_refresh_token = (
        _encrypt(key, refresh_token, field=REFRESH_FIELD) if refresh_token else None
    )
    entry.expires_at = expires_at
    if scope is not None:
        entry.scope = scope
    session.flush()

    account = (
        session.execute(
            select(SocialAccount).where(
                SocialAccount.team_id == team_id,
                SocialAccount.provider == provider,
                SocialAccount.provider_user_id == provider_user_id,
            )
        )
        .scalars()
        .first()
    )
    if account is None:
        account = SocialAccount(
            team_id=team_id,
            provider=provider,
            provider_user_id=provider_user_id,
            vault_token_id=entry.id,
            display_name=display_name,
            account_metadata=dict(metadata or {}),
        )
        session.add(account)
    else:
        account.vault_token_id = entry.id
        if display_name is not None:
            account.display_name = display_name
        if metadata is not None:
            account.account_metadata = dict(metadata)
    session.flush()
    return StoredAccount(entry_id=entry.id, account_id=account.id)


def get_entry(*, session: Session, entry_id: UUID, for_update: bool = False) -> VaultToken:
    # for_update serializes refreshers of the same entry until the caller commits.
    entry = session.get(VaultToken, entry_id, with_for_update=for_update or None)
    if entry is None:
        raise VaultEntryNotFound(f"Vault entry {entry_id} not found")
    return entry


def find_entry_id(
    *,
    session: Session,
    team_id: UUID,
    provider: OAuthProvider,
    provider_user_id: str,
) -> UUID:
    entry_id = (
        session.execute(
            select(VaultToken.id).where(
                VaultToken.team_id == team_id,
                VaultToken.provider == provider,
                VaultToken.provider_user_id == provider_user_id,
            )
        )
        .scalars()
        .first()
    )
    if entry_id is None:
        raise VaultEntryNotFound(f"No vault entry for {provider.value}:{provider_user_id}")
    return entry_id


def get_decrypted_access_token(*, session: Session, entry_id: UUID) -> str:
    entry = get_entry(session=session, entry_id=entry_id)
    return _decrypt(entry, entry.encrypted_access_token, field=ACCESS_FIELD)


def get_refresh_token(*, session: Session, entry_id: UUID) -> str | None:
    entry = get_entry(session=session, entry_id=entry_id)
    if entry.encrypted_refresh_token is None:
        return None
    return _decrypt(entry, entry.encrypted_refresh_token, field=REFRESH_FIELD)


def delete_account(*, session: Session, account: SocialAccount) -> None:
    """Remove an account and its vault entry; synced resources stay, detached."""
    entry_id = account.vault_token_id
    session.execute(
        update(SyncedResource)
        .where(SyncedResource.social_account_id == account.id)
        .values(social_account_id=None)
    )
    session.delete(account)
    session.flush()
    session.execute(delete(VaultToken).where(VaultToken.id == entry_id))
    session.flush()
