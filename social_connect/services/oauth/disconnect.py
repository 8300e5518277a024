from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from social_connect.core.errors import ProviderMismatch, VaultDecryptionError, VaultEntryNotFound
from social_connect.core.middleware import log_json
from social_connect.models.enums import OAuthProvider
from social_connect.services import vault
from social_connect.services.audit import log_event
from social_connect.services.oauth.refresh import get_account
from social_connect.services.providers.registry import ProviderRegistry
from social_connect.services.teams import ensure_team_admin

logger = logging.getLogger("social_connect.oauth")


@dataclass(frozen=True)
class DisconnectResult:
    provider: OAuthProvider
    token_revoked: bool


def disconnect_account(
    *,
    session: Session,
    http_client: httpx.Client,
    registry: ProviderRegistry,
    account_id: UUID,
    provider: OAuthProvider,
    actor_user_id: UUID,
) -> DisconnectResult:
    """Explicit, admin-initiated removal of one connected account.

    Revocation upstream is best-effort; the local account and vault entry are
    removed regardless. Synced resources stay, detached from the account.
    """
    account = get_account(session=session, account_id=account_id)
    if account.provider != provider:
        raise ProviderMismatch(
            f"Account {account_id} belongs to {account.provider.value}, not {provider.value}"
        )
    ensure_team_admin(session=session, team_id=account.team_id, user_id=actor_user_id)
    adapter = registry.get(account.provider)

    token_revoked = False
    try:
        access_token = vault.get_decrypted_access_token(
            session=session, entry_id=account.vault_token_id
        )
    except (VaultEntryNotFound, VaultDecryptionError) as exc:
        # An unreadable token cannot be revoked, but the account must still be removable.
        log_json(
            "oauth.disconnect.token_unavailable",
            level=logging.WARNING,
            log=logger,
            provider=account.provider.value,
            account_id=str(account.id),
            error_code=exc.code,
        )
    else:
        token_revoked = adapter.revoke(http_client, access_token=access_token)

    team_id = account.team_id
    provider_user_id = account.provider_user_id
    vault.delete_account(session=session, account=account)
    log_event(
        session=session,
        team_id=team_id,
        actor_user_id=actor_user_id,
        event_type="oauth.disconnected",
        event_data={
            "provider": provider.value,
            "provider_user_id": provider_user_id,
            "token_revoked": token_revoked,
        },
    )
    log_json(
        "oauth.disconnected",
        log=logger,
        provider=provider.value,
        team_id=str(team_id),
        account_id=str(account_id),
        token_revoked=token_revoked,
    )
    return DisconnectResult(provider=provider, token_revoked=token_revoked)
