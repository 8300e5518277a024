from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from social_connect.core.config import get_settings
from social_connect.core.errors import (
    AccountNotFound,
    ProviderMismatch,
    RefreshNotSupported,
    TokenExchangeFailed,
)
from social_connect.core.metrics import observe_refresh
from social_connect.core.middleware import log_json
from social_connect.models.enums import OAuthProvider
from social_connect.models.social import SocialAccount
from social_connect.services import vault
from social_connect.services.audit import log_event
from social_connect.services.providers.base import ProviderAdapter, TokenSet
from social_connect.services.providers.registry import ProviderRegistry
from social_connect.services.teams import ensure_team_member

logger = logging.getLogger("social_connect.oauth")

# One retry, only for transient upstream failures (5xx or timeout).
REFRESH_ATTEMPTS = 2
RETRY_JITTER_SECONDS = (0.25, 0.75)


@dataclass(frozen=True)
class RefreshResult:
    account_id: UUID
    provider: OAuthProvider
    expires_at: datetime | None


def get_account(*, session: Session, account_id: UUID) -> SocialAccount:
    account = session.get(SocialAccount, account_id)
    if account is None:
        raise AccountNotFound(f"Social account {account_id} not found")
    return account


def _refresh_with_retry(
    adapter: ProviderAdapter,
    client: httpx.Client,
    *,
    refresh_token: str,
    provider_user_id: str,
) -> TokenSet:
    for attempt in range(1, REFRESH_ATTEMPTS + 1):
        try:
            return adapter.refresh(
                client, refresh_token=refresh_token, provider_user_id=provider_user_id
            )
        except TokenExchangeFailed as exc:
            if not exc.retryable or attempt == REFRESH_ATTEMPTS:
                raise
            delay = random.uniform(*RETRY_JITTER_SECONDS)
            log_json(
                "oauth.refresh.retry",
                level=logging.WARNING,
                log=logger,
                provider=adapter.provider.value,
                attempt=attempt,
                delay_s=round(delay, 3),
                status_code=exc.status_code,
            )
            time.sleep(delay)
    raise AssertionError("unreachable")


def refresh_account(
    *,
    session: Session,
    http_client: httpx.Client,
    registry: ProviderRegistry,
    account_id: UUID,
    actor_user_id: UUID | None = None,
    expected_provider: OAuthProvider | None = None,
) -> RefreshResult:
    """Refresh one account's credentials and rotate its vault entry.

    The existing refresh token is kept unless the provider hands back a new one.
    Callers commit.
    """
    account = get_account(session=session, account_id=account_id)
    if actor_user_id is not None:
        ensure_team_member(session=session, team_id=account.team_id, user_id=actor_user_id)
    if expected_provider is not None and account.provider != expected_provider:
        raise ProviderMismatch(
            f"Account {account_id} belongs to {account.provider.value}, not {expected_provider.value}"
        )

    adapter = registry.get(account.provider)
    if not adapter.supports_refresh_token:
        raise RefreshNotSupported(f"Refresh for {account.provider.value} is not implemented")

    vault.get_entry(session=session, entry_id=account.vault_token_id, for_update=True)
    refresh_token = vault.get_refresh_token(session=session, entry_id=account.vault_token_id)
    if not refresh_token:
        raise RefreshNotSupported(
            f"{account.provider.value} account {account.provider_user_id} has no stored refresh token"
        )

    now = datetime.now(UTC)
    try:
        tokens = _refresh_with_retry(
            adapter,
            http_client,
            refresh_token=refresh_token,
            provider_user_id=account.provider_user_id,
        )
    except TokenExchangeFailed as exc:
        observe_refresh(provider=account.provider.value, outcome="failed")
        log_json(
            "oauth.refresh.failed",
            level=logging.ERROR,
            log=logger,
            provider=account.provider.value,
            account_id=str(account.id),
            status_code=exc.status_code,
            upstream_message=exc.upstream_message,
        )
        raise

    expires_at = tokens.expires_at(now=now)
    vault.store(
        session=session,
        team_id=account.team_id,
        provider=account.provider,
        provider_user_id=account.provider_user_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token or refresh_token,
        expires_at=expires_at,
        scope=tokens.scope,
    )
    log_event(
        session=session,
        team_id=account.team_id,
        actor_user_id=actor_user_id,
        event_type="oauth.token_refreshed",
        event_data={
            "provider": account.provider.value,
            "account_id": str(account.id),
            "rotated_refresh_token": bool(tokens.refresh_token and tokens.refresh_token != refresh_token),
        },
    )
    observe_refresh(provider=account.provider.value, outcome="ok")
    log_json(
        "oauth.refresh.completed",
        log=logger,
        provider=account.provider.value,
        account_id=str(account.id),
        expires_at=expires_at.isoformat() if expires_at else None,
    )
    return RefreshResult(account_id=account.id, provider=account.provider, expires_at=expires_at)


def get_valid_access_token(
    *,
    session: Session,
    http_client: httpx.Client,
    registry: ProviderRegistry,
    account_id: UUID,
    leeway_seconds: int | None = None,
) -> str:
    """Access token for outbound calls, refreshed first when it is about to expire."""
    leeway = (
        leeway_seconds if leeway_seconds is not None else get_settings().OAUTH_REFRESH_LEEWAY_SECONDS
    )
    account = get_account(session=session, account_id=account_id)
    entry = vault.get_entry(session=session, entry_id=account.vault_token_id)
    cutoff = datetime.now(UTC) + timedelta(seconds=leeway)
    if entry.expires_at is not None and entry.expires_at <= cutoff:
        refresh_account(
            session=session,
            http_client=http_client,
            registry=registry,
            account_id=account_id,
        )
    return vault.get_decrypted_access_token(session=session, entry_id=account.vault_token_id)
