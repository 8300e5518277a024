from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from social_connect.core.errors import ConnectError
from social_connect.core.metrics import observe_resource_sync
from social_connect.core.middleware import log_json
from social_connect.models.enums import OAuthProvider
from social_connect.models.social import SocialAccount, SyncedResource
from social_connect.services import vault
from social_connect.services.oauth.refresh import get_valid_access_token
from social_connect.services.providers.base import ProviderAdapter, ProviderIdentity, SubAccount
from social_connect.services.providers.registry import ProviderRegistry

logger = logging.getLogger("social_connect.sync")


@dataclass
class SyncReport:
    provider: str
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0

    def merge(self, other: SyncReport) -> None:
        self.created += other.created
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.failed += other.failed

    def as_dict(self) -> dict[str, int | str]:
        return asdict(self)


def _account_ids_by_external_id(
    session: Session, *, team_id: UUID, provider: OAuthProvider
) -> dict[str, UUID]:
    rows = session.execute(
        select(SocialAccount.provider_user_id, SocialAccount.id).where(
            SocialAccount.team_id == team_id,
            SocialAccount.provider == provider,
        )
    ).all()
    return {puid: account_id for puid, account_id in rows}


def reconcile_resources(
    *,
    session: Session,
    team_id: UUID,
    provider: OAuthProvider,
    resources: list[SubAccount],
    social_account_id: UUID | None,
    now: datetime | None = None,
) -> SyncReport:
    """Insert new resources and update changed ones; rows missing upstream are left alone."""
    synced_at = now or datetime.now(UTC)
    report = SyncReport(provider=provider.value)

    existing = {
        row.external_id: row
        for row in session.execute(
            select(SyncedResource).where(
                SyncedResource.team_id == team_id,
                SyncedResource.provider == provider,
            )
        ).scalars()
    }
    # A resource that is itself a connected account (a page) links to that account.
    account_ids = _account_ids_by_external_id(session, team_id=team_id, provider=provider)

    for resource in resources:
        owner_id = account_ids.get(resource.id, social_account_id)
        try:
            with session.begin_nested():
                row = existing.get(resource.id)
                if row is None:
                    row = SyncedResource(
                        team_id=team_id,
                        provider=provider,
                        social_account_id=owner_id,
                        external_id=resource.id,
                        kind=resource.kind,
                        name=resource.name,
                        resource_metadata=dict(resource.metadata),
                        last_synced_at=synced_at,
                    )
                    session.add(row)
                    session.flush()
                    existing[resource.id] = row
                    report.created += 1
                    continue

                changed = (
                    row.name != resource.name
                    or row.kind != resource.kind
                    or row.resource_metadata != resource.metadata
                    or (owner_id is not None and row.social_account_id != owner_id)
                )
                if changed:
                    row.name = resource.name
                    row.kind = resource.kind
                    row.resource_metadata = dict(resource.metadata)
                    if owner_id is not None:
                        row.social_account_id = owner_id
                row.last_synced_at = synced_at
                session.flush()
                if changed:
                    report.updated += 1
                else:
                    report.unchanged += 1
        except SQLAlchemyError as exc:
            report.failed += 1
            log_json(
                "sync.resource.failed",
                level=logging.WARNING,
                log=logger,
                provider=provider.value,
                team_id=str(team_id),
                external_id=resource.id,
                error=type(exc).__name__,
            )

    observe_resource_sync(
        provider=provider.value,
        created=report.created,
        updated=report.updated,
        failed=report.failed,
    )
    return report


def sync_provider_resources(
    *,
    session: Session,
    http_client: httpx.Client,
    adapter: ProviderAdapter,
    team_id: UUID,
    access_token: str,
    social_account_id: UUID | None = None,
    identity: ProviderIdentity | None = None,
) -> SyncReport:
    resources = adapter.fetch_sub_accounts(http_client, access_token=access_token, identity=identity)
    report = reconcile_resources(
        session=session,
        team_id=team_id,
        provider=adapter.provider,
        resources=resources,
        social_account_id=social_account_id,
    )
    log_json(
        "sync.completed",
        log=logger,
        provider=adapter.provider.value,
        team_id=str(team_id),
        **{k: v for k, v in report.as_dict().items() if k != "provider"},
    )
    return report


def _listing_token(
    *,
    session: Session,
    http_client: httpx.Client,
    registry: ProviderRegistry,
    adapter: ProviderAdapter,
    account: SocialAccount,
) -> str:
    if adapter.multi_account:
        # Page-style accounts list with the long-lived user token from the refresh slot;
        # the refresh sweep keeps that one current.
        access = vault.get_decrypted_access_token(session=session, entry_id=account.vault_token_id)
        refresh = vault.get_refresh_token(session=session, entry_id=account.vault_token_id)
        return adapter.sync_token(access_token=access, refresh_token=refresh)
    return get_valid_access_token(
        session=session, http_client=http_client, registry=registry, account_id=account.id
    )


def resync_team_provider(
    *,
    session: Session,
    http_client: httpx.Client,
    registry: ProviderRegistry,
    team_id: UUID,
    provider: OAuthProvider,
) -> SyncReport:
    """Re-run the fan-out for every stored account of a team and provider."""
    adapter = registry.get(provider)
    report = SyncReport(provider=provider.value)
    accounts = (
        session.execute(
            select(SocialAccount)
            .where(SocialAccount.team_id == team_id, SocialAccount.provider == provider)
            .order_by(SocialAccount.created_at.asc())
        )
        .scalars()
        .all()
    )

    seen_tokens: set[str] = set()
    for account in accounts:
        try:
            token = _listing_token(
                session=session,
                http_client=http_client,
                registry=registry,
                adapter=adapter,
                account=account,
            )
            # Sibling pages share one user token; listing once covers all of them.
            if token in seen_tokens:
                continue
            seen_tokens.add(token)
            report.merge(
                sync_provider_resources(
                    session=session,
                    http_client=http_client,
                    adapter=adapter,
                    team_id=team_id,
                    access_token=token,
                    social_account_id=account.id,
                )
            )
        except ConnectError as exc:
            report.failed += 1
            log_json(
                "sync.account.failed",
                level=logging.WARNING,
                log=logger,
                provider=provider.value,
                team_id=str(team_id),
                account_id=str(account.id),
                error_code=exc.code,
                error=str(exc),
            )
    return report
