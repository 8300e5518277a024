from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from social_connect.core.config import get_settings
from social_connect.core.errors import (
    ConnectError,
    MissingParameter,
    NoAccountsPersisted,
    ProviderMismatch,
    ProviderNotConfigured,
    StateMismatch,
    TokenExchangeFailed,
    UpstreamProviderError,
)
from social_connect.core.metrics import observe_account_persisted, observe_oauth_flow
from social_connect.core.middleware import log_json
from social_connect.core.security import new_random_token, pkce_code_challenge
from social_connect.models.enums import FlowStage, OAuthProvider
from social_connect.services import vault
from social_connect.services.audit import log_event
from social_connect.services.oauth.flow_state import (
    consume_flow_state,
    create_flow_state,
    discard_flow_state,
    is_expired,
)
from social_connect.services.providers.base import (
    ProviderAdapter,
    ProviderIdentity,
    SubAccount,
    TokenSet,
)
from social_connect.services.providers.registry import ProviderRegistry
from social_connect.services.resource_sync import SyncReport, sync_provider_resources
from social_connect.services.teams import ensure_team_admin

logger = logging.getLogger("social_connect.oauth")

STATE_BYTES = 32
# 64 random bytes -> 86 urlsafe chars, inside RFC 7636's 43..128 window.
CODE_VERIFIER_BYTES = 64


@dataclass(frozen=True)
class BeginResult:
    authorization_url: str
    state: str


@dataclass(frozen=True)
class AccountTarget:
    provider_user_id: str
    display_name: str | None
    tokens: TokenSet
    metadata: dict[str, Any]


@dataclass(frozen=True)
class PersistedAccount:
    provider_user_id: str
    account_id: UUID
    entry_id: UUID


@dataclass(frozen=True)
class AccountFailure:
    provider_user_id: str
    error: str


@dataclass
class CallbackOutcome:
    provider: OAuthProvider
    team_id: UUID
    stage: FlowStage
    accounts: list[PersistedAccount] = field(default_factory=list)
    failures: list[AccountFailure] = field(default_factory=list)
    used_fallback: bool = False
    sync_report: SyncReport | None = None


class ConnectionOrchestrator:
    """Drives one OAuth connection from initiation to vault write and sync.

    Built per request with the request's DB session, HTTP client and provider
    registry. ``complete`` owns its transaction boundaries: the flow state
    consumption is committed before any provider call so it can never be
    replayed, even when a later step fails.
    """

    def __init__(
        self,
        *,
        session: Session,
        http_client: httpx.Client,
        registry: ProviderRegistry,
    ) -> None:
        self.session = session
        self.http_client = http_client
        self.registry = registry

    def begin(self, *, provider: str, team_id: UUID, user_id: UUID) -> BeginResult:
        adapter = self.registry.get(provider)
        ensure_team_admin(session=self.session, team_id=team_id, user_id=user_id)
        if not adapter.is_configured():
            raise ProviderNotConfigured(f"{adapter.display_name} OAuth is not configured")

        state = new_random_token(nbytes=STATE_BYTES)
        code_verifier = new_random_token(nbytes=CODE_VERIFIER_BYTES) if adapter.uses_pkce else None
        redirect_uri = get_settings().oauth_redirect_uri(adapter.provider.value)

        create_flow_state(
            session=self.session,
            state=state,
            provider=adapter.provider,
            team_id=team_id,
            user_id=user_id,
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
        )
        url = adapter.build_authorization_url(
            state=state,
            redirect_uri=redirect_uri,
            code_challenge=pkce_code_challenge(code_verifier) if code_verifier else None,
        )

        observe_oauth_flow(
            provider=adapter.provider.value, stage=FlowStage.initiated.value, outcome="ok"
        )
        log_json(
            "oauth.initiated",
            log=logger,
            provider=adapter.provider.value,
            team_id=str(team_id),
            user_id=str(user_id),
            pkce=adapter.uses_pkce,
        )
        return BeginResult(authorization_url=url, state=state)

    def complete(
        self,
        *,
        provider: str,
        code: str | None,
        state: str | None,
        browser_state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> CallbackOutcome:
        """Finish a flow. ``browser_state`` is the state cookie set by ``begin``;
        a callback arriving without it, or with another flow's, is rejected."""
        adapter = self.registry.get(provider)
        stage = FlowStage.callback_received
        team_id: UUID | None = None
        user_id: UUID | None = None

        try:
            if error:
                self._drop_state(state)
                raise UpstreamProviderError(
                    provider=adapter.provider.value, error=error, description=error_description
                )
            if not code:
                self._drop_state(state)
                raise MissingParameter(
                    "Authorization code is missing from callback", code="missing_code"
                )

            flow = consume_flow_state(session=self.session, state=state or "")
            # Consumption must stick even if everything after it fails.
            self.session.commit()

            if flow is None:
                raise StateMismatch("Security validation failed. Please try connecting again.")
            # Known flow from here on; failures are audited against its team.
            team_id = flow.team_id
            user_id = flow.user_id
            if not _same_state(browser_state, flow.state):
                raise StateMismatch(
                    "Callback did not come from the browser that started the flow."
                )
            if flow.provider != adapter.provider:
                raise ProviderMismatch(
                    f"Flow was started for {flow.provider.value}, callback arrived for "
                    f"{adapter.provider.value}"
                )
            if is_expired(flow):
                raise StateMismatch("Connection link expired. Please try connecting again.")

            stage = FlowStage.state_validated

            if adapter.uses_pkce and not flow.code_verifier:
                raise MissingParameter(
                    "PKCE code verifier is missing. Please try connecting again.",
                    code="missing_code_verifier",
                )

            tokens = adapter.exchange_code(
                self.http_client,
                code=code,
                code_verifier=flow.code_verifier,
                redirect_uri=flow.redirect_uri,
            )
            stage = FlowStage.code_exchanged

            identity = adapter.fetch_identity(self.http_client, access_token=tokens.access_token)
            targets, used_fallback = self._resolve_accounts(adapter, tokens, identity)
            stage = FlowStage.accounts_resolved

            outcome = CallbackOutcome(
                provider=adapter.provider,
                team_id=team_id,
                stage=stage,
                used_fallback=used_fallback,
            )
            self._persist_accounts(adapter, team_id, targets, outcome)
            if not outcome.accounts:
                raise NoAccountsPersisted(
                    f"None of {len(targets)} {adapter.provider.value} accounts could be stored"
                )
            stage = outcome.stage = FlowStage.vault_written
            self.session.commit()

            outcome.sync_report = self._dispatch_sync(adapter, team_id, tokens, identity, outcome)
            stage = outcome.stage = FlowStage.sync_dispatched

            log_event(
                session=self.session,
                team_id=team_id,
                actor_user_id=user_id,
                event_type="oauth.connected",
                event_data={
                    "provider": adapter.provider.value,
                    "account_ids": [str(a.account_id) for a in outcome.accounts],
                    "failed": len(outcome.failures),
                    "fallback": outcome.used_fallback,
                },
            )
            self.session.commit()
            outcome.stage = FlowStage.done
        except ConnectError as exc:
            self.session.rollback()
            self._record_failure(adapter, stage, exc, team_id=team_id, user_id=user_id)
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            wrapped = ConnectError(
                f"Database error during {adapter.provider.value} callback: {type(exc).__name__}",
                code="callback_error",
            )
            self._record_failure(adapter, stage, wrapped, team_id=team_id, user_id=user_id)
            raise wrapped from exc
        except Exception as exc:
            self.session.rollback()
            wrapped = ConnectError(
                f"Unexpected error during {adapter.provider.value} callback: {type(exc).__name__}",
                code="callback_error",
            )
            self._record_failure(adapter, stage, wrapped, team_id=team_id, user_id=user_id)
            raise wrapped from exc

        observe_oauth_flow(provider=adapter.provider.value, stage=FlowStage.done.value, outcome="ok")
        log_json(
            "oauth.connected",
            log=logger,
            provider=adapter.provider.value,
            team_id=str(team_id),
            accounts=len(outcome.accounts),
            failed_accounts=len(outcome.failures),
            fallback=outcome.used_fallback,
        )
        return outcome

    # -- steps --------------------------------------------------------------

    def _drop_state(self, state: str | None) -> None:
        discard_flow_state(session=self.session, state=state)
        self.session.commit()

    def _resolve_accounts(
        self,
        adapter: ProviderAdapter,
        tokens: TokenSet,
        identity: ProviderIdentity,
    ) -> tuple[list[AccountTarget], bool]:
        if adapter.multi_account:
            subs = adapter.fetch_sub_accounts(
                self.http_client, access_token=tokens.access_token, identity=identity
            )
            if subs:
                return [
                    AccountTarget(
                        provider_user_id=sub.id,
                        display_name=sub.name,
                        tokens=adapter.credentials_for(tokens, sub),
                        metadata=dict(sub.metadata),
                    )
                    for sub in subs
                ], False

            log_json(
                "oauth.accounts.none_found",
                level=logging.WARNING,
                log=logger,
                provider=adapter.provider.value,
                provider_user_id=identity.provider_user_id,
            )
            fallback = AccountTarget(
                provider_user_id=identity.provider_user_id,
                display_name=identity.display_name or f"{adapter.display_name} User",
                tokens=adapter.credentials_for(tokens, None),
                metadata={**identity.metadata, "note": adapter.fallback_note},
            )
            return [fallback], True

        metadata = dict(identity.metadata)
        metadata["resources"] = [
            {"id": sub.id, "name": sub.name, "kind": sub.kind.value}
            for sub in self._listing_best_effort(adapter, tokens, identity)
        ]
        return [
            AccountTarget(
                provider_user_id=identity.provider_user_id,
                display_name=identity.display_name,
                tokens=adapter.credentials_for(tokens, None),
                metadata=metadata,
            )
        ], False

    def _listing_best_effort(
        self,
        adapter: ProviderAdapter,
        tokens: TokenSet,
        identity: ProviderIdentity,
    ) -> list[SubAccount]:
        # Single-account providers still connect when the resource listing is unavailable.
        try:
            return adapter.fetch_sub_accounts(
                self.http_client, access_token=tokens.access_token, identity=identity
            )
        except TokenExchangeFailed as exc:
            log_json(
                "oauth.resources.listing_failed",
                level=logging.WARNING,
                log=logger,
                provider=adapter.provider.value,
                upstream_message=exc.upstream_message,
            )
            return []

    def _persist_accounts(
        self,
        adapter: ProviderAdapter,
        team_id: UUID,
        targets: list[AccountTarget],
        outcome: CallbackOutcome,
    ) -> None:
        now = datetime.now(UTC)
        for target in targets:
            try:
                with self.session.begin_nested():
                    stored = vault.store(
                        session=self.session,
                        team_id=team_id,
                        provider=adapter.provider,
                        provider_user_id=target.provider_user_id,
                        access_token=target.tokens.access_token,
                        refresh_token=target.tokens.refresh_token,
                        expires_at=target.tokens.expires_at(now=now),
                        scope=target.tokens.scope,
                        display_name=target.display_name,
                        metadata=target.metadata,
                    )
            except (SQLAlchemyError, ConnectError, ValueError) as exc:
                outcome.failures.append(
                    AccountFailure(provider_user_id=target.provider_user_id, error=type(exc).__name__)
                )
                observe_account_persisted(provider=adapter.provider.value, ok=False)
                log_json(
                    "oauth.account.persist_failed",
                    level=logging.ERROR,
                    log=logger,
                    provider=adapter.provider.value,
                    team_id=str(team_id),
                    provider_user_id=target.provider_user_id,
                    error=type(exc).__name__,
                )
                continue

            outcome.accounts.append(
                PersistedAccount(
                    provider_user_id=target.provider_user_id,
                    account_id=stored.account_id,
                    entry_id=stored.entry_id,
                )
            )
            observe_account_persisted(provider=adapter.provider.value, ok=True)

        if outcome.failures and outcome.accounts:
            log_json(
                "oauth.accounts.partial",
                level=logging.WARNING,
                log=logger,
                provider=adapter.provider.value,
                team_id=str(team_id),
                persisted=len(outcome.accounts),
                failed=[f.provider_user_id for f in outcome.failures],
            )

    def _dispatch_sync(
        self,
        adapter: ProviderAdapter,
        team_id: UUID,
        tokens: TokenSet,
        identity: ProviderIdentity,
        outcome: CallbackOutcome,
    ) -> SyncReport | None:
        # The connection already succeeded; sync problems are logged, never raised.
        owner_id = None if adapter.multi_account else outcome.accounts[0].account_id
        try:
            report = sync_provider_resources(
                session=self.session,
                http_client=self.http_client,
                adapter=adapter,
                team_id=team_id,
                access_token=tokens.access_token,
                social_account_id=owner_id,
                identity=identity,
            )
            self.session.commit()
            return report
        except Exception as exc:
            self.session.rollback()
            log_json(
                "oauth.sync.failed",
                level=logging.WARNING,
                log=logger,
                provider=adapter.provider.value,
                team_id=str(team_id),
                error=type(exc).__name__,
                detail=getattr(exc, "upstream_message", None),
            )
            return None

    def _record_failure(
        self,
        adapter: ProviderAdapter,
        stage: FlowStage,
        exc: ConnectError,
        *,
        team_id: UUID | None,
        user_id: UUID | None,
    ) -> None:
        observe_oauth_flow(provider=adapter.provider.value, stage=stage.value, outcome=exc.code)
        # CSRF-shaped failures are warnings; everything else needs operator eyes.
        level = logging.WARNING if isinstance(exc, (StateMismatch, ProviderMismatch)) else logging.ERROR
        if isinstance(exc, (UpstreamProviderError, MissingParameter)):
            level = logging.INFO
        log_json(
            "oauth.callback.failed",
            level=level,
            log=logger,
            provider=adapter.provider.value,
            stage=stage.value,
            next_stage=FlowStage.error.value,
            error_code=exc.code,
            error=str(exc),
            team_id=str(team_id) if team_id else None,
        )
        if team_id is None:
            return
        log_event(
            session=self.session,
            team_id=team_id,
            actor_user_id=user_id,
            event_type="oauth.connect_failed",
            event_data={"provider": adapter.provider.value, "stage": stage.value, "code": exc.code},
        )
        self.session.commit()


def _same_state(browser_state: str | None, stored_state: str) -> bool:
    if not browser_state:
        return False
    return hmac.compare_digest(browser_state.encode("utf-8"), stored_state.encode("utf-8"))
