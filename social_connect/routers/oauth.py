from __future__ import annotations

from urllib.parse import urlencode
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from social_connect.core.config import get_settings
from social_connect.core.deps import UserContext, require_csrf_header, require_session
from social_connect.core.errors import ConnectError, MissingParameter
from social_connect.core.http import get_http_client
from social_connect.core.security import clear_oauth_state_cookie, set_oauth_state_cookie
from social_connect.db.session import get_session
from social_connect.schemas.oauth import (
    DeauthorizeRequest,
    DeauthorizeResponse,
    RefreshRequest,
    RefreshResponse,
    SyncReportOut,
    SyncRequest,
)
from social_connect.services.oauth.disconnect import disconnect_account
from social_connect.services.oauth.orchestrator import ConnectionOrchestrator
from social_connect.services.oauth.refresh import refresh_account
from social_connect.services.providers.registry import (
    ProviderRegistry,
    get_provider_registry,
    parse_provider,
)
from social_connect.services.resource_sync import resync_team_provider
from social_connect.services.teams import ensure_team_member

router = APIRouter(prefix="/oauth", tags=["oauth"], dependencies=[Depends(require_csrf_header)])

_NO_STORE = {"Cache-Control": "no-store"}


def _error_response(exc: ConnectError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.public_message},
        headers=_NO_STORE,
    )


def _refresh(
    *,
    account_id: UUID | None,
    provider: str | None,
    auth: UserContext,
    session: Session,
    http_client: httpx.Client,
    registry: ProviderRegistry,
) -> RefreshResponse | JSONResponse:
    try:
        if account_id is None:
            raise MissingParameter("Account ID is required")
        result = refresh_account(
            session=session,
            http_client=http_client,
            registry=registry,
            account_id=account_id,
            actor_user_id=auth.user_id,
            expected_provider=parse_provider(provider) if provider else None,
        )
    except ConnectError as exc:
        session.rollback()
        return _error_response(exc)
    session.commit()
    return RefreshResponse(provider=result.provider.value, expires_at=result.expires_at)


@router.post("/refresh", response_model=RefreshResponse)
def refresh_any_account(
    payload: RefreshRequest,
    auth: UserContext = Depends(require_session),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> RefreshResponse | JSONResponse:
    return _refresh(
        account_id=payload.account_id,
        provider=None,
        auth=auth,
        session=session,
        http_client=http_client,
        registry=registry,
    )


@router.get("/{provider}")
def initiate(
    provider: str,
    team_id: UUID | None = Query(default=None, alias="teamId"),
    auth: UserContext = Depends(require_session),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> RedirectResponse:
    if team_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Team ID is required")

    orchestrator = ConnectionOrchestrator(session=session, http_client=http_client, registry=registry)
    try:
        result = orchestrator.begin(provider=provider, team_id=team_id, user_id=auth.user_id)
    except ConnectError as exc:
        session.rollback()
        raise HTTPException(status_code=exc.http_status, detail=str(exc)) from exc
    session.commit()

    response = RedirectResponse(
        url=result.authorization_url, status_code=status.HTTP_302_FOUND, headers=_NO_STORE
    )
    set_oauth_state_cookie(response, result.state)
    return response


@router.get("/{provider}/callback")
def callback(
    provider: str,
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> RedirectResponse:
    settings = get_settings()
    orchestrator = ConnectionOrchestrator(session=session, http_client=http_client, registry=registry)
    try:
        outcome = orchestrator.complete(
            provider=provider,
            code=code,
            state=state,
            browser_state=request.cookies.get(settings.OAUTH_STATE_COOKIE_NAME),
            error=error,
            error_description=error_description,
        )
    except ConnectError as exc:
        # Only the short code reaches the browser; details were logged by the orchestrator.
        query = urlencode({"error": exc.code})
    else:
        query = urlencode({"success": outcome.provider.value, "action": "connected"})

    response = RedirectResponse(
        url=settings.integrations_url(query), status_code=status.HTTP_302_FOUND, headers=_NO_STORE
    )
    clear_oauth_state_cookie(response)
    return response


@router.post("/{provider}/refresh", response_model=RefreshResponse)
def refresh_provider_account(
    provider: str,
    payload: RefreshRequest,
    auth: UserContext = Depends(require_session),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> RefreshResponse | JSONResponse:
    return _refresh(
        account_id=payload.account_id,
        provider=provider,
        auth=auth,
        session=session,
        http_client=http_client,
        registry=registry,
    )


@router.post("/{provider}/sync", response_model=SyncReportOut)
def sync_resources(
    provider: str,
    payload: SyncRequest,
    auth: UserContext = Depends(require_session),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> SyncReportOut | JSONResponse:
    try:
        parsed = parse_provider(provider)
        ensure_team_member(session=session, team_id=payload.team_id, user_id=auth.user_id)
        report = resync_team_provider(
            session=session,
            http_client=http_client,
            registry=registry,
            team_id=payload.team_id,
            provider=parsed,
        )
    except ConnectError as exc:
        session.rollback()
        return _error_response(exc)
    session.commit()
    return SyncReportOut(**report.as_dict())


@router.delete("/{provider}/deauthorize", response_model=DeauthorizeResponse)
def deauthorize(
    provider: str,
    payload: DeauthorizeRequest,
    auth: UserContext = Depends(require_session),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> DeauthorizeResponse | JSONResponse:
    try:
        if payload.account_id is None:
            raise MissingParameter("Account ID is required")
        result = disconnect_account(
            session=session,
            http_client=http_client,
            registry=registry,
            account_id=payload.account_id,
            provider=parse_provider(provider),
            actor_user_id=auth.user_id,
        )
    except ConnectError as exc:
        session.rollback()
        return _error_response(exc)
    session.commit()
    return DeauthorizeResponse(provider=result.provider.value, token_revoked=result.token_revoked)
