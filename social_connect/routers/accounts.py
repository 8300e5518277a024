from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from social_connect.core.deps import UserContext, require_session
from social_connect.core.errors import ConnectError
from social_connect.db.session import get_session
from social_connect.models.social import SocialAccount, SyncedResource
from social_connect.schemas.oauth import SocialAccountOut, SyncedResourceOut
from social_connect.services.providers.registry import parse_provider
from social_connect.services.teams import ensure_team_member

router = APIRouter(prefix="/teams/{team_id}", tags=["accounts"])


def _require_member(session: Session, *, team_id: UUID, auth: UserContext) -> None:
    try:
        ensure_team_member(session=session, team_id=team_id, user_id=auth.user_id)
    except ConnectError as exc:
        raise HTTPException(status_code=exc.http_status, detail=str(exc)) from exc


@router.get("/social-accounts", response_model=list[SocialAccountOut])
def list_social_accounts(
    team_id: UUID,
    provider: str | None = None,
    auth: UserContext = Depends(require_session),
    session: Session = Depends(get_session),
) -> list[SocialAccount]:
    _require_member(session, team_id=team_id, auth=auth)
    # Reads account rows only; credentials stay in the vault table.
    stmt = select(SocialAccount).where(SocialAccount.team_id == team_id)
    if provider:
        try:
            stmt = stmt.where(SocialAccount.provider == parse_provider(provider))
        except ConnectError as exc:
            raise HTTPException(status_code=exc.http_status, detail=str(exc)) from exc
    stmt = stmt.order_by(SocialAccount.provider.asc(), SocialAccount.created_at.asc())
    return list(session.execute(stmt).scalars().all())


@router.get("/synced-resources", response_model=list[SyncedResourceOut])
def list_synced_resources(
    team_id: UUID,
    provider: str | None = None,
    auth: UserContext = Depends(require_session),
    session: Session = Depends(get_session),
) -> list[SyncedResource]:
    _require_member(session, team_id=team_id, auth=auth)
    stmt = select(SyncedResource).where(SyncedResource.team_id == team_id)
    if provider:
        try:
            stmt = stmt.where(SyncedResource.provider == parse_provider(provider))
        except ConnectError as exc:
            raise HTTPException(status_code=exc.http_status, detail=str(exc)) from exc
    stmt = stmt.order_by(SyncedResource.provider.asc(), SyncedResource.external_id.asc())
    return list(session.execute(stmt).scalars().all())
