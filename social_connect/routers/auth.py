from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from social_connect.core.deps import UserContext, require_csrf_header, require_session
from social_connect.core.security import (
    clear_csrf_cookie,
    clear_session_cookie,
    new_random_token,
    set_csrf_cookie,
    set_session_cookie,
)
from social_connect.db.session import get_session
from social_connect.models.identity import TeamMember
from social_connect.schemas.auth import CsrfTokenResponse, DevLoginRequest, LoginResponse
from social_connect.services.audit import log_event
from social_connect.services.auth.sessions import create_dev_session

router = APIRouter(prefix="/auth", tags=["auth"], dependencies=[Depends(require_csrf_header)])


@router.get("/csrf", response_model=CsrfTokenResponse)
def issue_csrf(response: Response) -> CsrfTokenResponse:
    token = new_random_token()
    set_csrf_cookie(response, token)
    response.headers["Cache-Control"] = "no-store"
    return CsrfTokenResponse(csrf_token=token)


@router.post("/dev/login", response_model=LoginResponse)
def dev_login(
    payload: DevLoginRequest, response: Response, session: Session = Depends(get_session)
) -> LoginResponse:
    token, auth_session, team, member, user = create_dev_session(
        session=session,
        email=payload.email,
        team_name=payload.team_name,
    )

    # Rotate CSRF on login to ensure we always have a token paired with a session.
    csrf = new_random_token()
    set_session_cookie(response, token)
    set_csrf_cookie(response, csrf)

    session.commit()
    response.headers["Cache-Control"] = "no-store"

    return LoginResponse(
        user=user,
        team=team,
        role=member.role.value,
        session=auth_session,
        csrf_token=csrf,
    )


@router.post("/logout")
def logout(
    response: Response,
    auth: UserContext = Depends(require_session),
    session: Session = Depends(get_session),
) -> dict[str, str]:
    auth.session.revoked_at = datetime.now(UTC)
    auth.session.revoked_reason = "logout"
    team_ids = session.execute(
        select(TeamMember.team_id).where(TeamMember.user_id == auth.user_id)
    ).scalars().all()
    for team_id in team_ids:
        log_event(
            session=session,
            team_id=team_id,
            actor_user_id=auth.user_id,
            event_type="auth.logout",
            event_data={},
        )
    session.commit()

    clear_session_cookie(response)
    clear_csrf_cookie(response)
    response.headers["Cache-Control"] = "no-store"
    return {"status": "ok"}
