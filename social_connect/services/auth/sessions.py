from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from social_connect.core.config import get_settings
from social_connect.core.security import hash_session_token, new_random_token
from social_connect.models.auth import AuthSession
from social_connect.models.enums import TeamRole
from social_connect.models.identity import Team, TeamMember, User
from social_connect.services.audit import log_event


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def create_dev_session(
    *,
    session: Session,
    email: str,
    team_name: str,
) -> tuple[str, AuthSession, Team, TeamMember, User]:
    settings = get_settings()
    if not settings.ALLOW_DEV_LOGIN:
        # Hide route behavior in prod rather than exposing an auth bypass.
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    email_norm = _normalize_email(email)
    if "@" not in email_norm or " " in email_norm:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid email"
        )

    name = team_name.strip()
    if not name:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Team name is required"
        )

    team = (
        session.execute(select(Team).where(Team.name == name).order_by(Team.created_at.asc()))
        .scalars()
        .first()
    )
    if team is None:
        team = Team(name=name)
        session.add(team)
        session.flush()

    user = session.execute(select(User).where(User.email == email_norm)).scalars().first()
    if user is None:
        user = User(email=email_norm)
        session.add(user)
        session.flush()

    member = (
        session.execute(
            select(TeamMember).where(
                TeamMember.team_id == team.id,
                TeamMember.user_id == user.id,
            )
        )
        .scalars()
        .first()
    )
    if member is None:
        # First login into a fresh team creates its admin; later joiners are plain members.
        has_members = (
            session.execute(select(TeamMember.id).where(TeamMember.team_id == team.id))
            .scalars()
            .first()
        )
        member = TeamMember(
            team_id=team.id,
            user_id=user.id,
            role=TeamRole.member if has_members else TeamRole.admin,
        )
        session.add(member)
        session.flush()

    token = new_random_token()
    now = datetime.now(UTC)
    auth_session = AuthSession(
        user_id=user.id,
        token_hash=hash_session_token(token),
        expires_at=now + timedelta(seconds=settings.SESSION_TTL_SECONDS),
    )
    session.add(auth_session)
    session.flush()

    log_event(
        session=session,
        team_id=team.id,
        actor_user_id=user.id,
        event_type="auth.dev_login",
        event_data={},
    )

    return token, auth_session, team, member, user
