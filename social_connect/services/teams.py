from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from social_connect.core.errors import Forbidden
from social_connect.models.enums import TeamRole
from social_connect.models.identity import TeamMember


def get_team_role(*, session: Session, team_id: UUID, user_id: UUID) -> TeamRole | None:
    return (
        session.execute(
            select(TeamMember.role).where(
                TeamMember.team_id == team_id,
                TeamMember.user_id == user_id,
            )
        )
        .scalars()
        .first()
    )


def ensure_team_admin(*, session: Session, team_id: UUID, user_id: UUID) -> None:
    role = get_team_role(session=session, team_id=team_id, user_id=user_id)
    if role != TeamRole.admin:
        raise Forbidden("You must be a team admin to manage connected accounts")


def ensure_team_member(*, session: Session, team_id: UUID, user_id: UUID) -> TeamRole:
    role = get_team_role(session=session, team_id=team_id, user_id=user_id)
    if role is None:
        raise Forbidden("Not a member of this team")
    return role
