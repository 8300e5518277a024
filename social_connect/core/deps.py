from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from social_connect.core.config import get_settings
from social_connect.core.security import hash_session_token
from social_connect.db.session import get_session
from social_connect.models.auth import AuthSession
from social_connect.models.identity import User

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


@dataclass(frozen=True)
class UserContext:
    user: User
    session: AuthSession

    @property
    def user_id(self):
        return self.user.id


def require_csrf_header(request: Request) -> None:
    if request.method in SAFE_METHODS:
        return

    settings = get_settings()
    cookie_token = request.cookies.get(settings.CSRF_COOKIE_NAME)
    header_token = request.headers.get(settings.CSRF_HEADER_NAME)

    if not cookie_token or not header_token or cookie_token != header_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="CSRF token missing or invalid",
        )


def require_session(
    request: Request,
    session: Session = Depends(get_session),
) -> UserContext:
    settings = get_settings()
    raw = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    token_hash = hash_session_token(raw)
    now = datetime.now(UTC)

    auth_session = (
        session.execute(
            select(AuthSession).where(
                AuthSession.token_hash == token_hash,
                AuthSession.revoked_at.is_(None),
                AuthSession.expires_at > now,
            )
        )
        .scalars()
        .first()
    )
    if auth_session is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session")

    user = session.get(User, auth_session.user_id)
    if user is None or user.is_disabled:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="User disabled or missing"
        )

    return UserContext(user=user, session=auth_session)
