from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.orm import Session

from social_connect.core.config import get_settings
from social_connect.models.enums import OAuthProvider
from social_connect.models.oauth import OAuthFlowState


def create_flow_state(
    *,
    session: Session,
    state: str,
    provider: OAuthProvider,
    team_id: UUID,
    user_id: UUID | None,
    code_verifier: str | None,
    redirect_uri: str,
    now: datetime | None = None,
) -> OAuthFlowState:
    created = now or datetime.now(UTC)
    row = OAuthFlowState(
        state=state,
        provider=provider,
        team_id=team_id,
        user_id=user_id,
        code_verifier=code_verifier,
        redirect_uri=redirect_uri,
        created_at=created,
        expires_at=created + timedelta(seconds=get_settings().OAUTH_STATE_TTL_SECONDS),
    )
    session.add(row)
    session.flush()
    return row


def consume_flow_state(*, session: Session, state: str) -> OAuthFlowState | None:
    """Atomically delete and return the row for ``state``.

    Concurrent consumers race on the DELETE; exactly one sees the row. Expired
    rows are returned too so callers can still compare their provider; check
    ``is_expired`` before trusting one.
    """
    if not state:
        return None

    return (
        session.execute(
            delete(OAuthFlowState)
            .where(OAuthFlowState.state == state)
            .returning(OAuthFlowState)
            .execution_options(synchronize_session=False)
        )
        .scalars()
        .first()
    )


def is_expired(row: OAuthFlowState, *, now: datetime | None = None) -> bool:
    return row.expires_at <= (now or datetime.now(UTC))


def discard_flow_state(*, session: Session, state: str | None) -> None:
    if not state:
        return
    session.execute(
        delete(OAuthFlowState)
        .where(OAuthFlowState.state == state)
        .execution_options(synchronize_session=False)
    )


def purge_expired_flow_states(*, session: Session, now: datetime | None = None) -> int:
    cutoff = now or datetime.now(UTC)
    res = session.execute(
        delete(OAuthFlowState)
        .where(OAuthFlowState.expires_at <= cutoff)
        .execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0)
