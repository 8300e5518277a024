from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

from conftest import make_team
from sqlalchemy import select
from sqlalchemy.orm import Session

from social_connect.db.session import get_sessionmaker
from social_connect.models.enums import OAuthProvider
from social_connect.models.oauth import OAuthFlowState
from social_connect.services.oauth.flow_state import (
    consume_flow_state,
    create_flow_state,
    discard_flow_state,
    is_expired,
    purge_expired_flow_states,
)


def _create(session: Session, team_id, state: str, *, now: datetime | None = None) -> OAuthFlowState:
    row = create_flow_state(
        session=session,
        state=state,
        provider=OAuthProvider.youtube,
        team_id=team_id,
        user_id=None,
        code_verifier="verifier",
        redirect_uri="http://api.test/oauth/youtube/callback",
        now=now,
    )
    session.commit()
    return row


def test_state_is_single_use(db_session: Session) -> None:
    team, _ = make_team(db_session, name="Flow Team")
    created = _create(db_session, team.id, "state-1")
    assert created.expires_at - created.created_at == timedelta(seconds=600)

    first = consume_flow_state(session=db_session, state="state-1")
    db_session.commit()
    assert first is not None
    assert first.provider == OAuthProvider.youtube
    assert first.code_verifier == "verifier"
    assert not is_expired(first)

    assert consume_flow_state(session=db_session, state="state-1") is None
    assert consume_flow_state(session=db_session, state="") is None
    db_session.rollback()


def test_expired_state_is_still_returned_for_inspection(db_session: Session) -> None:
    team, _ = make_team(db_session, name="Expired Flow Team")
    _create(db_session, team.id, "old", now=datetime.now(UTC) - timedelta(hours=1))

    row = consume_flow_state(session=db_session, state="old")
    db_session.commit()
    assert row is not None
    assert is_expired(row)


def test_purge_and_discard(db_session: Session) -> None:
    team, _ = make_team(db_session, name="Purge Team")
    now = datetime.now(UTC)
    _create(db_session, team.id, "stale", now=now - timedelta(minutes=30))
    _create(db_session, team.id, "fresh", now=now)
    _create(db_session, team.id, "abandoned", now=now)

    assert purge_expired_flow_states(session=db_session, now=now) == 1
    discard_flow_state(session=db_session, state="abandoned")
    discard_flow_state(session=db_session, state=None)
    db_session.commit()

    remaining = db_session.execute(select(OAuthFlowState.state)).scalars().all()
    assert remaining == ["fresh"]


def test_concurrent_callbacks_consume_state_exactly_once(db_session: Session) -> None:
    team, _ = make_team(db_session, name="Race Team")
    _create(db_session, team.id, "raced-state")

    SessionLocal = get_sessionmaker()
    barrier = threading.Barrier(2)

    def consume() -> bool:
        with SessionLocal() as session:
            barrier.wait(timeout=10)
            row = consume_flow_state(session=session, state="raced-state")
            session.commit()
            return row is not None

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(consume) for _ in range(2)]
        won = [f.result(timeout=30) for f in futures]

    assert sorted(won) == [False, True]
    db_session.expire_all()
    assert db_session.execute(select(OAuthFlowState)).scalars().all() == []
