from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import httpx
from conftest import bare_url, form_of, query_of, redirect_query
from sqlalchemy import select
from sqlalchemy.orm import Session

from social_connect.core.crypto import EncryptionKeyError
from social_connect.core.security import pkce_code_challenge
from social_connect.models.audit import AuditEvent
from social_connect.models.enums import OAuthProvider, ResourceKind
from social_connect.models.oauth import OAuthFlowState
from social_connect.models.social import SocialAccount, SyncedResource
from social_connect.models.vault import VaultToken
from social_connect.services import vault
from social_connect.services.oauth.flow_state import create_flow_state

TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
CHANNELS_URL = "https://www.googleapis.com/youtube/v3/channels"


def google_handler(request: httpx.Request) -> httpx.Response:
    url = bare_url(request)
    if url == TOKEN_URL:
        form = form_of(request)
        if form.get("grant_type") != "authorization_code":
            return httpx.Response(400, json={"error": "unsupported_grant_type"})
        return httpx.Response(
            200,
            json={
                "access_token": "ya29.access-token-1",
                "expires_in": 3600,
                "refresh_token": "1//refresh-token-1",
                "scope": "https://www.googleapis.com/auth/youtube.readonly",
                "token_type": "Bearer",
            },
        )
    if url == USERINFO_URL:
        assert request.headers.get("Authorization") == "Bearer ya29.access-token-1"
        return httpx.Response(
            200,
            json={"id": "google-user-1", "email": "creator@example.com", "name": "Creator"},
        )
    if url == CHANNELS_URL:
        return httpx.Response(
            200,
            json={
                "items": [
                    {
                        "id": "UC-channel-1",
                        "snippet": {"title": "Creator Channel", "customUrl": "@creator"},
                        "statistics": {"subscriberCount": "1200", "videoCount": "34"},
                    }
                ]
            },
        )
    return httpx.Response(404, json={"error": "not_found"})


def _audit_types(session: Session, team_id) -> list[str]:
    return list(
        session.execute(
            select(AuditEvent.event_type)
            .where(AuditEvent.team_id == team_id)
            .order_by(AuditEvent.created_at.asc())
        )
        .scalars()
        .all()
    )


def test_youtube_pkce_flow_stores_encrypted_tokens(harness, db_session: Session, caplog) -> None:
    caplog.set_level(logging.INFO)
    h = harness(google_handler)
    h.login(email="admin@youtube.test", team_name="YouTube Team")

    start = h.initiate("youtube")
    auth_qs = query_of(start.headers["location"])
    state = auth_qs["state"]
    flow = db_session.execute(select(OAuthFlowState).where(OAuthFlowState.state == state)).scalars().one()
    verifier = flow.code_verifier
    assert verifier is not None
    assert auth_qs["code_challenge"] == pkce_code_challenge(verifier)
    db_session.rollback()

    before = datetime.now(UTC)
    res = h.callback("youtube", code="test-auth-code", state=state)
    after = datetime.now(UTC)

    assert redirect_query(res) == {"success": "youtube", "action": "connected"}
    assert "oauth_state=" in res.headers["set-cookie"]

    token_calls = h.transport.calls_to(TOKEN_URL)
    assert len(token_calls) == 1
    form = form_of(token_calls[0])
    assert form["code"] == "test-auth-code"
    assert form["code_verifier"] == verifier
    assert form["redirect_uri"] == "http://api.test/oauth/youtube/callback"

    account = db_session.execute(
        select(SocialAccount).where(SocialAccount.team_id == h.team_id)
    ).scalars().one()
    assert account.provider == OAuthProvider.youtube
    assert account.provider_user_id == "google-user-1"
    assert account.display_name == "Creator"
    assert account.account_metadata["email"] == "creator@example.com"
    assert account.account_metadata["resources"] == [
        {"id": "UC-channel-1", "name": "Creator Channel", "kind": "channel"}
    ]

    entry = db_session.get(VaultToken, account.vault_token_id)
    assert entry is not None
    assert b"ya29.access-token-1" not in entry.encrypted_access_token
    assert entry.expires_at is not None
    assert before + timedelta(seconds=3600) <= entry.expires_at <= after + timedelta(seconds=3600)
    assert entry.scope == "https://www.googleapis.com/auth/youtube.readonly"
    assert (
        vault.get_decrypted_access_token(session=db_session, entry_id=entry.id)
        == "ya29.access-token-1"
    )
    assert vault.get_refresh_token(session=db_session, entry_id=entry.id) == "1//refresh-token-1"

    resource = db_session.execute(
        select(SyncedResource).where(SyncedResource.team_id == h.team_id)
    ).scalars().one()
    assert resource.external_id == "UC-channel-1"
    assert resource.kind == ResourceKind.channel
    assert resource.social_account_id == account.id
    assert resource.resource_metadata["subscriber_count"] == 1200

    assert db_session.execute(select(OAuthFlowState)).scalars().all() == []
    assert "oauth.connected" in _audit_types(db_session, h.team_id)

    all_logs = "\n".join(r.getMessage() for r in caplog.records)
    assert "oauth.connected" in all_logs
    for secret in ("ya29.access-token-1", "1//refresh-token-1", "test-auth-code", verifier):
        assert secret not in all_logs


def test_state_cannot_be_replayed(harness, db_session: Session) -> None:
    h = harness(google_handler)
    h.login(email="admin@replay.test", team_name="Replay Team")
    state = h.start_flow("youtube")

    first = h.callback("youtube", code="code-1", state=state)
    assert redirect_query(first)["success"] == "youtube"

    second = h.callback("youtube", code="code-1", state=state)
    assert redirect_query(second) == {"error": "invalid_state"}
    assert len(h.transport.calls_to(TOKEN_URL)) == 1


def test_unknown_or_missing_state_is_rejected_without_provider_calls(harness) -> None:
    h = harness(google_handler)
    assert redirect_query(h.callback("youtube", code="c", state="forged")) == {"error": "invalid_state"}
    assert redirect_query(h.callback("youtube", code="c")) == {"error": "invalid_state"}
    assert h.transport.requests == []


def test_callback_for_other_provider_is_rejected_and_burns_state(harness, db_session: Session) -> None:
    h = harness(google_handler)
    h.login(email="admin@mismatch.test", team_name="Mismatch Team")
    state = h.start_flow("youtube")

    res = h.callback("x", code="c", state=state)
    assert redirect_query(res) == {"error": "provider_mismatch"}

    retry = h.callback("youtube", code="c", state=state)
    assert redirect_query(retry) == {"error": "invalid_state"}
    assert h.transport.requests == []
    assert db_session.execute(select(SocialAccount)).scalars().all() == []


def test_expired_state_is_rejected(harness, db_session: Session) -> None:
    h = harness(google_handler)
    h.login(email="admin@expired.test", team_name="Expired Team")
    create_flow_state(
        session=db_session,
        state="expired-state",
        provider=OAuthProvider.youtube,
        team_id=h.team_id,
        user_id=h.user_id,
        code_verifier="v" * 64,
        redirect_uri="http://api.test/oauth/youtube/callback",
        now=datetime.now(UTC) - timedelta(minutes=20),
    )
    db_session.commit()
    h.client.cookies.set("oauth_state", "expired-state")

    res = h.callback("youtube", code="c", state="expired-state")
    assert redirect_query(res) == {"error": "invalid_state"}
    assert h.transport.requests == []


def test_callback_from_another_browser_is_rejected_and_burns_state(
    harness, db_session: Session
) -> None:
    admin = harness(google_handler)
    admin.login(email="admin@csrf.test", team_name="CSRF Team")
    state = admin.start_flow("youtube")

    # Same state in the URL, but no state cookie: a link forwarded to someone else.
    other = harness(google_handler)
    res = other.callback("youtube", code="attacker-code", state=state)
    assert redirect_query(res) == {"error": "invalid_state"}
    assert other.transport.requests == []
    assert db_session.execute(select(SocialAccount)).scalars().all() == []
    assert db_session.execute(select(OAuthFlowState)).scalars().all() == []

    failure = db_session.execute(
        select(AuditEvent).where(AuditEvent.event_type == "oauth.connect_failed")
    ).scalars().one()
    assert failure.team_id == admin.team_id
    assert failure.event_data == {
        "provider": "youtube",
        "stage": "CALLBACK_RECEIVED",
        "code": "invalid_state",
    }

    retry = admin.callback("youtube", code="c", state=state)
    assert redirect_query(retry) == {"error": "invalid_state"}
    assert admin.transport.requests == []


def test_state_cookie_must_match_callback_state(harness, db_session: Session) -> None:
    h = harness(google_handler)
    h.login(email="admin@cookie.test", team_name="Cookie Team")
    state = h.start_flow("youtube")
    h.client.cookies.clear()
    h.client.cookies.set("oauth_state", f"{state}-other")

    res = h.callback("youtube", code="c", state=state)
    assert redirect_query(res) == {"error": "invalid_state"}
    assert h.transport.requests == []
    assert db_session.execute(select(OAuthFlowState)).scalars().all() == []


def test_failed_exchange_writes_nothing_to_vault(harness, db_session: Session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if bare_url(request) == TOKEN_URL:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad Request"})
        return httpx.Response(404)

    h = harness(handler)
    h.login(email="admin@badcode.test", team_name="Bad Code Team")
    state = h.start_flow("youtube")

    res = h.callback("youtube", code="bad-code", state=state)
    assert redirect_query(res) == {"error": "callback_error"}

    assert db_session.execute(select(VaultToken)).scalars().all() == []
    assert db_session.execute(select(SocialAccount)).scalars().all() == []
    failure = db_session.execute(
        select(AuditEvent).where(AuditEvent.event_type == "oauth.connect_failed")
    ).scalars().one()
    assert failure.team_id == h.team_id
    assert failure.event_data == {
        "provider": "youtube",
        "stage": "STATE_VALIDATED",
        "code": "callback_error",
    }


def test_provider_error_redirect_discards_state(harness, db_session: Session) -> None:
    h = harness(google_handler)
    h.login(email="admin@denied.test", team_name="Denied Team")
    state = h.start_flow("youtube")

    res = h.callback("youtube", error="access_denied", error_description="User denied", state=state)
    assert redirect_query(res) == {"error": "upstream_error"}
    assert db_session.execute(select(OAuthFlowState)).scalars().all() == []
    assert h.transport.requests == []


def test_missing_code_is_reported(harness, db_session: Session) -> None:
    h = harness(google_handler)
    h.login(email="admin@nocode.test", team_name="No Code Team")
    state = h.start_flow("youtube")

    res = h.callback("youtube", state=state)
    assert redirect_query(res) == {"error": "missing_code"}
    assert db_session.execute(select(OAuthFlowState)).scalars().all() == []


def test_unknown_provider_callback(harness) -> None:
    h = harness(google_handler)
    res = h.callback("myspace", code="c", state="s")
    assert redirect_query(res) == {"error": "invalid_provider"}


def test_reconnect_updates_existing_account_in_place(harness, db_session: Session) -> None:
    h = harness(google_handler)
    h.login(email="admin@reconnect.test", team_name="Reconnect Team")

    for _ in range(2):
        state = h.start_flow("youtube")
        assert redirect_query(h.callback("youtube", code="c", state=state))["success"] == "youtube"

    assert len(db_session.execute(select(SocialAccount)).scalars().all()) == 1
    assert len(db_session.execute(select(VaultToken)).scalars().all()) == 1
    assert len(db_session.execute(select(SyncedResource)).scalars().all()) == 1


def test_single_account_connects_even_if_listing_fails(harness, db_session: Session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if bare_url(request) == CHANNELS_URL:
            return httpx.Response(403, json={"error": {"message": "YouTube Data API disabled"}})
        return google_handler(request)

    h = harness(handler)
    h.login(email="admin@nolisting.test", team_name="No Listing Team")
    state = h.start_flow("youtube")

    res = h.callback("youtube", code="c", state=state)
    assert redirect_query(res)["success"] == "youtube"

    account = db_session.execute(select(SocialAccount)).scalars().one()
    assert account.account_metadata["resources"] == []
    assert db_session.execute(select(SyncedResource)).scalars().all() == []


def test_malformed_profile_payload_is_a_callback_error(harness, db_session: Session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if bare_url(request) == "https://api.twitter.com/2/oauth2/token":
            return httpx.Response(200, json={"access_token": "xa", "refresh_token": "xr", "expires_in": 7200})
        if bare_url(request) == "https://api.twitter.com/2/users/me":
            return httpx.Response(200, json={"data": "unexpected"})
        return httpx.Response(404)

    h = harness(handler)
    h.login(email="admin@xshape.test", team_name="X Shape Team")
    state = h.start_flow("x")

    res = h.callback("x", code="c", state=state)
    assert redirect_query(res) == {"error": "callback_error"}
    assert db_session.execute(select(SocialAccount)).scalars().all() == []
    failure = db_session.execute(
        select(AuditEvent).where(AuditEvent.event_type == "oauth.connect_failed")
    ).scalars().one()
    assert failure.event_data["stage"] == "CODE_EXCHANGED"


def test_vault_key_failure_rolls_back_and_redirects(harness, db_session: Session, monkeypatch) -> None:
    def broken_store(**kwargs):
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must decode to 32 bytes (AES-256)")

    monkeypatch.setattr(vault, "store", broken_store)
    h = harness(google_handler)
    h.login(email="admin@badkey.test", team_name="Bad Key Team")
    state = h.start_flow("youtube")

    res = h.callback("youtube", code="c", state=state)
    assert redirect_query(res) == {"error": "callback_error"}
    assert db_session.execute(select(VaultToken)).scalars().all() == []
    assert db_session.execute(select(SocialAccount)).scalars().all() == []
    assert "oauth.connect_failed" in _audit_types(db_session, h.team_id)
