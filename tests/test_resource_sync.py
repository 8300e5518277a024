from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
from conftest import bare_url, form_of, make_team, store_account
from sqlalchemy import select
from sqlalchemy.orm import Session

from social_connect.models.enums import OAuthProvider, ResourceKind
from social_connect.models.social import SyncedResource
from social_connect.services import vault
from social_connect.services.providers.base import SubAccount
from social_connect.services.resource_sync import reconcile_resources

CHANNELS_URL = "https://www.googleapis.com/youtube/v3/channels"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


def _channel(id_: str, name: str, subs: int = 1) -> SubAccount:
    return SubAccount(id=id_, name=name, kind=ResourceKind.channel, metadata={"subscriber_count": subs})


def test_reconcile_creates_updates_and_leaves_orphans(db_session: Session) -> None:
    team, _ = make_team(db_session, name="Reconcile Team")
    stored = store_account(db_session, team_id=team.id, provider="youtube", provider_user_id="g-1")
    t0 = datetime.now(UTC) - timedelta(days=1)

    first = reconcile_resources(
        session=db_session,
        team_id=team.id,
        provider=OAuthProvider.youtube,
        resources=[_channel("UC-a", "Alpha"), _channel("UC-b", "Beta")],
        social_account_id=stored.account_id,
        now=t0,
    )
    db_session.commit()
    assert (first.created, first.updated, first.unchanged, first.failed) == (2, 0, 0, 0)

    second = reconcile_resources(
        session=db_session,
        team_id=team.id,
        provider=OAuthProvider.youtube,
        resources=[_channel("UC-a", "Alpha Renamed", subs=5)],
        social_account_id=stored.account_id,
    )
    db_session.commit()
    assert (second.created, second.updated, second.unchanged) == (0, 1, 0)

    rows = {
        r.external_id: r
        for r in db_session.execute(
            select(SyncedResource).where(SyncedResource.team_id == team.id)
        ).scalars()
    }
    assert rows["UC-a"].name == "Alpha Renamed"
    assert rows["UC-a"].resource_metadata == {"subscriber_count": 5}
    assert rows["UC-a"].last_synced_at > t0
    # Not returned upstream this time; kept as-is.
    assert rows["UC-b"].name == "Beta"
    assert rows["UC-b"].last_synced_at == t0
    assert rows["UC-b"].social_account_id == stored.account_id


def test_reconcile_is_idempotent(db_session: Session) -> None:
    team, _ = make_team(db_session, name="Idempotent Team")
    resources = [_channel("UC-1", "One")]
    for _ in range(2):
        report = reconcile_resources(
            session=db_session,
            team_id=team.id,
            provider=OAuthProvider.youtube,
            resources=resources,
            social_account_id=None,
        )
        db_session.commit()
    assert (report.created, report.updated, report.unchanged) == (0, 0, 1)
    assert len(db_session.execute(select(SyncedResource)).scalars().all()) == 1


def test_resources_link_to_matching_accounts(db_session: Session) -> None:
    team, _ = make_team(db_session, name="Link Team")
    page = store_account(db_session, team_id=team.id, provider="facebook", provider_user_id="page-1")

    reconcile_resources(
        session=db_session,
        team_id=team.id,
        provider=OAuthProvider.facebook,
        resources=[
            SubAccount(id="page-1", name="Linked", kind=ResourceKind.page),
            SubAccount(id="page-9", name="Unlinked", kind=ResourceKind.page),
        ],
        social_account_id=None,
    )
    db_session.commit()

    owners = dict(
        db_session.execute(select(SyncedResource.external_id, SyncedResource.social_account_id)).all()
    )
    assert owners == {"page-1": page.account_id, "page-9": None}


def test_sync_route_reruns_fan_out(harness, db_session: Session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if bare_url(request) == CHANNELS_URL:
            assert request.headers["Authorization"] == "Bearer stored-access"
            return httpx.Response(200, json={"items": [{"id": "UC-x", "snippet": {"title": "X"}}]})
        return httpx.Response(404)

    h = harness(handler)
    h.login(email="admin@sync.test", team_name="Sync Team")
    store_account(
        db_session,
        team_id=h.team_id,
        provider="youtube",
        provider_user_id="g-1",
        access_token="stored-access",
    )

    first = h.post("/oauth/youtube/sync", json={"teamId": str(h.team_id)})
    assert first.status_code == 200, first.text
    assert first.json() == {
        "provider": "youtube",
        "created": 1,
        "updated": 0,
        "unchanged": 0,
        "failed": 0,
    }

    second = h.post("/oauth/youtube/sync", json={"teamId": str(h.team_id)})
    assert second.json()["unchanged"] == 1
    assert second.json()["created"] == 0


def test_sync_refreshes_expired_token_before_listing(harness, db_session: Session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if bare_url(request) == GOOGLE_TOKEN_URL:
            assert form_of(request) == {
                "grant_type": "refresh_token",
                "refresh_token": "refresh-1",
                "client_id": "test-google-client-id",
                "client_secret": "test-google-client-secret",
            }
            return httpx.Response(200, json={"access_token": "ya29.renewed", "expires_in": 3600})
        if bare_url(request) == CHANNELS_URL:
            if request.headers["Authorization"] != "Bearer ya29.renewed":
                return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})
            return httpx.Response(200, json={"items": [{"id": "UC-r", "snippet": {"title": "Renewed"}}]})
        return httpx.Response(404)

    h = harness(handler)
    h.login(email="admin@stalesync.test", team_name="Stale Sync Team")
    stored = store_account(
        db_session,
        team_id=h.team_id,
        provider="youtube",
        provider_user_id="g-1",
        access_token="ya29.expired",
        expires_at=datetime.now(UTC) - timedelta(hours=1),
    )

    res = h.post("/oauth/youtube/sync", json={"teamId": str(h.team_id)})
    assert res.status_code == 200, res.text
    assert res.json()["created"] == 1
    assert res.json()["failed"] == 0
    assert len(h.transport.calls_to(GOOGLE_TOKEN_URL)) == 1

    db_session.expire_all()
    assert (
        vault.get_decrypted_access_token(session=db_session, entry_id=stored.entry_id)
        == "ya29.renewed"
    )


def test_sync_lists_shared_user_token_once(harness, db_session: Session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/me/accounts"):
            assert request.headers["Authorization"] == "Bearer user-long"
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"id": "page-1", "name": "One", "access_token": "p1"},
                        {"id": "page-2", "name": "Two", "access_token": "p2"},
                    ]
                },
            )
        return httpx.Response(404)

    h = harness(handler)
    h.login(email="admin@fbsync.test", team_name="Facebook Sync Team")
    for page_id, page_token in (("page-1", "p1"), ("page-2", "p2")):
        store_account(
            db_session,
            team_id=h.team_id,
            provider="facebook",
            provider_user_id=page_id,
            access_token=page_token,
            refresh_token="user-long",
        )

    res = h.post("/oauth/facebook/sync", json={"teamId": str(h.team_id)})
    assert res.status_code == 200
    assert res.json()["created"] == 2
    assert len(h.transport.requests) == 1


def test_sync_counts_accounts_whose_listing_fails(harness, db_session: Session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

    h = harness(handler)
    h.login(email="admin@syncfail.test", team_name="Sync Fail Team")
    store_account(db_session, team_id=h.team_id, provider="ga4", provider_user_id="g-1")

    res = h.post("/oauth/ga4/sync", json={"teamId": str(h.team_id)})
    assert res.status_code == 200
    assert res.json()["failed"] == 1


def test_sync_requires_membership(harness) -> None:
    owner = harness()
    owner.login(email="owner@syncteam.test", team_name="Sync Owner Team")
    outsider = harness()
    outsider.login(email="outsider@syncteam.test", team_name="Sync Outsider Team")

    res = outsider.post("/oauth/youtube/sync", json={"teamId": str(owner.team_id)})
    assert res.status_code == 403
    assert res.json() == {"error": "forbidden: Not a member of this team"}
