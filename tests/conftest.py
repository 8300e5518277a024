from __future__ import annotations

import base64
import os
import tempfile
import uuid
from collections.abc import Callable, Generator
from contextlib import suppress
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit
from uuid import UUID

import httpx
import pytest
from alembic.config import Config
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import Session

from alembic import command

_TMP_DIR = tempfile.mkdtemp(prefix="social_connect_tests_")

# Test modules import the app, which reads settings at import time.
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/connect.db"
os.environ["ALLOW_DEV_LOGIN"] = "true"
os.environ["COOKIE_SECURE"] = "false"
os.environ["ENCRYPTION_KEY_BASE64"] = base64.b64encode(b"k" * 32).decode("ascii")
os.environ["API_BASE_URL"] = "http://api.test"
os.environ["FRONTEND_URL"] = "http://app.test"
os.environ["GOOGLE_CLIENT_ID"] = "test-google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-google-client-secret"
os.environ["META_APP_ID"] = "test-meta-app-id"
os.environ["META_APP_SECRET"] = "test-meta-app-secret"
os.environ["X_CLIENT_ID"] = "test-x-client-id"
os.environ["X_CLIENT_SECRET"] = "test-x-client-secret"


def _make_admin_url(url: URL) -> URL:
    # "postgres" is present in the official image and works for admin tasks.
    return url.set(database="postgres")


def _make_test_db_name() -> str:
    return f"social_connect_test_{uuid.uuid4().hex}"


@pytest.fixture(scope="session", autouse=True)
def _test_database() -> Generator[None, None, None]:
    """SQLite file by default; TEST_DATABASE_URL opts into an isolated Postgres database."""
    from social_connect.core.config import get_settings
    from social_connect.db.session import get_engine, get_sessionmaker

    pg_url = os.environ.get("TEST_DATABASE_URL")
    admin_engine = None
    db_name = None
    if pg_url:
        url = make_url(pg_url)
        if url.host not in {"localhost", "127.0.0.1", None}:
            raise RuntimeError(
                "Refusing to run tests against a non-local TEST_DATABASE_URL host. "
                "Point it at a local/dev Postgres instance."
            )
        db_name = _make_test_db_name()
        admin_engine = create_engine(
            _make_admin_url(url), isolation_level="AUTOCOMMIT", pool_pre_ping=True
        )
        with admin_engine.connect() as conn:
            conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        os.environ["DATABASE_URL"] = url.set(database=db_name).render_as_string(
            hide_password=False
        )

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()

    if pg_url:
        alembic_ini = Path(__file__).resolve().parents[1] / "alembic.ini"
        command.upgrade(Config(str(alembic_ini)), "head")
    else:
        from social_connect.models import Base

        Base.metadata.create_all(get_engine())

    yield

    with suppress(Exception):
        get_engine().dispose()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()
    get_settings.cache_clear()

    if admin_engine is not None:
        with admin_engine.connect() as conn:
            conn.execute(
                text(
                    """
                    SELECT pg_terminate_backend(pid)
                    FROM pg_stat_activity
                    WHERE datname = :db_name AND pid <> pg_backend_pid();
                    """
                ),
                {"db_name": db_name},
            )
            conn.execute(text(f'DROP DATABASE IF EXISTS "{db_name}"'))
        admin_engine.dispose()


@pytest.fixture(autouse=True)
def _clean_tables() -> Generator[None, None, None]:
    yield
    from social_connect.db.session import get_engine
    from social_connect.models import Base

    with get_engine().begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    from social_connect.db.session import get_sessionmaker

    SessionLocal = get_sessionmaker()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


Handler = Callable[[httpx.Request], httpx.Response]


def not_found(request: httpx.Request) -> httpx.Response:
    return httpx.Response(404, json={"error": "not_found"})


def form_of(request: httpx.Request) -> dict[str, str]:
    body = request.content.decode("utf-8")
    return {k: v[0] for k, v in parse_qs(body).items()}


def bare_url(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every outbound provider request for assertions."""

    def __init__(self, handler: Handler) -> None:
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if bare_url(r) == url]


class ApiHarness:
    """One browser-like client against a fresh app with provider HTTP mocked."""

    def __init__(self, handler: Handler, *, registry: Any = None) -> None:
        from social_connect.core.http import get_http_client
        from social_connect.main import create_app
        from social_connect.services.providers.registry import get_provider_registry

        self.app = create_app()
        self.transport = RecordingTransport(handler)
        self.http_client = httpx.Client(transport=self.transport, timeout=10.0)

        def override_http_client() -> Generator[httpx.Client, None, None]:
            yield self.http_client

        self.app.dependency_overrides[get_http_client] = override_http_client
        if registry is not None:
            self.app.dependency_overrides[get_provider_registry] = lambda: registry

        self.client = TestClient(self.app, follow_redirects=False)
        self.csrf: str | None = None
        self.team_id: UUID | None = None
        self.user_id: UUID | None = None

    def login(self, *, email: str, team_name: str) -> dict:
        res = self.client.get("/auth/csrf")
        assert res.status_code == 200
        res = self.client.post(
            "/auth/dev/login",
            json={"email": email, "team_name": team_name},
            headers={"x-csrf-token": res.json()["csrf_token"]},
        )
        assert res.status_code == 200, res.text
        body = res.json()
        self.csrf = body["csrf_token"]
        self.team_id = UUID(body["team"]["id"])
        self.user_id = UUID(body["user"]["id"])
        return body

    def _headers(self) -> dict[str, str]:
        return {"x-csrf-token": self.csrf or ""}

    def post(self, url: str, json: Any = None) -> httpx.Response:
        return self.client.post(url, json=json, headers=self._headers())

    def delete(self, url: str, json: Any = None) -> httpx.Response:
        return self.client.request("DELETE", url, json=json, headers=self._headers())

    def initiate(self, provider: str, *, team_id: UUID | None = None) -> httpx.Response:
        return self.client.get(f"/oauth/{provider}", params={"teamId": str(team_id or self.team_id)})

    def start_flow(self, provider: str) -> str:
        res = self.initiate(provider)
        assert res.status_code == 302, res.text
        return query_of(res.headers["location"])["state"]

    def callback(self, provider: str, **params: str) -> httpx.Response:
        return self.client.get(f"/oauth/{provider}/callback", params=params)

    def close(self) -> None:
        self.app.dependency_overrides.clear()
        self.http_client.close()


@pytest.fixture()
def harness() -> Generator[Callable[..., ApiHarness], None, None]:
    created: list[ApiHarness] = []

    def _make(handler: Handler = not_found, *, registry: Any = None) -> ApiHarness:
        h = ApiHarness(handler, registry=registry)
        created.append(h)
        return h

    yield _make
    for h in created:
        h.close()


def redirect_query(res: httpx.Response) -> dict[str, str]:
    assert res.status_code == 302, res.text
    location = res.headers["location"]
    assert location.startswith("http://app.test/teams/integrations?")
    return query_of(location)


def make_team(session: Session, *, name: str = "Team", admin_email: str | None = None):
    """Team with one admin user, committed."""
    from social_connect.models.enums import TeamRole
    from social_connect.models.identity import Team, TeamMember, User

    team = Team(name=name)
    user = User(email=admin_email or f"admin-{uuid.uuid4().hex[:8]}@example.com")
    session.add_all([team, user])
    session.flush()
    session.add(TeamMember(team_id=team.id, user_id=user.id, role=TeamRole.admin))
    session.commit()
    return team, user


def store_account(
    session: Session,
    *,
    team_id: UUID,
    provider: str,
    provider_user_id: str,
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_at: datetime | None = None,
    display_name: str | None = None,
    metadata: dict | None = None,
):
    from social_connect.models.enums import OAuthProvider
    from social_connect.services import vault

    stored = vault.store(
        session=session,
        team_id=team_id,
        provider=OAuthProvider(provider),
        provider_user_id=provider_user_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        display_name=display_name,
        metadata=metadata,
    )
    session.commit()
    return stored


@pytest.fixture()
def registry():
    from social_connect.core.config import get_settings
    from social_connect.services.providers.registry import build_provider_registry

    return build_provider_registry(get_settings())
