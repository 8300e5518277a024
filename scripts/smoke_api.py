from __future__ import annotations

import os
import sys
from urllib.parse import parse_qs, urlsplit

import httpx


def _assert_ok(response: httpx.Response, *, label: str, expected: int | None = None) -> None:
    bad = response.status_code != expected if expected else response.status_code >= 400
    if bad:
        raise RuntimeError(f"{label} failed: HTTP {response.status_code} body={response.text}")


def main() -> None:
    base_url = os.environ.get("API_BASE_URL", "http://localhost:8000")
    email = os.environ.get("SMOKE_EMAIL", "smoke-admin@example.com")
    team_name = os.environ.get("SMOKE_TEAM", "Smoke Test Team")
    provider = os.environ.get("SMOKE_PROVIDER", "youtube")

    with httpx.Client(base_url=base_url, timeout=20.0) as client:
        health = client.get("/healthz")
        _assert_ok(health, label="GET /healthz")
        print("ok: GET /healthz")

        ready = client.get("/readyz")
        _assert_ok(ready, label="GET /readyz")
        print("ok: GET /readyz")

        csrf_res = client.get("/auth/csrf")
        _assert_ok(csrf_res, label="GET /auth/csrf")
        csrf_token = csrf_res.json()["csrf_token"]
        print("ok: GET /auth/csrf")

        login = client.post(
            "/auth/dev/login",
            json={"email": email, "team_name": team_name},
            headers={"x-csrf-token": csrf_token},
        )
        _assert_ok(login, label="POST /auth/dev/login")
        login_data = login.json()
        team_id = login_data["team"]["id"]
        print("ok: POST /auth/dev/login")

        accounts = client.get(f"/teams/{team_id}/social-accounts")
        _assert_ok(accounts, label="GET /teams/{team_id}/social-accounts")
        print(f"ok: GET /teams/{{team_id}}/social-accounts ({len(accounts.json())} connected)")

        # Only checks the redirect; completing consent needs a browser.
        start = client.get(f"/oauth/{provider}", params={"teamId": team_id})
        _assert_ok(start, label=f"GET /oauth/{provider}", expected=302)
        location = start.headers["location"]
        if "state" not in parse_qs(urlsplit(location).query):
            raise RuntimeError(f"GET /oauth/{provider} redirect has no state: {location}")
        print(f"ok: GET /oauth/{provider} -> {urlsplit(location).netloc}")

        team = login_data["team"]
        user = login_data["user"]
        print(f"smoke complete: team={team['name']} ({team['id']}) user={user['email']}")


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:  # noqa: BLE001
        print(f"smoke failed: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
