from __future__ import annotations

import base64
import hashlib
import hmac
import os

from fastapi import Response

from social_connect.core.config import get_settings


def new_random_token(*, nbytes: int = 32) -> str:
    raw = os.urandom(nbytes)
    # URL-safe base64 without padding to keep cookie/header/query compact.
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def pkce_code_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def hash_session_token(token: str) -> bytes:
    settings = get_settings()
    # HMAC adds a server-side pepper; DB compromise alone is not enough to use tokens.
    return hmac.new(
        settings.JWT_SECRET.encode("utf-8"),
        token.encode("utf-8"),
        hashlib.sha256,
    ).digest()


def _set_cookie(response: Response, *, key: str, value: str, httponly: bool, max_age: int) -> None:
    settings = get_settings()
    response.set_cookie(
        key=key,
        value=value,
        httponly=httponly,
        secure=settings.COOKIE_SECURE,
        samesite=settings.COOKIE_SAMESITE,
        domain=settings.COOKIE_DOMAIN,
        path="/",
        max_age=max_age,
    )


def _clear_cookie(response: Response, *, key: str) -> None:
    settings = get_settings()
    response.delete_cookie(key=key, domain=settings.COOKIE_DOMAIN, path="/")


def set_session_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    _set_cookie(
        response,
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        max_age=settings.SESSION_TTL_SECONDS,
    )


def clear_session_cookie(response: Response) -> None:
    _clear_cookie(response, key=get_settings().SESSION_COOKIE_NAME)


def set_csrf_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    _set_cookie(
        response,
        key=settings.CSRF_COOKIE_NAME,
        value=token,
        httponly=False,
        max_age=settings.SESSION_TTL_SECONDS,
    )


def clear_csrf_cookie(response: Response) -> None:
    _clear_cookie(response, key=get_settings().CSRF_COOKIE_NAME)


def set_oauth_state_cookie(response: Response, state: str) -> None:
    # SameSite=Lax still sends the cookie on the provider's top-level redirect back.
    settings = get_settings()
    response.set_cookie(
        key=settings.OAUTH_STATE_COOKIE_NAME,
        value=state,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        domain=settings.COOKIE_DOMAIN,
        path="/oauth",
        max_age=settings.OAUTH_STATE_TTL_SECONDS,
    )


def clear_oauth_state_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        key=settings.OAUTH_STATE_COOKIE_NAME,
        domain=settings.COOKIE_DOMAIN,
        path="/oauth",
    )
