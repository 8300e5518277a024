from __future__ import annotations

import json
import logging
import time
from contextvars import ContextVar
from typing import Any

from fastapi import Request
from starlette.responses import Response

from social_connect.core.config import Settings
from social_connect.core.security import new_random_token

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
logger = logging.getLogger("social_connect.api")


def build_request_id(request: Request, *, header_name: str) -> str:
    incoming = (request.headers.get(header_name) or "").strip()
    if incoming:
        return incoming[:128]
    return new_random_token(nbytes=18)


def apply_security_headers(response: Response, *, settings: Settings) -> None:
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "same-origin")
    response.headers.setdefault("Content-Security-Policy", settings.CONTENT_SECURITY_POLICY)


def route_template(request: Request) -> str:
    # Use the matched route ("/oauth/{provider}/callback") so metric labels stay bounded.
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or request.url.path


def quiet_http_client_logs() -> None:
    # httpx logs each request URL at INFO; provider URLs stay out of our log stream.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def log_json(event: str, *, level: int = logging.INFO, log: logging.Logger = logger, **fields: Any) -> None:
    payload: dict[str, Any] = {"event": event, "request_id": request_id_ctx.get()}
    payload.update(fields)
    log.log(level, json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def log_request_completion(
    *,
    request_id: str,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
) -> None:
    log_json(
        "http.request.completed",
        request_id=request_id,
        method=method,
        path=path,
        status_code=status_code,
        duration_ms=duration_ms,
    )


def now_ts() -> float:
    return time.time()
