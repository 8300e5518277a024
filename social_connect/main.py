from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from social_connect.core.config import get_settings
from social_connect.core.metrics import observe_http_request
from social_connect.core.middleware import (
    apply_security_headers,
    build_request_id,
    log_request_completion,
    now_ts,
    quiet_http_client_logs,
    request_id_ctx,
    route_template,
)
from social_connect.routers.accounts import router as accounts_router
from social_connect.routers.auth import router as auth_router
from social_connect.routers.health import router as health_router
from social_connect.routers.oauth import router as oauth_router


def create_app() -> FastAPI:
    app = FastAPI(title="Social Connect API")
    quiet_http_client_logs()

    settings = get_settings()
    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers_and_request_context(request, call_next):  # type: ignore[no-untyped-def]
        request_id = build_request_id(request, header_name=settings.REQUEST_ID_HEADER)
        token = request_id_ctx.set(request_id)
        start_ts = now_ts()
        method = request.method
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[settings.REQUEST_ID_HEADER] = request_id
            apply_security_headers(response, settings=settings)
            return response
        finally:
            duration_ms = int((now_ts() - start_ts) * 1000)
            # Query strings (OAuth codes, states) never reach logs or metric labels.
            path = route_template(request)
            log_request_completion(
                request_id=request_id,
                method=method,
                path=path,
                status_code=status_code,
                duration_ms=duration_ms,
            )
            observe_http_request(
                method=method, path=path, status_code=status_code, duration_ms=duration_ms
            )
            request_id_ctx.reset(token)

    if settings.ENABLE_PROMETHEUS_METRICS:

        @app.get(settings.PROMETHEUS_METRICS_PATH, include_in_schema=False)
        def metrics() -> Response:
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(oauth_router)
    app.include_router(accounts_router)
    return app


app = create_app()
