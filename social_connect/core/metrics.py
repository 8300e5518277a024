from __future__ import annotations

from prometheus_client import Counter, Histogram

_HTTP_REQUESTS_TOTAL = Counter(
    "connect_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "connect_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_OAUTH_FLOWS_TOTAL = Counter(
    "connect_oauth_flows_total",
    "OAuth flow completions by provider and outcome.",
    labelnames=("provider", "stage", "outcome"),
)
_OAUTH_ACCOUNTS_PERSISTED_TOTAL = Counter(
    "connect_oauth_accounts_persisted_total",
    "Social accounts written to the vault during callbacks.",
    labelnames=("provider", "result"),
)
_OAUTH_REFRESH_TOTAL = Counter(
    "connect_oauth_refresh_total",
    "Token refresh attempts by provider and outcome.",
    labelnames=("provider", "outcome"),
)
_RESOURCE_SYNC_TOTAL = Counter(
    "connect_resource_sync_items_total",
    "Synced resource reconciliation results.",
    labelnames=("provider", "result"),
)


def observe_http_request(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )


def observe_oauth_flow(*, provider: str, stage: str, outcome: str) -> None:
    _OAUTH_FLOWS_TOTAL.labels(provider=provider or "unknown", stage=stage, outcome=outcome).inc()


def observe_account_persisted(*, provider: str, ok: bool) -> None:
    _OAUTH_ACCOUNTS_PERSISTED_TOTAL.labels(
        provider=provider, result="ok" if ok else "failed"
    ).inc()


def observe_refresh(*, provider: str, outcome: str) -> None:
    _OAUTH_REFRESH_TOTAL.labels(provider=provider, outcome=outcome).inc()


def observe_resource_sync(*, provider: str, created: int, updated: int, failed: int) -> None:
    for result, count in (("created", created), ("updated", updated), ("failed", failed)):
        if count:
            _RESOURCE_SYNC_TOTAL.labels(provider=provider, result=result).inc(count)
