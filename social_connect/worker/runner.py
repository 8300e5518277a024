from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from social_connect.core.config import get_settings
from social_connect.core.errors import ConnectError
from social_connect.core.http import build_http_client
from social_connect.core.middleware import log_json
from social_connect.db.session import get_sessionmaker
from social_connect.models.social import SocialAccount
from social_connect.models.vault import VaultToken
from social_connect.services.oauth.flow_state import purge_expired_flow_states
from social_connect.services.oauth.refresh import refresh_account
from social_connect.services.providers.registry import ProviderRegistry, build_provider_registry

logger = logging.getLogger("social_connect.worker")


@dataclass(frozen=True)
class WorkerConfig:
    interval_seconds: float = field(
        default_factory=lambda: get_settings().OAUTH_REFRESH_SWEEP_INTERVAL_SECONDS
    )
    window_seconds: int = field(
        default_factory=lambda: get_settings().OAUTH_REFRESH_SWEEP_WINDOW_SECONDS
    )


@dataclass
class SweepReport:
    candidates: int = 0
    refreshed: int = 0
    skipped: int = 0
    failed: int = 0
    purged_flow_states: int = 0


def _expiring_accounts(session: Session, *, cutoff: datetime) -> list[SocialAccount]:
    return list(
        session.execute(
            select(SocialAccount)
            .join(VaultToken, VaultToken.id == SocialAccount.vault_token_id)
            .where(
                VaultToken.expires_at.is_not(None),
                VaultToken.expires_at <= cutoff,
                VaultToken.encrypted_refresh_token.is_not(None),
            )
            .order_by(VaultToken.expires_at.asc())
        )
        .scalars()
        .all()
    )


def run_refresh_sweep(
    *,
    session: Session,
    http_client: httpx.Client,
    registry: ProviderRegistry,
    window_seconds: int,
    now: datetime | None = None,
) -> SweepReport:
    """Refresh every account whose token expires within the window.

    Each account commits or rolls back on its own; one bad account never stops
    the sweep.
    """
    current = now or datetime.now(UTC)
    report = SweepReport()
    report.purged_flow_states = purge_expired_flow_states(session=session, now=current)
    session.commit()

    accounts = _expiring_accounts(session, cutoff=current + timedelta(seconds=window_seconds))
    report.candidates = len(accounts)
    account_ids = [a.id for a in accounts]

    for account_id in account_ids:
        try:
            refresh_account(
                session=session,
                http_client=http_client,
                registry=registry,
                account_id=account_id,
            )
            session.commit()
            report.refreshed += 1
        except ConnectError as exc:
            session.rollback()
            if exc.code == "refresh_not_supported":
                report.skipped += 1
            else:
                report.failed += 1
            log_json(
                "worker.refresh.account_failed",
                level=logging.WARNING,
                log=logger,
                account_id=str(account_id),
                error_code=exc.code,
                error=str(exc),
            )
        except SQLAlchemyError as exc:
            session.rollback()
            report.failed += 1
            log_json(
                "worker.refresh.account_failed",
                level=logging.ERROR,
                log=logger,
                account_id=str(account_id),
                error=type(exc).__name__,
            )

    log_json(
        "worker.refresh.sweep_completed",
        log=logger,
        candidates=report.candidates,
        refreshed=report.refreshed,
        skipped=report.skipped,
        failed=report.failed,
        purged_flow_states=report.purged_flow_states,
    )
    return report


def run_sweep_once(*, config: WorkerConfig) -> SweepReport:
    session = get_sessionmaker()()
    try:
        with build_http_client() as http_client:
            return run_refresh_sweep(
                session=session,
                http_client=http_client,
                registry=build_provider_registry(get_settings()),
                window_seconds=config.window_seconds,
            )
    finally:
        session.close()


def run_worker_forever(config: WorkerConfig) -> None:
    while True:
        run_sweep_once(config=config)
        time.sleep(config.interval_seconds)
