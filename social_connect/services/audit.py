from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from social_connect.models.audit import AuditEvent

# Audit rows outlive token rotation; none of these may ever be persisted in event_data.
CREDENTIAL_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "client_secret",
        "authorization_code",
        "page_access_token",
    }
)


def scrub_event_data(data: dict[str, Any]) -> dict[str, Any]:
    clean: dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in CREDENTIAL_KEYS:
            continue
        clean[key] = scrub_event_data(value) if isinstance(value, dict) else value
    return clean


def log_event(
    *,
    session: Session,
    team_id: UUID,
    actor_user_id: UUID | None,
    event_type: str,
    event_data: dict[str, Any],
) -> AuditEvent:
    evt = AuditEvent(
        team_id=team_id,
        actor_user_id=actor_user_id,
        event_type=event_type,
        event_data=scrub_event_data(event_data),
    )
    session.add(evt)
    session.flush()
    return evt
