from __future__ import annotations

import enum


class TeamRole(enum.StrEnum):
    admin = "admin"
    member = "member"


class OAuthProvider(enum.StrEnum):
    youtube = "youtube"
    facebook = "facebook"
    instagram = "instagram"
    x = "x"
    ga4 = "ga4"


class ResourceKind(enum.StrEnum):
    page = "page"
    instagram_account = "instagram_account"
    channel = "channel"
    profile = "profile"
    property = "property"


class FlowStage(enum.StrEnum):
    initiated = "INITIATED"
    callback_received = "CALLBACK_RECEIVED"
    state_validated = "STATE_VALIDATED"
    code_exchanged = "CODE_EXCHANGED"
    accounts_resolved = "ACCOUNTS_RESOLVED"
    vault_written = "VAULT_WRITTEN"
    sync_dispatched = "SYNC_DISPATCHED"
    done = "DONE"
    error = "ERROR"
