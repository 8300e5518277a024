from __future__ import annotations

from social_connect.models.audit import AuditEvent  # noqa: F401
from social_connect.models.auth import AuthSession  # noqa: F401
from social_connect.models.base import Base as Base  # noqa: F401
from social_connect.models.enums import (  # noqa: F401
    FlowStage,
    OAuthProvider,
    ResourceKind,
    TeamRole,
)
from social_connect.models.identity import Team, TeamMember, User  # noqa: F401
from social_connect.models.oauth import OAuthFlowState  # noqa: F401
from social_connect.models.social import SocialAccount, SyncedResource  # noqa: F401
from social_connect.models.vault import VaultToken  # noqa: F401
