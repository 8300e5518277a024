"""Initial schema (teams, sessions, audit, flow states, vault, social accounts, synced resources)

Revision ID: 20261019_1200
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op

revision = "20261019_1200"
down_revision = None
branch_labels = None
depends_on = None

_PROVIDER_CHECK = "provider IN ('youtube','facebook','instagram','x','ga4')"


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    op.execute(
        """
CREATE TABLE IF NOT EXISTS teams (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  name text NOT NULL,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        """
CREATE TABLE IF NOT EXISTS users (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  email text NOT NULL UNIQUE,
  display_name text,
  is_disabled boolean NOT NULL DEFAULT false,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        """
CREATE TABLE IF NOT EXISTS team_members (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  team_id uuid NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
  user_id uuid NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  role varchar(16) NOT NULL CHECK (role IN ('admin','member')),
  created_at timestamptz NOT NULL DEFAULT now(),
  CONSTRAINT team_members_team_user_key UNIQUE (team_id, user_id)
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS auth_sessions (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  user_id uuid NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  token_hash bytea NOT NULL,
  created_at timestamptz NOT NULL DEFAULT now(),
  expires_at timestamptz NOT NULL,
  revoked_at timestamptz,
  revoked_reason text,
  UNIQUE (token_hash)
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS auth_sessions_user_idx ON auth_sessions (user_id, revoked_at, expires_at);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS audit_events (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  team_id uuid NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
  actor_user_id uuid REFERENCES users(id) ON DELETE SET NULL,
  event_type text NOT NULL,
  event_data jsonb NOT NULL DEFAULT '{}'::jsonb,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS audit_events_team_created_idx ON audit_events (team_id, created_at DESC);"
    )

    # One row per pending authorization round-trip; deleted on first consumption.
    op.execute(
        f"""
CREATE TABLE IF NOT EXISTS oauth_flow_states (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  state text NOT NULL UNIQUE,
  provider varchar(32) NOT NULL CHECK ({_PROVIDER_CHECK}),
  team_id uuid NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
  user_id uuid REFERENCES users(id) ON DELETE SET NULL,
  code_verifier text,
  redirect_uri text NOT NULL,
  created_at timestamptz NOT NULL DEFAULT now(),
  expires_at timestamptz NOT NULL
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS oauth_flow_states_expires_idx ON oauth_flow_states (expires_at);"
    )

    op.execute(
        f"""
CREATE TABLE IF NOT EXISTS vault_tokens (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  team_id uuid NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
  provider varchar(32) NOT NULL CHECK ({_PROVIDER_CHECK}),
  provider_user_id text NOT NULL,
  encrypted_access_token bytea NOT NULL,
  encrypted_refresh_token bytea,
  expires_at timestamptz,
  scope text,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),
  CONSTRAINT vault_tokens_natural_key UNIQUE (team_id, provider, provider_user_id)
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS vault_tokens_expires_idx ON vault_tokens (expires_at) WHERE expires_at IS NOT NULL;"
    )

    op.execute(
        f"""
CREATE TABLE IF NOT EXISTS social_accounts (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  team_id uuid NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
  provider varchar(32) NOT NULL CHECK ({_PROVIDER_CHECK}),
  provider_user_id text NOT NULL,
  display_name text,
  vault_token_id uuid NOT NULL REFERENCES vault_tokens(id) ON DELETE RESTRICT,
  metadata jsonb NOT NULL DEFAULT '{{}}'::jsonb,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),
  CONSTRAINT social_accounts_natural_key UNIQUE (team_id, provider, provider_user_id)
);
"""
    )

    op.execute(
        f"""
CREATE TABLE IF NOT EXISTS synced_resources (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  team_id uuid NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
  provider varchar(32) NOT NULL CHECK ({_PROVIDER_CHECK}),
  social_account_id uuid REFERENCES social_accounts(id) ON DELETE SET NULL,
  external_id text NOT NULL,
  kind varchar(32) NOT NULL,
  name text,
  metadata jsonb NOT NULL DEFAULT '{{}}'::jsonb,
  last_synced_at timestamptz NOT NULL,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),
  CONSTRAINT synced_resources_natural_key UNIQUE (team_id, provider, external_id)
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS synced_resources_account_idx ON synced_resources (social_account_id);"
    )

    # The vault is not for general-purpose reads; only the API role that runs
    # social_connect.services.vault should be granted SELECT on it.
    op.execute("REVOKE ALL ON vault_tokens FROM PUBLIC;")

    # Keep updated_at consistent even for raw SQL updates.
    op.execute(
        """
CREATE OR REPLACE FUNCTION set_updated_at() RETURNS trigger AS $$
BEGIN
  NEW.updated_at = now();
  RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""
    )

    for table in ("vault_tokens", "social_accounts", "synced_resources"):
        op.execute(
            f"""
DO $$
BEGIN
  IF NOT EXISTS (
    SELECT 1 FROM pg_trigger WHERE tgname = 'set_updated_at_{table}'
  ) THEN
    CREATE TRIGGER set_updated_at_{table}
    BEFORE UPDATE ON {table}
    FOR EACH ROW
    EXECUTE FUNCTION set_updated_at();
  END IF;
END $$;
"""
        )


def downgrade() -> None:
    # No downgrade support (early-stage schema; breaking changes allowed).
    pass
