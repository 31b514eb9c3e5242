"""Initial schema: principals and store-backed tokens.

Revision: 001_initial_schema
Created:  2026-10-19

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a schema change is required, create a NEW migration file.

Creation order:
  1. users
  2. tokens (FK → users, ON DELETE CASCADE: tokens die with their principal)
  3. indexes

Enumerations (role, token kind) are VARCHAR + CHECK constraints rather than
PostgreSQL enum types, matching the models (Enum(native_enum=False)), so the
same schema runs on SQLite in tests.

Raw token values are never stored: tokens.token_hash is the SHA-256 hex
digest of the value handed to the client.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_initial_schema"
down_revision: str | None = None      # first migration, no parent
branch_labels: tuple | None = None
depends_on: tuple | None = None


def upgrade() -> None:

    # ── Step 1: users ──────────────────────────────────────────────────────

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column(
            "is_verified",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("last_authenticated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("email", name="uq_users_email"),
        sa.CheckConstraint("email LIKE '%@%'", name="ck_users_email_format"),
        sa.CheckConstraint(
            "role IN ('admin', 'user', 'company')",
            name="user_role_enum",
        ),
    )

    # ── Step 2: tokens ─────────────────────────────────────────────────────
    # One table for refresh, verification and password-reset tokens; the
    # daily cleanup sweeps all three kinds by expires_at.

    op.create_table(
        "tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_tokens_user"),
            nullable=False,
        ),
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "used",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_tokens"),
        sa.UniqueConstraint("token_hash", name="uq_tokens_hash"),
        sa.CheckConstraint(
            "kind IN ('refresh_token', 'verification', 'password_reset')",
            name="token_kind_enum",
        ),
    )

    # ── Step 3: indexes ────────────────────────────────────────────────────

    # count_active_for_subject / revoke_oldest / invalidate_all_for_subject
    op.create_index(
        "idx_tokens_user_kind_used",
        "tokens",
        ["user_id", "kind", "used"],
    )

    # sweep_expired
    op.create_index(
        "idx_tokens_expires_at",
        "tokens",
        ["expires_at"],
    )


def downgrade() -> None:
    """Drops everything in reverse dependency order."""
    op.drop_index("idx_tokens_expires_at", table_name="tokens")
    op.drop_index("idx_tokens_user_kind_used", table_name="tokens")
    op.drop_table("tokens")
    op.drop_table("users")
