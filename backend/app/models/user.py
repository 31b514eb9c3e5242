"""
models/user.py: User (principal) table definition.

No business logic. No imports from services or routes.
The session-security code reads id / role / is_verified and writes
password_hash / is_verified; everything else belongs to the wider platform.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum, String, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    USER = "user"
    COMPANY = "company"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(db.Model):
    __tablename__ = "users"

    __table_args__ = (
        # Also enforced by the marshmallow Email field.
        CheckConstraint(
            "email LIKE '%@%'",
            name="ck_users_email_format",
        ),
    )

    # Opaque subject identifier carried in the access token's `sub` claim.
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    name: Mapped[str] = mapped_column(
        String(120),
        nullable=False,
    )

    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )

    password_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Stored as VARCHAR + CHECK so the same model works on PostgreSQL and SQLite.
    role: Mapped[UserRole] = mapped_column(
        Enum(
            UserRole,
            name="user_role_enum",
            native_enum=False,
            create_constraint=True,
            values_callable=lambda roles: [r.value for r in roles],
            length=20,
        ),
        nullable=False,
        default=UserRole.USER,
    )

    is_verified: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    # Written whenever a session is issued; the write doubles as the
    # per-principal lock that serialises refresh-token cap enforcement.
    last_authenticated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    tokens: Mapped[list["AuthToken"]] = relationship(  # noqa: F821
        "AuthToken",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User id={self.id} email={self.email!r} role={self.role.value}>"
