"""
models/token.py: AuthToken table definition.

One table holds every opaque, store-backed token:
  refresh_token  long-lived, single-use, rotated on every refresh
  verification   one-time email verification token (24 h)
  password_reset one-time password reset token (1 h)

Only the SHA-256 hex digest of the raw value is stored, so a leaked
database does not expose usable tokens. `used` only ever goes from false
to true (see services/token_store.mark_used).

FK policy: user_id ON DELETE CASCADE. Tokens are owned by the user.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, String, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class TokenKind(str, enum.Enum):
    REFRESH = "refresh_token"
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthToken(db.Model):
    __tablename__ = "tokens"

    __table_args__ = (
        # count_active_for_subject / revoke_oldest filter on exactly these.
        Index("idx_tokens_user_kind_used", "user_id", "kind", "used"),
        Index("idx_tokens_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    # SHA-256 hex digest of the raw token (security/tokens.token_id).
    token_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    kind: Mapped[TokenKind] = mapped_column(
        Enum(
            TokenKind,
            name="token_kind_enum",
            native_enum=False,
            create_constraint=True,
            values_callable=lambda kinds: [k.value for k in kinds],
            length=20,
        ),
        nullable=False,
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    used: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )

    # Set in Python (microsecond precision) so "oldest first" is well ordered
    # even for tokens minted within the same second.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="tokens",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<AuthToken id={self.id} "
            f"user_id={self.user_id} "
            f"kind={self.kind.value} "
            f"used={self.used}>"
        )
