"""
services/token_store.py: persistence contract for store-backed tokens.

Every function takes the SQLAlchemy session explicitly and only flushes;
commits belong to the caller. Raw token values are hashed here and never
reach the database.

Contract:
  create                      insert; TokenConflict if the value already exists
  fetch_by_value              the record, or None
  mark_used                   atomic test-and-set on `used` (one conditional
                              UPDATE); True only for the caller that flipped it
  invalidate_one              delete one record
  invalidate_all_for_subject  delete every token of a kind owned by a subject
  count_active_for_subject    unused, unexpired refresh tokens of a subject
  revoke_oldest               delete all but the `keep` newest active refresh tokens
  sweep_expired               delete every expired token of every kind
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, false, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.errors import TokenConflict
from backend.app.models.token import AuthToken, TokenKind
from backend.app.security.tokens import token_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create(
        session: Session,
        user_id: str,
        raw_token: str,
        kind: TokenKind,
        expires_at: datetime,
) -> AuthToken:
    record = AuthToken(
        user_id=user_id,
        token_hash=token_id(raw_token),
        kind=kind,
        expires_at=expires_at,
    )
    session.add(record)
    try:
        session.flush()
    except IntegrityError as exc:
        raise TokenConflict(f"{kind.value} token value already exists") from exc
    return record


def fetch_by_value(
        session: Session,
        raw_token: str,
        kind: TokenKind | None = None,
) -> AuthToken | None:
    stmt = select(AuthToken).where(AuthToken.token_hash == token_id(raw_token))
    if kind is not None:
        stmt = stmt.where(AuthToken.kind == kind)
    # populate_existing: a concurrent mark_used must be visible even if the
    # row is already in this session's identity map.
    return session.execute(
        stmt.execution_options(populate_existing=True)
    ).scalar_one_or_none()


def mark_used(session: Session, raw_token: str) -> bool:
    """
    Flips `used` from false to true in a single conditional UPDATE.

    Returns True for exactly one caller per token. False means the token
    does not exist or somebody else already used it; callers that need to
    tell those apart re-fetch the record.
    """
    result = session.execute(
        update(AuthToken)
        .where(
            AuthToken.token_hash == token_id(raw_token),
            AuthToken.used == false(),
        )
        .values(used=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def invalidate_one(session: Session, raw_token: str) -> int:
    result = session.execute(
        delete(AuthToken)
        .where(AuthToken.token_hash == token_id(raw_token))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def invalidate_all_for_subject(
        session: Session,
        user_id: str,
        kind: TokenKind = TokenKind.REFRESH,
) -> int:
    result = session.execute(
        delete(AuthToken)
        .where(AuthToken.user_id == user_id, AuthToken.kind == kind)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _active_refresh_filter(user_id: str, now: datetime):
    return (
        AuthToken.user_id == user_id,
        AuthToken.kind == TokenKind.REFRESH,
        AuthToken.used == false(),
        AuthToken.expires_at > now,
    )


def count_active_for_subject(
        session: Session,
        user_id: str,
        now: datetime | None = None,
) -> int:
    now = now or _utcnow()
    return session.execute(
        select(func.count(AuthToken.id)).where(*_active_refresh_filter(user_id, now))
    ).scalar_one()


def revoke_oldest(
        session: Session,
        user_id: str,
        keep: int,
        now: datetime | None = None,
) -> int:
    now = now or _utcnow()
    stale_ids = session.execute(
        select(AuthToken.id)
        .where(*_active_refresh_filter(user_id, now))
        .order_by(AuthToken.created_at.desc(), AuthToken.id.desc())
        .offset(keep)
    ).scalars().all()
    if not stale_ids:
        return 0

    result = session.execute(
        delete(AuthToken)
        .where(AuthToken.id.in_(stale_ids))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def sweep_expired(session: Session, now: datetime | None = None) -> int:
    now = now or _utcnow()
    result = session.execute(
        delete(AuthToken)
        .where(AuthToken.expires_at <= now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
