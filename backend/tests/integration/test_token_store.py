"""
tests/integration/test_token_store.py: the token store contract against a
real database (services/token_store.py) and the daily cleanup run.

Each test works inside one app context with explicit commits, the same way
the routes use the store.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.errors import TokenConflict
from backend.app.extensions import db
from backend.app.models.token import TokenKind
from backend.app.models.user import User
from backend.app.services import token_store


def _now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield db.session


@pytest.fixture
def user_id(ctx) -> str:
    user = User(name="Store", email="store@test.com", password_hash="x")
    ctx.add(user)
    ctx.commit()
    return user.id


def _create(session, user_id, raw, kind=TokenKind.REFRESH, expires_in=timedelta(days=7)):
    record = token_store.create(session, user_id, raw, kind, _now() + expires_in)
    session.commit()
    return record


class TestCreateAndFetch:

    def test_raw_value_is_never_stored(self, ctx, user_id):
        record = _create(ctx, user_id, "raw-value")
        assert record.token_hash != "raw-value"
        assert len(record.token_hash) == 64

    def test_fetch_by_value(self, ctx, user_id):
        _create(ctx, user_id, "raw-value")
        record = token_store.fetch_by_value(ctx, "raw-value")
        assert record is not None
        assert record.user_id == user_id
        assert record.used is False

    def test_fetch_filters_by_kind(self, ctx, user_id):
        _create(ctx, user_id, "raw-value", kind=TokenKind.VERIFICATION)
        assert token_store.fetch_by_value(ctx, "raw-value", TokenKind.REFRESH) is None
        assert token_store.fetch_by_value(ctx, "raw-value", TokenKind.VERIFICATION) is not None

    def test_fetch_unknown_returns_none(self, ctx):
        assert token_store.fetch_by_value(ctx, "nope") is None

    def test_duplicate_value_raises_conflict(self, ctx, user_id):
        _create(ctx, user_id, "raw-value")
        with pytest.raises(TokenConflict):
            token_store.create(ctx, user_id, "raw-value", TokenKind.REFRESH, _now())
        ctx.rollback()


class TestMarkUsed:

    def test_first_call_wins_second_loses(self, ctx, user_id):
        _create(ctx, user_id, "raw-value")
        assert token_store.mark_used(ctx, "raw-value") is True
        ctx.commit()
        assert token_store.mark_used(ctx, "raw-value") is False
        assert token_store.fetch_by_value(ctx, "raw-value").used is True

    def test_unknown_token(self, ctx):
        assert token_store.mark_used(ctx, "nope") is False


class TestInvalidation:

    def test_invalidate_one(self, ctx, user_id):
        _create(ctx, user_id, "a")
        _create(ctx, user_id, "b")
        assert token_store.invalidate_one(ctx, "a") == 1
        ctx.commit()
        assert token_store.fetch_by_value(ctx, "a") is None
        assert token_store.fetch_by_value(ctx, "b") is not None

    def test_invalidate_all_for_subject_only_touches_one_kind(self, ctx, user_id):
        _create(ctx, user_id, "r1")
        _create(ctx, user_id, "r2")
        _create(ctx, user_id, "v1", kind=TokenKind.VERIFICATION)

        assert token_store.invalidate_all_for_subject(ctx, user_id) == 2
        ctx.commit()
        assert token_store.fetch_by_value(ctx, "v1") is not None


class TestActiveCount:

    def test_used_and_expired_tokens_are_not_active(self, ctx, user_id):
        _create(ctx, user_id, "active")
        _create(ctx, user_id, "spent")
        _create(ctx, user_id, "stale", expires_in=timedelta(seconds=-1))
        _create(ctx, user_id, "verify", kind=TokenKind.VERIFICATION)
        token_store.mark_used(ctx, "spent")
        ctx.commit()

        assert token_store.count_active_for_subject(ctx, user_id) == 1

    def test_revoke_oldest_keeps_newest(self, ctx, user_id):
        for n in range(5):
            _create(ctx, user_id, f"t{n}")
            time.sleep(0.002)

        removed = token_store.revoke_oldest(ctx, user_id, keep=2)
        ctx.commit()

        assert removed == 3
        survivors = [
            raw for raw in ("t0", "t1", "t2", "t3", "t4")
            if token_store.fetch_by_value(ctx, raw) is not None
        ]
        assert survivors == ["t3", "t4"]


class TestSweep:

    def test_sweep_removes_expired_tokens_of_every_kind(self, ctx, user_id):
        past = timedelta(seconds=-1)
        _create(ctx, user_id, "old-refresh", expires_in=past)
        _create(ctx, user_id, "old-verify", kind=TokenKind.VERIFICATION, expires_in=past)
        _create(ctx, user_id, "old-reset", kind=TokenKind.PASSWORD_RESET, expires_in=past)
        _create(ctx, user_id, "fresh")

        assert token_store.sweep_expired(ctx) == 3
        ctx.commit()
        assert token_store.fetch_by_value(ctx, "fresh") is not None

    def test_cleanup_service_run_once(self, app, ctx, user_id):
        _create(ctx, user_id, "old", expires_in=timedelta(seconds=-1))
        _create(ctx, user_id, "fresh")

        removed = app.extensions["token_cleanup"].run_once()

        assert removed == 1
        assert token_store.fetch_by_value(ctx, "old") is None
        assert token_store.fetch_by_value(ctx, "fresh") is not None

    def test_tokens_are_deleted_with_their_user(self, ctx, user_id):
        _create(ctx, user_id, "mine")
        ctx.delete(ctx.get(User, user_id))
        ctx.commit()
        assert token_store.fetch_by_value(ctx, "mine") is None
