"""
tests/integration/conftest.py: Fixtures and helpers for all integration tests.

Design:
  - The app is created once per session using create_app("testing").
  - The database is a per-session SQLite FILE (not :memory:) so that
    concurrent requests from several threads see the same data. Set
    TEST_DATABASE_URL to run the suite against PostgreSQL instead.
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted in FK-safe order and the in-memory
    security state (rate-limit buckets, revocation cache) is reset, so tests
    are isolated.

Helper functions (not fixtures) are provided for common operations:
  - register(client, ...)        → response data ({"user": {...}})
  - register_verified(...)       → registers, captures the emailed token, verifies
  - login(client, ...)           → (data dict, raw refresh token)
  - refresh_cookie(resp)         → raw refresh token from Set-Cookie
  - auth_headers(token)          → {"Authorization": "Bearer <token>"}
  - capture_verification(...)    → context manager capturing emailed tokens

These are plain functions (not pytest fixtures) so they can be called with
arbitrary arguments in any test without fixture parameterization overhead.

Every request carries its own X-Forwarded-For (TRUST_PROXY_HEADERS is on in
testing) so that tests which are not about rate limiting never share a bucket.
"""

from __future__ import annotations

import itertools
import os
from contextlib import contextmanager
from unittest.mock import patch

import pytest
from sqlalchemy import text

from backend.app import create_app, shutdown_background_tasks
from backend.app.extensions import db as _db
from backend.app.extensions import notifier, rate_limiter, revocation_cache

PASSWORD = "Str0ng!Passw0rd"

_ip_counter = itertools.count(1)


def next_ip() -> str:
    n = next(_ip_counter)
    return f"10.{(n >> 16) & 255}.{(n >> 8) & 255}.{n & 255}"


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app(tmp_path_factory):
    """
    Creates the Flask application in 'testing' mode once for the entire test session.

    Steps:
      1. Create app with TestingConfig pointed at a temp SQLite file
         (or TEST_DATABASE_URL when set).
      2. Run db.create_all() to create all tables.
      3. Yield the app for the test session.
      4. Drop all tables and stop background tasks at teardown.
    """
    db_url = os.getenv("TEST_DATABASE_URL")
    overrides: dict = {}
    if not db_url:
        db_file = tmp_path_factory.mktemp("db") / "auth_test.sqlite"
        db_url = f"sqlite:///{db_file}"
        overrides["SQLALCHEMY_ENGINE_OPTIONS"] = {
            # Requests run on test-client threads; writers wait instead of failing.
            "connect_args": {"check_same_thread": False, "timeout": 15},
        }
    overrides["SQLALCHEMY_DATABASE_URI"] = db_url

    flask_app = create_app("testing", overrides=overrides)

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()
    shutdown_background_tasks(flask_app)


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_tables(app):
    """
    Deletes all rows and resets in-memory security state after every test.

    tokens are deleted before users (CASCADE would handle it, but be explicit).
    """
    yield  # run the test

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test

        with _db.engine.connect() as conn:
            conn.execute(text("DELETE FROM tokens"))
            conn.execute(text("DELETE FROM users"))
            conn.commit()

    rate_limiter.reset()
    revocation_cache.clear()


# ═══════════════════════════════════════════════════════════════════════════
# Client fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def ip_headers(ip: str | None = None, **extra) -> dict:
    headers = {"X-Forwarded-For": ip or next_ip()}
    headers.update(extra)
    return headers


def auth_headers(token: str, ip: str | None = None) -> dict:
    """Returns the Authorization header dict for use in test requests."""
    return ip_headers(ip, Authorization=f"Bearer {token}")


@contextmanager
def capture_verification():
    """
    Captures the raw tokens handed to the notifier. The store only keeps
    hashes, so this is the only way a test can obtain them.

        with capture_verification() as sent:
            register(client, ...)
        token = sent[-1]["token"]
    """
    sent: list[dict] = []

    def _record(kind):
        def _send(to, name, token):
            sent.append({"kind": kind, "to": to, "name": name, "token": token})
            return True
        return _send

    with patch.object(notifier, "send_verification", side_effect=_record("verification")), \
            patch.object(notifier, "send_password_reset", side_effect=_record("password_reset")):
        yield sent


def register(
    client,
    name: str = "Alice",
    email: str = "alice@test.com",
    password: str = PASSWORD,
    role: str | None = None,
) -> dict:
    """
    Registers a new user and returns the response data dict.
    Returns: {"user": {...}}
    """
    payload = {"name": name, "email": email, "password": password}
    if role is not None:
        payload["role"] = role
    resp = client.post("/api/v1/auth/register", json=payload, headers=ip_headers())
    assert resp.status_code == 201, f"register failed: {resp.get_json()}"
    return resp.get_json()["data"]


def verify(client, token: str):
    return client.post(
        "/api/v1/auth/verify-email",
        json={"token": token},
        headers=ip_headers(),
    )


def register_verified(
    client,
    name: str = "Alice",
    email: str = "alice@test.com",
    password: str = PASSWORD,
) -> dict:
    """Registers and verifies a user. Returns the user dict."""
    with capture_verification() as sent:
        data = register(client, name=name, email=email, password=password)
    resp = verify(client, sent[-1]["token"])
    assert resp.status_code == 200, f"verify failed: {resp.get_json()}"
    return data["user"]


def refresh_cookie(resp) -> str | None:
    """Extracts the raw refresh token from a response's Set-Cookie headers."""
    for header in resp.headers.getlist("Set-Cookie"):
        name, _, rest = header.partition("=")
        if name.strip() == "refresh_token":
            value = rest.split(";", 1)[0]
            return value or None
    return None


def login_response(client, email: str = "alice@test.com", password: str = PASSWORD, ip=None):
    return client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
        headers=ip_headers(ip),
    )


def login(client, email: str = "alice@test.com", password: str = PASSWORD) -> tuple[dict, str]:
    """
    Logs in a user and returns (response data dict, raw refresh token).
    Data: {"user": {...}, "access_token": "...", "token_type": "Bearer", "expires_in": 900}
    """
    resp = login_response(client, email=email, password=password)
    assert resp.status_code == 200, f"login failed: {resp.get_json()}"
    return resp.get_json()["data"], refresh_cookie(resp)


def refresh(client, raw_refresh_token: str | None, ip: str | None = None):
    """POSTs /refresh with the token in the body (cookies are not relied on)."""
    body = {"refresh_token": raw_refresh_token} if raw_refresh_token else {}
    return client.post("/api/v1/auth/refresh", json=body, headers=ip_headers(ip))
