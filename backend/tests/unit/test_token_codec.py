"""
tests/unit/test_token_codec.py: security/tokens.py.

Uses an injected clock; no app, no database.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from backend.app.security.tokens import (
    InvalidAccessToken,
    TokenCodec,
    generate_opaque_token,
    token_id,
)

SECRET = "unit-test-secret-with-at-least-32-bytes!"
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
TTL = timedelta(minutes=15)


class FakeClock:

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, clock=clock)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


class TestIssueAndVerify:

    def test_claims_round_trip(self, codec):
        token = codec.issue("user-1", "company", TTL)
        claims = codec.verify(token)
        assert claims.subject_id == "user-1"
        assert claims.role == "company"
        assert claims.expires_at == T0 + TTL

    def test_payload_carries_standard_claims(self, codec):
        payload = jwt.decode(codec.issue("user-1", "user", TTL), SECRET, algorithms=["HS256"],
                             options={"verify_exp": False, "verify_iat": False})
        assert set(payload) == {"sub", "role", "iat", "exp", "jti"}
        assert payload["exp"] - payload["iat"] == 900

    def test_tokens_issued_in_same_second_differ(self, codec):
        assert codec.issue("user-1", "user", TTL) != codec.issue("user-1", "user", TTL)


class TestExpiry:

    def test_accepted_within_clock_skew(self, codec, clock):
        token = codec.issue("user-1", "user", TTL)
        clock.now = T0 + TTL + timedelta(minutes=4, seconds=59)
        assert codec.verify(token).subject_id == "user-1"

    def test_accepted_exactly_at_skew_boundary(self, codec, clock):
        token = codec.issue("user-1", "user", TTL)
        clock.now = T0 + TTL + timedelta(minutes=5)
        assert codec.verify(token).subject_id == "user-1"

    def test_rejected_beyond_clock_skew(self, codec, clock):
        token = codec.issue("user-1", "user", TTL)
        clock.now = T0 + TTL + timedelta(minutes=5, seconds=1)
        with pytest.raises(InvalidAccessToken) as exc:
            codec.verify(token)
        assert "expired" in exc.value.reason


class TestRejection:

    def test_wrong_secret(self, codec):
        other = TokenCodec("another-secret-that-is-at-least-32-bytes", clock=lambda: T0)
        with pytest.raises(InvalidAccessToken):
            codec.verify(other.issue("user-1", "user", TTL))

    def test_tampered_payload(self, codec):
        header, _, signature = codec.issue("user-1", "user", TTL).split(".")
        forged = _b64({"sub": "user-1", "role": "admin", "exp": int((T0 + TTL).timestamp())})
        with pytest.raises(InvalidAccessToken):
            codec.verify(f"{header}.{forged}.{signature}")

    def test_alg_none_rejected(self, codec):
        header = _b64({"alg": "none", "typ": "JWT"})
        payload = _b64({"sub": "user-1", "role": "admin", "exp": int((T0 + TTL).timestamp())})
        with pytest.raises(InvalidAccessToken) as exc:
            codec.verify(f"{header}.{payload}.")
        assert "algorithm" in exc.value.reason

    def test_other_hmac_algorithm_rejected(self, codec):
        token = jwt.encode(
            {"sub": "user-1", "role": "user", "exp": int((T0 + TTL).timestamp())},
            SECRET,
            algorithm="HS512",
        )
        with pytest.raises(InvalidAccessToken) as exc:
            codec.verify(token)
        assert "algorithm" in exc.value.reason

    def test_missing_role_claim(self, codec):
        token = jwt.encode(
            {"sub": "user-1", "exp": int((T0 + TTL).timestamp())},
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidAccessToken):
            codec.verify(token)

    def test_garbage(self, codec):
        with pytest.raises(InvalidAccessToken):
            codec.verify("definitely-not-a-jwt")

    def test_asymmetric_algorithm_refused_at_construction(self):
        with pytest.raises(ValueError):
            TokenCodec(SECRET, algorithm="RS256")


class TestOpaqueTokens:

    def test_token_id_is_sha256_hex(self):
        tid = token_id("abc")
        assert tid == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        assert token_id("abc") == tid

    def test_generated_tokens_are_256_bit_urlsafe(self):
        token = generate_opaque_token()
        assert len(token) == 43
        assert set(token) <= set(
            "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
        )
        assert generate_opaque_token() != token
