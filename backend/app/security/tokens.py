"""
security/tokens.py: stateless signer/verifier for access tokens, plus the
opaque-token helpers used for refresh / verification / reset tokens.

Access token claims:
  sub  : subject id (str)
  role : admin | user | company
  iat  : issued at
  exp  : expiry (issue time + JWT_ACCESS_TOKEN_EXPIRES)
  jti  : random, so two tokens minted in the same second still differ

verify() accepts ONLY the configured symmetric algorithm. The header is
checked before signature verification, so an "alg": "none" or RS/HS
confusion token is rejected outright. Expiry is enforced with the
configured clock-skew leeway. Every failure raises InvalidAccessToken; the
specific cause is logged at DEBUG and is never shown to the caller.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvalidAccessToken(Exception):
    """Access token failed verification. `reason` is for logs only."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class AccessClaims:
    subject_id: str
    role: str
    expires_at: datetime


class TokenCodec:

    def __init__(
            self,
            secret: str,
            algorithm: str = "HS256",
            clock_skew: timedelta = timedelta(minutes=5),
            clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not algorithm.startswith("HS"):
            raise ValueError(f"Only HMAC algorithms are supported, got {algorithm!r}")
        self._secret = secret
        self._algorithm = algorithm
        self._clock_skew = clock_skew
        self._clock = clock

    @classmethod
    def from_config(cls, config) -> "TokenCodec":
        return cls(
            secret=config["JWT_SECRET_KEY"],
            algorithm=config.get("JWT_ALGORITHM", "HS256"),
            clock_skew=config.get("JWT_CLOCK_SKEW", timedelta(minutes=5)),
        )

    def issue(self, subject_id: str, role: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            "sub": str(subject_id),
            "role": role,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": secrets.token_hex(8),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> AccessClaims:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise self._reject(f"malformed token: {exc}")

        if header.get("alg") != self._algorithm:
            raise self._reject(f"algorithm mismatch: {header.get('alg')!r}")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={
                    "require": ["sub", "role", "exp"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.InvalidSignatureError:
            raise self._reject("bad signature")
        except jwt.InvalidTokenError as exc:
            raise self._reject(f"unparseable claims: {exc}")

        # Expiry is checked here rather than by PyJWT so the skew is applied
        # against the injectable clock.
        try:
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            raise self._reject("exp claim is not a timestamp")
        if self._clock() > expires_at + self._clock_skew:
            raise self._reject("expired beyond tolerance")

        subject_id = payload["sub"]
        role = payload["role"]
        if not isinstance(subject_id, str) or not subject_id or not isinstance(role, str):
            raise self._reject("sub/role claims have the wrong type")

        return AccessClaims(subject_id=subject_id, role=role, expires_at=expires_at)

    @staticmethod
    def _reject(reason: str) -> InvalidAccessToken:
        logger.debug("Access token rejected: %s", reason)
        return InvalidAccessToken(reason)


def token_id(raw_token: str) -> str:
    """Deterministic identifier for a raw token: SHA-256 hex digest."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_opaque_token() -> str:
    """256 bits of randomness, base64url-encoded without padding."""
    return secrets.token_urlsafe(32)
