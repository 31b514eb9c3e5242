"""
services/session_state.py: the session lineage state machine.

    Anonymous ──login──▶ Authenticated ◀──── refresh (ACTIVE) ────┐
        ▲                     │                                   │
        │                     └──── access token ages out ────────┤
        ├──────────── refresh (UNKNOWN / EXPIRED), logout ────────┤
        │                                                         │
     Revoked ◀──────────────── refresh (REUSED) ──────────────────┘

A presented refresh token is classified first; REFRESH_TRANSITIONS maps
the classification to the state the lineage moves to, and the session
manager acts on that target state. REUSED is a first-class outcome, not an
error branch: it moves the whole lineage (every refresh token of the
subject) to Revoked.
"""

from __future__ import annotations

import enum
from datetime import datetime

from backend.app.models.token import AuthToken
from backend.app.services.token_store import as_utc


class SessionState(enum.Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    REVOKED = "revoked"


class RefreshTokenState(enum.Enum):
    UNKNOWN = "unknown"    # never issued, already deleted, or wrong kind
    EXPIRED = "expired"
    REUSED = "reused"      # used flag already set
    ACTIVE = "active"


# Where a refresh attempt leaves the lineage, by token classification.
REFRESH_TRANSITIONS: dict[RefreshTokenState, SessionState] = {
    RefreshTokenState.ACTIVE:  SessionState.AUTHENTICATED,
    RefreshTokenState.UNKNOWN: SessionState.ANONYMOUS,
    RefreshTokenState.EXPIRED: SessionState.ANONYMOUS,
    RefreshTokenState.REUSED:  SessionState.REVOKED,
}


def classify_refresh_token(record: AuthToken | None, now: datetime) -> RefreshTokenState:
    """Pure classification of a fetched refresh-token record at time `now`."""
    if record is None:
        return RefreshTokenState.UNKNOWN
    if as_utc(record.expires_at) <= now:
        return RefreshTokenState.EXPIRED
    if record.used:
        return RefreshTokenState.REUSED
    return RefreshTokenState.ACTIVE
