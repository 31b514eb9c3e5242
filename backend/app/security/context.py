"""
security/context.py: explicit request-scoped values.

Neither value is stored in flask.g. The guards in middleware/ build them
once per request and hand them to the view as arguments; views pass them
on to the service functions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class ClientInfo:
    """Who is calling, as far as the transport can tell. Used for audit and throttling."""

    ip: str
    user_agent: str | None = None


@dataclass(frozen=True)
class AuthContext:
    """The authenticated principal behind a verified, non-revoked access token."""

    subject_id: str
    role: str
    token_id: str
    expires_at: datetime
