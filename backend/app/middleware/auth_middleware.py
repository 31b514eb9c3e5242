"""
middleware/auth_middleware.py: authentication guards and client identity.

Decorators:
  @require_auth           bearer token required; injects `principal`
  @optional_auth          best effort; `principal` is None when the header is
                          missing or the token is rejected
  @require_role(*roles)   @require_auth plus a role check (403 FORBIDDEN)

The authenticated principal is handed to the view as the `principal`
keyword argument (an AuthContext). Nothing is stored on flask.g; views
pass the value on to services explicitly.

Strict responsibility boundary:
  - Middleware = authentication (401) and coarse role checks (403).
  - Token verification and the revocation check live in
    auth_service.authenticate(); this module only parses the header.

Error codes:
  TOKEN_MISSING        (401) no Authorization header
  INVALID_CREDENTIALS  (401) everything else: malformed header, bad
                             signature, wrong algorithm, expired, revoked
  FORBIDDEN            (403) authenticated, wrong role
"""

from __future__ import annotations

import functools
from typing import Callable

from flask import current_app, request
from flask_limiter.util import get_remote_address

from backend.app.errors import AppError, AuthenticationFailure, ErrorCode, Forbidden
from backend.app.security.context import AuthContext, ClientInfo
from backend.app.services import auth_service


def require_auth(f: Callable) -> Callable:
    """
    Route decorator that enforces bearer-token authentication.

    Usage:
        @auth_bp.route("/me")
        @require_auth
        def me(principal: AuthContext):
            ...
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        kwargs["principal"] = _authenticate_request(required=True)
        return f(*args, **kwargs)

    return decorated


def optional_auth(f: Callable) -> Callable:
    """
    Like @require_auth, but never rejects: a missing header or a token
    that fails verification (expired, revoked, tampered) reaches the view
    with principal=None. Used by logout, which must always succeed.
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        try:
            kwargs["principal"] = _authenticate_request(required=False)
        except AuthenticationFailure:
            kwargs["principal"] = None
        return f(*args, **kwargs)

    return decorated


def require_role(*roles: str) -> Callable:
    """
    Route decorator factory: authentication plus membership in `roles`.

        @require_role("admin")
        def purge(principal): ...
    """
    allowed = frozenset(roles)

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            principal = _authenticate_request(required=True)
            if principal.role not in allowed:
                raise Forbidden("Your role does not allow this action.")
            kwargs["principal"] = principal
            return f(*args, **kwargs)

        return decorated

    return decorator


def _authenticate_request(required: bool) -> AuthContext | None:
    """
    Parses "Authorization: Bearer <token>" and authenticates it.

    Separated from the decorator wrappers for testability: it can be called
    inside test_request_context() without wrapping a view.
    """
    auth_header = request.headers.get("Authorization", "")

    if not auth_header:
        if not required:
            return None
        raise AppError(
            ErrorCode.TOKEN_MISSING,
            "Authentication required. Provide a Bearer token in the Authorization header.",
            401,
        )

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationFailure()

    return auth_service.authenticate(parts[1])


def client_info() -> ClientInfo:
    """
    Identifies the caller for audit and throttling.

    Proxy headers are honoured only with TRUST_PROXY_HEADERS; otherwise any
    client could pick its own rate-limit key.
    """
    ip = None
    if current_app.config.get("TRUST_PROXY_HEADERS", False):
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            ip = forwarded.split(",")[0].strip() or None
        if ip is None:
            ip = request.headers.get("X-Real-IP", "").strip() or None
    if ip is None:
        ip = get_remote_address()

    return ClientInfo(ip=ip, user_agent=request.headers.get("User-Agent"))
