"""
middleware/rate_limit.py: per-operation throttle for sensitive endpoints.

    @auth_bp.route("/login", methods=["POST"])
    @rate_limited("login")
    def login(): ...

The key is the client IP (see client_info()). A rejected request is audited
and raised as RateLimited; the error handler renders 429 with Retry-After.
The check runs before the body is parsed, so malformed requests count too.
"""

from __future__ import annotations

import functools
from typing import Callable

from backend.app.errors import RateLimited
from backend.app.extensions import audit, rate_limiter
from backend.app.middleware.auth_middleware import client_info


def rate_limited(operation: str) -> Callable:

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            client = client_info()
            allowed, retry_after = rate_limiter.check(client.ip, operation)
            if not allowed:
                audit.log_rate_limit(operation, client.ip)
                raise RateLimited(retry_after)
            return f(*args, **kwargs)

        return decorated

    return decorator
