"""
extensions.py: Flask extension singletons.

Initialises SQLAlchemy, marshmallow and the in-process security components
as module-level objects so they can be imported anywhere without creating
circular dependencies.

Pattern:
    1. Create the extension object here (no app attached yet).
    2. Call init_app(app) inside the app factory in app/__init__.py.
    3. Import the object from here wherever needed.

    from backend.app.extensions import db, revocation_cache, rate_limiter

Do not pass the app object to any of these at import time; that would
prevent running tests with a separate test app instance.

The revocation cache holds per-process state; each worker process of a
multi-process server keeps its own copy. The rate limiter does too unless
RATE_LIMIT_STORAGE points at shared storage.
"""

from flask_marshmallow import Marshmallow
from flask_sqlalchemy import SQLAlchemy

from backend.app.security.audit import AuditSink
from backend.app.security.rate_limit import RateLimiter
from backend.app.security.revocation import RevocationCache
from backend.app.services.notification_service import Notifier

db = SQLAlchemy()

# Marshmallow instance, available for SQLAlchemy model serialization helpers.
#
# IMPORTANT: schema inheritance rule.
#   All validation Schema classes (in app/schemas/) must inherit from
#   marshmallow.Schema directly, NOT from ma.Schema.
#
#   ma.Schema requires an active Flask application context. Unit tests
#   in tests/unit/ run without a Flask app.
ma = Marshmallow()

# Blacklist of access tokens invalidated before their natural expiry.
revocation_cache = RevocationCache()

# Sliding-window throttle for login / register / refresh / password reset.
rate_limiter = RateLimiter()

# Structured security event emitter.
audit = AuditSink()

# Fire-and-forget outbound mail.
notifier = Notifier()
