"""
app/__init__.py: Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time. This enables:
           - Multiple isolated test app instances
           - Clean separation between app creation and app startup
           - `flask db migrate` to work without starting the full server

Responsibilities:
  1. Load configuration from config_by_name[config_name] (+ overrides)
  2. Configure logging
  3. Initialise extensions (SQLAlchemy, Marshmallow, revocation cache,
     rate limiter, notifier) via init_app()
  4. Register the route blueprints under /api/v1
  5. Register global error handlers (AppError → JSON, Exception → 500)
  6. Start the daily expired-token cleanup and register shutdown of every
     background task
  7. Register the `flask seed-admin` CLI command

Note on model imports:
  All model classes are imported inside create_app() so that SQLAlchemy's
  metadata is populated before Alembic inspects it. They are not used
  directly here; the import side-effect is sufficient.
"""

from __future__ import annotations

import atexit
import traceback

import click
from flask import Flask, jsonify
from marshmallow import ValidationError
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from backend.config import config_by_name, validate_production_config


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development", overrides: dict | None = None) -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Resolved via config_by_name in config.py.
                     Defaults to "development".
        overrides:   Config values applied after the config class, e.g. a
                     per-session database URI in integration tests.

    Returns:
        A fully configured Flask app ready to serve requests.
    """
    app = Flask(__name__)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)
    if overrides:
        app.config.update(overrides)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    from backend.app.logging_config import configure_logging
    configure_logging(app)

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from backend.app.extensions import db, ma, notifier, rate_limiter, revocation_cache
    db.init_app(app)
    ma.init_app(app)
    _enable_sqlite_foreign_keys(app, db)
    revocation_cache.init_app(app)
    rate_limiter.init_app(app)
    notifier.init_app(app)

    # ── Model registration ─────────────────────────────────────────────────
    # Import all models so that SQLAlchemy's MetaData is populated.
    # Alembic needs to see these to auto-generate migrations.
    with app.app_context():
        from backend.app.models import token, user  # noqa: F401

    # ── Blueprints ─────────────────────────────────────────────────────────
    _register_blueprints(app)

    # ── Error handlers ─────────────────────────────────────────────────────
    _register_error_handlers(app)

    # ── Background tasks and CLI ───────────────────────────────────────────
    _register_cleanup(app)
    _register_cli(app)
    atexit.register(shutdown_background_tasks, app)

    return app


def shutdown_background_tasks(app: Flask) -> None:
    """
    Stops every background task registered on app.extensions["security_tasks"]
    (revocation sweep, notifier workers, daily cleanup).

    Safe to call more than once. In-flight requests are never waited on;
    only the task threads are joined.
    """
    tasks = app.extensions.get("security_tasks", [])
    while tasks:
        task = tasks.pop()
        try:
            task.stop()
        except Exception:
            app.logger.exception("Failed to stop background task %r", task)


def _enable_sqlite_foreign_keys(app: Flask, db) -> None:
    """SQLite ignores ON DELETE CASCADE unless the pragma is set per connection."""
    with app.app_context():
        engine = db.engine
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _register_blueprints(app: Flask) -> None:
    """
    Registers all route blueprints under the /api/v1 prefix.

    Blueprint names match the route files in app/routes/.
    """
    from backend.app.routes.auth import auth_bp
    from backend.app.routes.users import users_bp

    app.register_blueprint(auth_bp,  url_prefix="/api/v1/auth")
    app.register_blueprint(users_bp, url_prefix="/api/v1/users")


def _register_cleanup(app: Flask) -> None:
    from backend.app.services.cleanup_service import CleanupService

    cleanup = CleanupService(app, hour=app.config.get("TOKEN_CLEANUP_HOUR", 3))
    app.extensions["token_cleanup"] = cleanup
    if app.config.get("SECURITY_BACKGROUND_TASKS", True):
        cleanup.start()
        app.extensions.setdefault("security_tasks", []).append(cleanup)


def _register_cli(app: Flask) -> None:

    @app.cli.command("seed-admin")
    def seed_admin():
        """Create the admin account from ADMIN_EMAIL / ADMIN_PASSWORD."""
        from backend.app.errors import AppError
        from backend.app.extensions import db
        from backend.app.services import auth_service

        email = app.config.get("ADMIN_EMAIL")
        password = app.config.get("ADMIN_PASSWORD")
        if not email or not password:
            raise click.ClickException("ADMIN_EMAIL and ADMIN_PASSWORD must both be set.")

        try:
            user, created = auth_service.ensure_admin(email, password, db.session)
        except AppError as exc:
            raise click.ClickException(exc.message)
        db.session.commit()

        if created:
            click.echo(f"Admin account created: {user['email']} ({user['id']})")
        else:
            click.echo(f"Account already exists: {user['email']}")

    @app.cli.command("cleanup-tokens")
    def cleanup_tokens():
        """Delete every expired token now."""
        removed = app.extensions["token_cleanup"].run_once()
        click.echo(f"Removed {removed} expired tokens.")


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError        → structured JSON error envelope with the correct HTTP status
                        (RateLimited also sets Retry-After)
      ValidationError → marshmallow schema errors formatted as MISSING_FIELD /
                        INVALID_FIELD responses (400)
      HTTPException   → werkzeug errors (404, 405, ...) in the same envelope
      SQLAlchemyError → session rolled back, STORE_UNAVAILABLE (503)
      Exception       → generic INTERNAL_ERROR (500); full traceback logged

    Stack traces and database detail never leave the server.
    """
    from backend.app.errors import AppError, ErrorCode, RateLimited, StoreFailure
    from backend.app.extensions import db

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """
        Converts an AppError raised anywhere in the request lifecycle
        (middleware, service, route) into the standard error envelope.

        Routes never catch AppError; they let it propagate here.
        """
        response = jsonify(error.to_dict())
        if isinstance(error, RateLimited):
            response.headers["Retry-After"] = str(error.retry_after)
        return response, error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Converts marshmallow ValidationError into the standard error envelope.

        Marshmallow raises ValidationError with a messages dict keyed by field name.
        Only the FIRST error is returned ("one error, not many").
        """
        messages = error.messages  # e.g. {"email": ["Not a valid email address."]}

        field = None
        raw_message = "Invalid input."
        code = ErrorCode.INVALID_FIELD

        if isinstance(messages, dict):
            for field_name, field_errors in messages.items():
                field = field_name if field_name != "_schema" else None

                if isinstance(field_errors, list):
                    raw_message = field_errors[0] if field_errors else "Invalid value."
                else:
                    raw_message = str(field_errors)
                break
        elif isinstance(messages, list):
            raw_message = messages[0] if messages else "Invalid input."

        if str(raw_message).startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD

        response_body = {
            "error": {
                "code": code,
                "message": raw_message,
            }
        }
        if field is not None:
            response_body["error"]["field"] = field

        return jsonify(response_body), 400

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return jsonify({
            "error": {
                "code": error.name.upper().replace(" ", "_"),
                "message": error.description,
            }
        }), error.code

    @app.errorhandler(SQLAlchemyError)
    def handle_store_error(error: SQLAlchemyError):
        db.session.rollback()
        app.logger.error(
            "Database error: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        failure = StoreFailure()
        return jsonify(failure.to_dict()), failure.http_status

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        """
        Catches all unhandled exceptions and returns a generic 500 response.

        The full traceback is logged to the application logger. Stack traces
        NEVER leave the server in the response body.
        """
        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            }
        }), 500
