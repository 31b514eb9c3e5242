"""
routes/auth.py: Authentication route handlers.

Layer rules:
  - Parse request body
  - Validate with the appropriate schema (raises ValidationError on bad input)
  - Call exactly ONE service function
  - Commit the DB session
  - Return the standard response envelope: {"data": {...}, "warnings": []}

No business logic here. No DB queries.
AppError propagates to the global error handler in app/__init__.py; routes
never catch it.

The refresh token travels in an HttpOnly cookie scoped to this blueprint
(REFRESH_COOKIE_PATH) and is never part of a response body. /refresh and
/logout also accept it in the body for non-browser clients.

Endpoints (url_prefix=/api/v1/auth):
  POST   /register         → 201   rate limited
  POST   /login            → 200   rate limited
  POST   /refresh          → 200   rate limited
  POST   /logout           → 200   always, with or without a session
  GET    /me               → 200   auth required
  POST   /verify-email     → 200   rate limited
  POST   /forgot-password  → 200   rate limited
  POST   /reset-password   → 200   rate limited
"""

from __future__ import annotations

from flask import Blueprint, Response, current_app, jsonify, request

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import client_info, optional_auth, require_auth
from backend.app.middleware.rate_limit import rate_limited
from backend.app.schemas.auth_schema import (
    ForgotPasswordSchema,
    LoginSchema,
    RefreshTokenSchema,
    RegisterSchema,
    ResetPasswordSchema,
    VerifyEmailSchema,
)
from backend.app.services import auth_service

auth_bp = Blueprint("auth", __name__)


def _json_body() -> dict:
    # A missing or unparseable body validates as {} (MISSING_FIELD), not a raw 400.
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _presented_refresh_token(body_value: str | None) -> str | None:
    return body_value or request.cookies.get(current_app.config["REFRESH_COOKIE_NAME"])


def _set_refresh_cookie(response: Response, raw_token: str) -> None:
    cfg = current_app.config
    response.set_cookie(
        cfg["REFRESH_COOKIE_NAME"],
        raw_token,
        max_age=int(cfg["JWT_REFRESH_TOKEN_EXPIRES"].total_seconds()),
        path=cfg["REFRESH_COOKIE_PATH"],
        secure=request.is_secure,
        httponly=True,
        samesite="Strict",
    )


def _clear_refresh_cookie(response: Response) -> None:
    cfg = current_app.config
    response.delete_cookie(
        cfg["REFRESH_COOKIE_NAME"],
        path=cfg["REFRESH_COOKIE_PATH"],
        secure=request.is_secure,
        httponly=True,
        samesite="Strict",
    )


def _session_response(result: dict) -> Response:
    """Moves the refresh token out of the body and into the cookie."""
    raw_refresh_token = result.pop("refresh_token")
    response = jsonify({"data": result, "warnings": []})
    _set_refresh_cookie(response, raw_refresh_token)
    return response


@auth_bp.route("/register", methods=["POST"])
@rate_limited("register")
def register():
    """POST /auth/register: create account, send verification email. (No auth required.)"""
    data = RegisterSchema().load(_json_body())
    result = auth_service.register_user(
        name=data["name"],
        email=data["email"],
        password=data["password"],
        role=data["role"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 201


@auth_bp.route("/login", methods=["POST"])
@rate_limited("login")
def login():
    """POST /auth/login: authenticate; access token in body, refresh token in cookie."""
    data = LoginSchema().load(_json_body())
    result = auth_service.login_user(
        email=data["email"],
        password=data["password"],
        session=db.session,
        client=client_info(),
    )
    db.session.commit()
    return _session_response(result), 200


@auth_bp.route("/refresh", methods=["POST"])
@rate_limited("refresh")
def refresh():
    """POST /auth/refresh: rotate the refresh token; return a new access token."""
    data = RefreshTokenSchema().load(_json_body())
    result = auth_service.refresh_session(
        raw_refresh_token=_presented_refresh_token(data["refresh_token"]),
        session=db.session,
        client=client_info(),
    )
    db.session.commit()
    return _session_response(result), 200


@auth_bp.route("/logout", methods=["POST"])
@optional_auth
def logout(principal):
    """POST /auth/logout: revoke the access token and the refresh token. Idempotent."""
    # No validation error here: a body value that is not a string is ignored
    # and the cookie is used instead.
    body_value = _json_body().get("refresh_token")
    if not isinstance(body_value, str):
        body_value = None
    auth_service.logout_user(
        principal=principal,
        raw_refresh_token=_presented_refresh_token(body_value),
        session=db.session,
        client=client_info(),
    )
    db.session.commit()
    response = jsonify({"data": {"message": "Logged out successfully."}, "warnings": []})
    _clear_refresh_cookie(response)
    return response, 200


@auth_bp.route("/me", methods=["GET"])
@require_auth
def me(principal):
    """GET /auth/me: return current user profile. (Auth required.)"""
    result = auth_service.get_current_user(
        user_id=principal.subject_id,
        session=db.session,
    )
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/verify-email", methods=["POST"])
@rate_limited("verify-email")
def verify_email():
    """POST /auth/verify-email: consume a verification token."""
    data = VerifyEmailSchema().load(_json_body())
    result = auth_service.verify_email(
        raw_token=data["token"],
        session=db.session,
        client=client_info(),
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/forgot-password", methods=["POST"])
@rate_limited("forgot-password")
def forgot_password():
    """POST /auth/forgot-password: same answer whether or not the account exists."""
    data = ForgotPasswordSchema().load(_json_body())
    result = auth_service.request_password_reset(
        email=data["email"],
        session=db.session,
        client=client_info(),
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/reset-password", methods=["POST"])
@rate_limited("reset-password")
def reset_password():
    """POST /auth/reset-password: set a new password; ends every session."""
    data = ResetPasswordSchema().load(_json_body())
    result = auth_service.reset_password(
        raw_token=data["token"],
        new_password=data["password"],
        session=db.session,
        client=client_info(),
    )
    db.session.commit()
    response = jsonify({"data": result, "warnings": []})
    _clear_refresh_cookie(response)
    return response, 200
