"""
schemas/auth_schema.py: Marshmallow schemas for authentication endpoints.

Validation responsibility:
  - This file: presence, types, lengths, formats.
  - security/passwords.py (called from auth_service): password strength.
    The policy lives outside the schema so the same rules apply to
    registration, password reset and the admin bootstrap, and so the
    violation surfaces as WEAK_PASSWORD, not INVALID_FIELD.
  - services/auth_service.py: DUPLICATE_EMAIL (requires a DB lookup).

IMPORTANT: All schemas inherit from marshmallow.Schema directly.
           Do NOT use ma.Schema; it requires an active Flask app context
           and breaks unit tests. See extensions.py for the full explanation.
"""

from __future__ import annotations

from marshmallow import Schema, fields, validate

from backend.app.security.passwords import MAX_LENGTH


class RegisterSchema(Schema):
    """
    POST /auth/register

    Field rules:
      name     : 1–120 chars
      email    : valid email format, max 255
      password : required string; strength is checked by the service
      role     : "user" (default) or "company". Admins are never self-registered.
    """

    name = fields.Str(
        required=True,
        validate=validate.Length(
            min=1,
            max=120,
            error="Name must be between 1 and 120 characters.",
        ),
    )

    # marshmallow's Email field applies RFC-5322-compatible validation.
    email = fields.Email(
        required=True,
        validate=validate.Length(max=255),
    )

    password = fields.Str(required=True, load_only=True)

    role = fields.Str(
        load_default="user",
        validate=validate.OneOf(
            ["user", "company"],
            error="Role must be one of: user, company.",
        ),
    )


class LoginSchema(Schema):
    """
    POST /auth/login

    Credential correctness is checked in auth_service.py
    (INVALID_CREDENTIALS, 401). The password length cap keeps absurd
    payloads away from bcrypt.
    """

    email = fields.Email(required=True)
    password = fields.Str(
        required=True,
        load_only=True,
        validate=validate.Length(max=MAX_LENGTH * 4),
    )


class RefreshTokenSchema(Schema):
    """
    POST /auth/refresh, POST /auth/logout

    The refresh token normally arrives in the HttpOnly cookie; a body value,
    when sent, takes precedence (non-browser clients).
    """

    refresh_token = fields.Str(load_default=None, allow_none=True)


class VerifyEmailSchema(Schema):
    """POST /auth/verify-email"""

    token = fields.Str(required=True, validate=validate.Length(min=1, max=256))


class ForgotPasswordSchema(Schema):
    """POST /auth/forgot-password"""

    email = fields.Email(required=True)


class ResetPasswordSchema(Schema):
    """
    POST /auth/reset-password

    Strength of the new password is checked by the service (WEAK_PASSWORD).
    """

    token = fields.Str(required=True, validate=validate.Length(min=1, max=256))
    password = fields.Str(required=True, load_only=True)
