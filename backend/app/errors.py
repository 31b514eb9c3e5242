"""
errors.py: AppError base class, its security subclasses, and the error code registry.

Every error returned by the API must use a code defined here.
Do not raise strings or generic exceptions from service or route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - Authentication failures share ONE code and ONE message regardless of the
    underlying cause (unknown user, wrong password, bad signature, expired or
    revoked token, reused refresh token). The cause goes to the logs only.
  - Never conflate 401 (unauthenticated) with 403 (unauthorized).
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    WEAK_PASSWORD              = "WEAK_PASSWORD"
    TOKEN_INVALID              = "TOKEN_INVALID"          # one-time tokens

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    DUPLICATE_EMAIL            = "DUPLICATE_EMAIL"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    USER_NOT_FOUND             = "USER_NOT_FOUND"

    # ── Auth Errors ────────────────────────────────────────────────────────
    # 401 = we do not know who you are (unauthenticated)
    # 403 = we know who you are, but you are not allowed
    INVALID_CREDENTIALS        = "INVALID_CREDENTIALS"    # 401
    TOKEN_MISSING              = "TOKEN_MISSING"          # 401
    EMAIL_NOT_VERIFIED         = "EMAIL_NOT_VERIFIED"     # 403
    FORBIDDEN                  = "FORBIDDEN"              # 403

    # ── Throttling (429) ───────────────────────────────────────────────────
    RATE_LIMITED               = "RATE_LIMITED"

    # ── System Errors (5xx) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"         # 500
    STORE_UNAVAILABLE          = "STORE_UNAVAILABLE"      # 503


# ── Security taxonomy ──────────────────────────────────────────────────────

class AuthenticationFailure(AppError):
    """Generic 401. The message never varies with the cause."""

    MESSAGE = "Invalid credentials."

    def __init__(self) -> None:
        super().__init__(ErrorCode.INVALID_CREDENTIALS, self.MESSAGE, 401)


class VerificationRequired(AppError):
    """Correct credentials, but the account's email is not yet verified."""

    def __init__(self) -> None:
        super().__init__(
            ErrorCode.EMAIL_NOT_VERIFIED,
            "Email address not verified. Check your inbox for the verification link.",
            403,
        )


class RateLimited(AppError):

    def __init__(self, retry_after: int) -> None:
        super().__init__(
            ErrorCode.RATE_LIMITED,
            "Too many requests. Please try again later.",
            429,
        )
        self.retry_after = retry_after


class StoreFailure(AppError):
    """Persistence unavailable. Internal detail is logged, never returned."""

    def __init__(self) -> None:
        super().__init__(
            ErrorCode.STORE_UNAVAILABLE,
            "The service is temporarily unavailable. Please try again later.",
            503,
        )


class Forbidden(AppError):

    def __init__(self, message: str = "You are not allowed to perform this action.") -> None:
        super().__init__(ErrorCode.FORBIDDEN, message, 403)


class TokenConflict(Exception):
    """Raised by the token store when a token value already exists."""


class ReuseIncident(Exception):
    """
    Internal signal: a refresh token that was already used has been presented
    again. Triggers revocation of every refresh token the subject owns and is
    surfaced to the caller only as AuthenticationFailure.
    """

    def __init__(self, subject_id: str) -> None:
        super().__init__(f"refresh token reuse for subject {subject_id}")
        self.subject_id = subject_id
