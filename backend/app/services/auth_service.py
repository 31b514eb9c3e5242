"""
services/auth_service.py: the session manager.

Composes the password policy, token codec, token store, revocation cache,
audit sink and notifier into the protocol operations:

  register_user           principal + one-time verification token
  login_user              access token + rotating refresh token
  refresh_session         single-use rotation with reuse detection
  logout_user             blacklist the access token, drop the refresh token
  authenticate            per-request guard for protected handlers
  verify_email / request_password_reset / reset_password
  ensure_admin            bootstrap used by `flask seed-admin`

Layer rules:
  - No imports from routes or schemas.
  - No flask.request or flask.g. Client identity (ClientInfo) and the
    authenticated principal (AuthContext) arrive as explicit arguments.
  - current_app.config is read for token lifetimes, the signing secret and
    the bcrypt cost.
  - Functions flush; the route commits. The two security failure paths
    (reuse containment, expired-token cleanup) commit here, before the
    AuthenticationFailure is raised, because the route never commits on error.

Refresh protocol (see services/session_state.py for the state diagram):
  fetch → classify → mark_used → mint. mark_used is the atomic
  test-and-set; a caller that loses the race on it takes the reuse path.
  Used records stay in the table until the expiry sweep so that a replay
  is recognised as reuse and not as an unknown token.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from backend.app.errors import (
    AppError,
    AuthenticationFailure,
    ErrorCode,
    ReuseIncident,
    StoreFailure,
    TokenConflict,
    VerificationRequired,
)
from backend.app.extensions import audit, notifier, revocation_cache
from backend.app.models.token import AuthToken, TokenKind
from backend.app.models.user import User, UserRole
from backend.app.security.context import AuthContext, ClientInfo
from backend.app.security.passwords import check_password_strength, hash_password, verify_password
from backend.app.security.tokens import InvalidAccessToken, TokenCodec, generate_opaque_token, token_id
from backend.app.services import token_store
from backend.app.services.session_state import (
    REFRESH_TRANSITIONS,
    RefreshTokenState,
    SessionState,
    classify_refresh_token,
)

logger = logging.getLogger(__name__)

_TOKEN_INVALID_MESSAGE = "The token is invalid or has expired."
_RESET_REQUESTED_MESSAGE = (
    "If an account exists for that email address, a password reset link has been sent."
)

# bcrypt hashes used to equalise timing when the email is unknown, per cost.
_dummy_hashes: dict[int, str] = {}


# ── Private helpers ────────────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _codec() -> TokenCodec:
    return TokenCodec.from_config(current_app.config)


def _rounds() -> int:
    return current_app.config.get("BCRYPT_LOG_ROUNDS", 12)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _dummy_hash() -> str:
    rounds = _rounds()
    if rounds not in _dummy_hashes:
        _dummy_hashes[rounds] = hash_password("not-a-real-password-Aa1!", rounds=rounds)
    return _dummy_hashes[rounds]


def _weak_password(message: str) -> AppError:
    return AppError(ErrorCode.WEAK_PASSWORD, message, 400, field="password")


def _token_invalid() -> AppError:
    return AppError(ErrorCode.TOKEN_INVALID, _TOKEN_INVALID_MESSAGE, 400, field="token")


def _build_user_dict(user: User) -> dict:
    """Serialises a User to a plain dict. No business logic."""
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "is_verified": user.is_verified,
        "created_at": token_store.as_utc(user.created_at).isoformat(),
    }


def _find_user_by_email(email: str, session: Session) -> User | None:
    return session.execute(
        select(User).where(User.email == _normalize_email(email))
    ).scalar_one_or_none()


def _mint_opaque_token(
        user_id: str,
        kind: TokenKind,
        expires_at: datetime,
        session: Session,
) -> str:
    """
    Generates, stores and returns a raw one-time / refresh token value.

    A duplicate value (TokenConflict) is surfaced as StoreFailure and not
    retried: retrying a single-use token write risks double issuance.
    """
    raw_token = generate_opaque_token()
    try:
        token_store.create(session, user_id, raw_token, kind, expires_at)
    except TokenConflict:
        logger.error("Token value collision while minting a %s token", kind.value)
        raise StoreFailure()
    return raw_token


def _lock_principal(user_id: str, session: Session, now: datetime) -> None:
    """
    Takes the principal's row lock for the rest of the transaction.

    The UPDATE holds the row lock on PostgreSQL and the database write lock
    on SQLite, so concurrent logins and refreshes of one principal count and
    insert refresh tokens one at a time. Both paths lock the principal
    before touching any token row.
    """
    session.execute(
        update(User)
        .where(User.id == user_id)
        .values(last_authenticated_at=now)
        .execution_options(synchronize_session=False)
    )


def _issue_session(user: User, session: Session, now: datetime) -> dict:
    """
    Issues an access token and a fresh refresh token for `user`.

    Enforces the active refresh-token cap under the principal lock: when
    the principal is at or above the cap, the oldest are revoked until
    cap - 1 remain, then the new one is added and the cap is checked once
    more.
    """
    cfg = current_app.config
    cap = cfg["MAX_ACTIVE_REFRESH_TOKENS"]

    _lock_principal(user.id, session, now)
    active = token_store.count_active_for_subject(session, user.id, now=now)
    if active >= cap:
        revoked = token_store.revoke_oldest(session, user.id, keep=cap - 1, now=now)
        logger.info(
            "Active refresh-token cap reached for user %s; revoked %d oldest",
            user.id,
            revoked,
        )

    access_token = _codec().issue(user.id, user.role.value, cfg["JWT_ACCESS_TOKEN_EXPIRES"])
    refresh_token = _mint_opaque_token(
        user.id,
        TokenKind.REFRESH,
        now + cfg["JWT_REFRESH_TOKEN_EXPIRES"],
        session,
    )
    token_store.revoke_oldest(session, user.id, keep=cap, now=now)
    return {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": int(cfg["JWT_ACCESS_TOKEN_EXPIRES"].total_seconds()),
        "refresh_token": refresh_token,
    }


def _consume_refresh_token(raw_refresh_token: str, session: Session, now: datetime) -> str:
    """
    Advances the session lineage for one presented refresh token and
    returns the owning subject id when it lands in AUTHENTICATED.

    The classification picks the transition from REFRESH_TRANSITIONS. An
    ACTIVE token only reaches AUTHENTICATED if this caller wins the
    mark_used race; the loser is moved to REVOKED like any replay.

    Raises:
      AuthenticationFailure  lineage falls back to ANONYMOUS (unknown or expired)
      ReuseIncident          lineage moves to REVOKED (used, or used concurrently)
    """
    record = token_store.fetch_by_value(session, raw_refresh_token, TokenKind.REFRESH)
    state = classify_refresh_token(record, now)
    transition = REFRESH_TRANSITIONS[state]

    if transition is SessionState.AUTHENTICATED:
        _lock_principal(record.user_id, session, now)
        if not token_store.mark_used(session, raw_refresh_token):
            # Lost the race to a concurrent refresh of the same value, or the
            # record vanished under us. Either way this value is spent.
            transition = SessionState.REVOKED

    if transition is SessionState.REVOKED:
        raise ReuseIncident(record.user_id)

    if transition is SessionState.ANONYMOUS:
        if state is RefreshTokenState.EXPIRED:
            removed = token_store.sweep_expired(session, now=now)
            session.commit()
            logger.debug("Swept %d expired token rows", removed)
        logger.debug("Refresh rejected: %s token", state.value)
        raise AuthenticationFailure()

    return record.user_id


def _contain_reuse(incident: ReuseIncident, session: Session, client: ClientInfo) -> None:
    revoked = token_store.invalidate_all_for_subject(session, incident.subject_id)
    session.commit()
    logger.warning(
        "Refresh token reuse for user %s; revoked %d refresh tokens",
        incident.subject_id,
        revoked,
    )
    audit.log_token_reuse(incident.subject_id, client.ip, client.user_agent)


# ── Public service functions ───────────────────────────────────────────────

def register_user(
        name: str,
        email: str,
        password: str,
        session: Session,
        role: str = UserRole.USER.value,
) -> dict:
    """
    Creates a principal and dispatches a verification email.

    Raises:
      AppError(WEAK_PASSWORD, 400)     password policy violation
      AppError(DUPLICATE_EMAIL, 409)   email already registered

    Returns: {"user": {...}}. No tokens; the account must be verified first.
    """
    violation = check_password_strength(password)
    if violation is not None:
        raise _weak_password(violation)

    email = _normalize_email(email)
    if _find_user_by_email(email, session) is not None:
        raise AppError(
            ErrorCode.DUPLICATE_EMAIL,
            f"The email address '{email}' is already registered.",
            409,
            field="email",
        )

    user = User(
        name=name.strip(),
        email=email,
        password_hash=hash_password(password, rounds=_rounds()),
        role=UserRole(role),
    )
    session.add(user)
    session.flush()  # populate user.id before creating the verification token

    if not user.is_verified:
        raw_token = _mint_opaque_token(
            user.id,
            TokenKind.VERIFICATION,
            _utcnow() + current_app.config["VERIFICATION_TOKEN_EXPIRES"],
            session,
        )
        # Fire-and-forget: a full queue or a dead SMTP server never fails registration.
        if not notifier.send_verification(user.email, user.name, raw_token):
            logger.warning("Verification email for user %s was not queued", user.id)

    return {"user": _build_user_dict(user)}


def login_user(
        email: str,
        password: str,
        session: Session,
        client: ClientInfo,
) -> dict:
    """
    Validates credentials and issues an access + refresh token pair.

    Raises:
      AuthenticationFailure  unknown email or wrong password (indistinguishable)
      VerificationRequired   correct password, unverified email; no tokens issued

    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    user = _find_user_by_email(email, session)

    if user is None:
        # Same bcrypt cost as a real check so response time does not reveal
        # whether the email exists.
        verify_password(password, _dummy_hash())
        audit.log_login(None, client.ip, client.user_agent, False, "unknown email")
        raise AuthenticationFailure()

    if not verify_password(password, user.password_hash):
        audit.log_login(user.id, client.ip, client.user_agent, False, "wrong password")
        raise AuthenticationFailure()

    if not user.is_verified:
        audit.log_login(user.id, client.ip, client.user_agent, False, "email not verified")
        raise VerificationRequired()

    tokens = _issue_session(user, session, _utcnow())
    audit.log_login(user.id, client.ip, client.user_agent, True)

    return {
        "user": _build_user_dict(user),
        **tokens,
    }


def refresh_session(
        raw_refresh_token: str,
        session: Session,
        client: ClientInfo,
) -> dict:
    """
    Rotates a refresh token: the presented value is spent and a new
    access + refresh pair is returned.

    A value that was already used triggers reuse containment: every refresh
    token the principal owns is deleted, then the caller receives the same
    AuthenticationFailure as for any other bad token.

    Returns: {"access_token": "...", "refresh_token": "..."}
    """
    if not raw_refresh_token:
        audit.log_refresh(None, client.ip, client.user_agent, False, "no token presented")
        raise AuthenticationFailure()

    now = _utcnow()
    try:
        subject_id = _consume_refresh_token(raw_refresh_token, session, now)
    except ReuseIncident as incident:
        _contain_reuse(incident, session, client)
        audit.log_refresh(incident.subject_id, client.ip, client.user_agent, False, "token reuse")
        raise AuthenticationFailure()
    except AuthenticationFailure:
        audit.log_refresh(None, client.ip, client.user_agent, False, "unknown or expired token")
        raise

    user = session.get(User, subject_id)
    if user is None:
        audit.log_refresh(subject_id, client.ip, client.user_agent, False, "principal no longer exists")
        raise AuthenticationFailure()

    tokens = _issue_session(user, session, now)
    audit.log_refresh(user.id, client.ip, client.user_agent, True)
    return tokens


def logout_user(
        principal: AuthContext | None,
        raw_refresh_token: str | None,
        session: Session,
        client: ClientInfo,
) -> None:
    """
    Ends the caller's session. Always succeeds, with or without a session.

    The access token is blacklisted until it would have expired on its own
    (plus the clock-skew leeway), and never for less than REVOCATION_TTL.
    The refresh token record, when present, is deleted.
    """
    cfg = current_app.config
    subject_id = principal.subject_id if principal is not None else None

    if principal is not None:
        revoke_until = max(
            _utcnow() + cfg["REVOCATION_TTL"],
            principal.expires_at + cfg["JWT_CLOCK_SKEW"],
        )
        revocation_cache.add(principal.token_id, revoke_until)

    if raw_refresh_token:
        record = token_store.fetch_by_value(session, raw_refresh_token, TokenKind.REFRESH)
        if record is not None:
            subject_id = subject_id or record.user_id
            token_store.invalidate_one(session, raw_refresh_token)

    audit.log_logout(subject_id, client.ip, client.user_agent)


def authenticate(raw_access_token: str) -> AuthContext:
    """
    Per-request guard: verifies the bearer token and consults the
    revocation cache before any claim is trusted.

    Raises AuthenticationFailure for every cause; the cause is logged at DEBUG.
    """
    tid = token_id(raw_access_token)
    if revocation_cache.is_revoked(tid):
        logger.debug("Access token %s… rejected: revoked", tid[:12])
        raise AuthenticationFailure()

    try:
        claims = _codec().verify(raw_access_token)
    except InvalidAccessToken:
        raise AuthenticationFailure()

    return AuthContext(
        subject_id=claims.subject_id,
        role=claims.role,
        token_id=tid,
        expires_at=claims.expires_at,
    )


def get_current_user(user_id: str, session: Session) -> dict:
    """
    Returns the profile of the currently authenticated user.

    Raises:
      AppError(USER_NOT_FOUND, 404) if the principal was deleted after the
      access token was issued.
    """
    user = session.get(User, user_id)
    if user is None:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User {user_id} not found.",
            404,
        )
    return _build_user_dict(user)


def verify_email(raw_token: str, session: Session, client: ClientInfo) -> dict:
    """
    Consumes a verification token and marks the principal verified.

    Unknown, used, expired and wrong-kind tokens all raise the same
    AppError(TOKEN_INVALID, 400).
    """
    now = _utcnow()
    record = token_store.fetch_by_value(session, raw_token, TokenKind.VERIFICATION)
    user = _consume_one_time_token(record, raw_token, session, now)

    user.is_verified = True
    session.flush()
    audit.log_email_verified(user.id, client.ip, client.user_agent)
    return {"user": _build_user_dict(user)}


def request_password_reset(email: str, session: Session, client: ClientInfo) -> dict:
    """
    Issues a password-reset token if the email belongs to a principal.

    The response is identical whether or not the account exists.
    """
    user = _find_user_by_email(email, session)
    if user is not None:
        # Only the most recent reset link stays valid.
        token_store.invalidate_all_for_subject(session, user.id, TokenKind.PASSWORD_RESET)
        raw_token = _mint_opaque_token(
            user.id,
            TokenKind.PASSWORD_RESET,
            _utcnow() + current_app.config["PASSWORD_RESET_TOKEN_EXPIRES"],
            session,
        )
        notifier.send_password_reset(user.email, user.name, raw_token)
        audit.log_password_reset_requested(user.id, client.ip, client.user_agent)
    else:
        logger.debug("Password reset requested for an unknown email")

    return {"message": _RESET_REQUESTED_MESSAGE}


def reset_password(
        raw_token: str,
        new_password: str,
        session: Session,
        client: ClientInfo,
) -> dict:
    """
    Consumes a reset token, replaces the password hash and revokes every
    refresh token of the principal so that all sessions re-authenticate.

    Raises:
      AppError(WEAK_PASSWORD, 400)   the new password violates the policy
      AppError(TOKEN_INVALID, 400)   unknown, used or expired reset token
    """
    violation = check_password_strength(new_password)
    if violation is not None:
        raise _weak_password(violation)

    now = _utcnow()
    record = token_store.fetch_by_value(session, raw_token, TokenKind.PASSWORD_RESET)
    user = _consume_one_time_token(record, raw_token, session, now)

    user.password_hash = hash_password(new_password, rounds=_rounds())
    revoked = token_store.invalidate_all_for_subject(session, user.id, TokenKind.REFRESH)
    session.flush()

    logger.info("Password reset for user %s; revoked %d refresh tokens", user.id, revoked)
    audit.log_password_reset(user.id, client.ip, client.user_agent)
    return {"message": "Your password has been reset. Please log in again."}


def _consume_one_time_token(
        record: AuthToken | None,
        raw_token: str,
        session: Session,
        now: datetime,
) -> User:
    if record is None:
        raise _token_invalid()
    if token_store.as_utc(record.expires_at) <= now:
        token_store.sweep_expired(session, now=now)
        session.commit()
        raise _token_invalid()
    if record.used or not token_store.mark_used(session, raw_token):
        raise _token_invalid()

    user = session.get(User, record.user_id)
    if user is None:
        raise _token_invalid()
    return user


def ensure_admin(email: str, password: str, session: Session) -> tuple[dict, bool]:
    """
    Creates a verified admin principal unless one already exists for `email`.

    Returns (user dict, created). Raises AppError(WEAK_PASSWORD) when the
    configured password violates the policy.
    """
    existing = _find_user_by_email(email, session)
    if existing is not None:
        return _build_user_dict(existing), False

    violation = check_password_strength(password)
    if violation is not None:
        raise _weak_password(violation)

    user = User(
        name="Administrator",
        email=_normalize_email(email),
        password_hash=hash_password(password, rounds=_rounds()),
        role=UserRole.ADMIN,
        is_verified=True,
    )
    session.add(user)
    session.flush()
    logger.info("Admin account %s created", user.id)
    return _build_user_dict(user), True
