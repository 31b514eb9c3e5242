"""
security/audit.py: structured emission of security-relevant events.

Events are write-once records sent to the `backend.security.audit` logger
at WARNING level. The event fields ride on the log record as extras, so
the JSON formatter (logging_config.py) renders them as top-level keys. The
sink keeps nothing in memory and offers no query interface.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone


class EventType:
    LOGIN_SUCCESS            = "LOGIN_SUCCESS"
    LOGIN_FAILED             = "LOGIN_FAILED"
    REFRESH_SUCCESS          = "REFRESH_SUCCESS"
    REFRESH_FAILED           = "REFRESH_FAILED"
    TOKEN_REUSE              = "TOKEN_REUSE"
    RATE_LIMIT               = "RATE_LIMIT"
    LOGOUT                   = "LOGOUT"
    EMAIL_VERIFIED           = "EMAIL_VERIFIED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET           = "PASSWORD_RESET"


@dataclass(frozen=True)
class SecurityEvent:
    type: str
    ip: str
    user_id: str | None = None
    user_agent: str | None = None
    details: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


class AuditSink:

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("backend.security.audit")

    def emit(self, event: SecurityEvent) -> SecurityEvent:
        self._logger.warning(
            "[SECURITY] %s | user=%s | ip=%s | %s",
            event.type,
            event.user_id or "-",
            event.ip,
            event.details or "",
            extra={"security_event": event.to_dict()},
        )
        return event

    def log_event(
            self,
            event_type: str,
            ip: str,
            user_id: str | None = None,
            user_agent: str | None = None,
            details: str | None = None,
    ) -> SecurityEvent:
        return self.emit(SecurityEvent(
            type=event_type,
            ip=ip,
            user_id=user_id,
            user_agent=user_agent,
            details=details,
        ))

    def log_login(self, user_id, ip, user_agent, success: bool, details=None) -> SecurityEvent:
        event_type = EventType.LOGIN_SUCCESS if success else EventType.LOGIN_FAILED
        return self.log_event(event_type, ip, user_id, user_agent, details)

    def log_refresh(self, user_id, ip, user_agent, success: bool, details=None) -> SecurityEvent:
        event_type = EventType.REFRESH_SUCCESS if success else EventType.REFRESH_FAILED
        return self.log_event(event_type, ip, user_id, user_agent, details)

    def log_token_reuse(self, user_id, ip, user_agent) -> SecurityEvent:
        return self.log_event(
            EventType.TOKEN_REUSE, ip, user_id, user_agent,
            "Refresh token presented again after use; all sessions revoked",
        )

    def log_rate_limit(self, operation: str, ip: str) -> SecurityEvent:
        return self.log_event(EventType.RATE_LIMIT, ip, details=f"operation={operation}")

    def log_logout(self, user_id, ip, user_agent) -> SecurityEvent:
        return self.log_event(EventType.LOGOUT, ip, user_id, user_agent)

    def log_email_verified(self, user_id, ip, user_agent) -> SecurityEvent:
        return self.log_event(EventType.EMAIL_VERIFIED, ip, user_id, user_agent)

    def log_password_reset_requested(self, user_id, ip, user_agent) -> SecurityEvent:
        return self.log_event(EventType.PASSWORD_RESET_REQUESTED, ip, user_id, user_agent)

    def log_password_reset(self, user_id, ip, user_agent) -> SecurityEvent:
        return self.log_event(EventType.PASSWORD_RESET, ip, user_id, user_agent)
