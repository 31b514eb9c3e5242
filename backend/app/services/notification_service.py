"""
services/notification_service.py: outbound verification / reset mail.

send_verification() and send_password_reset() only enqueue and return. A
small pool of worker threads drains a BOUNDED queue and talks SMTP, so a
slow or failing mail server can never block or fail the request that
triggered the message. When the queue is full the message is dropped with
a warning. Delivery errors are logged and never propagated.

Without SMTP_HOST configured the worker logs a simulated delivery instead
(development mode).
"""

from __future__ import annotations

import html
import logging
import queue
import smtplib
import ssl
import threading
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html_body: str
    text_body: str


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Notifier:

    def __init__(
            self,
            smtp_host: str = "",
            smtp_port: int = 587,
            smtp_user: str = "",
            smtp_password: str = "",
            smtp_use_tls: bool = True,
            from_email: str = "noreply@localhost",
            from_name: str = "eSimulate",
            app_url: str = "http://localhost:3000",
            queue_size: int = 100,
            workers: int = 2,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email
        self.from_name = from_name
        self.app_url = app_url.rstrip("/")
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._worker_count = max(1, workers)
        self._workers: list[threading.Thread] = []
        self._start_lock = threading.Lock()

    def init_app(self, app) -> None:
        cfg = app.config
        self.smtp_host = cfg.get("SMTP_HOST", "")
        self.smtp_port = cfg.get("SMTP_PORT", 587)
        self.smtp_user = cfg.get("SMTP_USER", "")
        self.smtp_password = cfg.get("SMTP_PASSWORD", "")
        self.smtp_use_tls = cfg.get("SMTP_USE_TLS", True)
        self.from_email = cfg.get("MAIL_FROM_EMAIL", self.from_email)
        self.from_name = cfg.get("MAIL_FROM_NAME", self.from_name)
        self.app_url = cfg.get("APP_URL", self.app_url).rstrip("/")
        self._queue = queue.Queue(maxsize=cfg.get("NOTIFIER_QUEUE_SIZE", 100))
        self._worker_count = max(1, cfg.get("NOTIFIER_WORKERS", 2))
        app.extensions.setdefault("security_tasks", []).append(self)

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    # ── Public API (non-blocking) ──────────────────────────────────────────

    def send_verification(self, to: str, name: str, token: str) -> bool:
        url = f"{self.app_url}/#/verify-email?token={token}"
        return self.submit(EmailMessage(
            to=to,
            subject="Confirm your email address",
            html_body=(
                f"<p>Hello {html.escape(name)},</p>"
                f"<p>Confirm your email address by opening the link below. "
                f"It is valid for 24 hours.</p>"
                f'<p><a href="{html.escape(url)}">Verify email</a></p>'
            ),
            text_body=(
                f"Hello {name},\n\nConfirm your email address (valid for 24 hours):\n{url}\n"
            ),
        ))

    def send_password_reset(self, to: str, name: str, token: str) -> bool:
        url = f"{self.app_url}/#/reset-password?token={token}"
        return self.submit(EmailMessage(
            to=to,
            subject="Reset your password",
            html_body=(
                f"<p>Hello {html.escape(name)},</p>"
                f"<p>Someone asked to reset your password. The link below is valid "
                f"for 1 hour. Ignore this message if it was not you.</p>"
                f'<p><a href="{html.escape(url)}">Reset password</a></p>'
            ),
            text_body=(
                f"Hello {name},\n\nReset your password (valid for 1 hour):\n{url}\n"
            ),
        ))

    def submit(self, message: EmailMessage) -> bool:
        """Queues a message. Returns False (and logs) when the queue is full."""
        self._ensure_started()
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            logger.warning(
                "Notification queue full; dropping '%s' for %s",
                message.subject,
                _redact_email(message.to),
            )
            return False
        return True

    def stop(self, timeout: float = 5.0) -> None:
        with self._start_lock:
            workers, self._workers = self._workers, []
        for _ in workers:
            try:
                self._queue.put(_STOP, timeout=timeout)
            except queue.Full:
                break
        for worker in workers:
            worker.join(timeout)

    # ── Worker side ────────────────────────────────────────────────────────

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._workers:
                return
            for index in range(self._worker_count):
                worker = threading.Thread(
                    target=self._drain,
                    name=f"notifier-{index}",
                    daemon=True,
                )
                worker.start()
                self._workers.append(worker)

    def _drain(self) -> None:
        while True:
            message = self._queue.get()
            try:
                if message is _STOP:
                    return
                self.deliver(message)
            finally:
                self._queue.task_done()

    def deliver(self, message: EmailMessage) -> bool:
        """Synchronous SMTP delivery. Never raises."""
        if not self.is_configured:
            logger.info(
                "[EMAIL SIMULATED] to=%s subject=%s",
                _redact_email(message.to),
                message.subject,
            )
            return True

        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = f"{self.from_name} <{self.from_email}>"
        mime["To"] = message.to
        mime.attach(MIMEText(message.text_body, "plain"))
        mime.attach(MIMEText(message.html_body, "html"))

        context = ssl.create_default_context()
        try:
            # Port 465 speaks TLS from the first byte; everything else upgrades.
            if self.smtp_port == 465:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=15) as server:
                    self._login_and_send(server, message.to, mime)
            else:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as server:
                    if self.smtp_use_tls:
                        server.starttls(context=context)
                    self._login_and_send(server, message.to, mime)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("SMTP authentication failed for %s: %s", self.smtp_host, exc)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "Email to %s failed (%s): %s",
                _redact_email(message.to),
                type(exc).__name__,
                exc,
            )
            return False

        logger.info("Email sent to %s: %s", _redact_email(message.to), message.subject)
        return True

    def _login_and_send(self, server: smtplib.SMTP, to: str, mime: MIMEMultipart) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        server.sendmail(self.from_email, to, mime.as_string())
