"""
tests/unit/test_notifier.py: services/notification_service.py.

SMTP is always mocked; nothing leaves the process.
"""

from __future__ import annotations

import logging
import smtplib
import threading
from unittest.mock import patch

from backend.app.services.notification_service import EmailMessage, Notifier, _redact_email

MESSAGE = EmailMessage(
    to="alice@example.com",
    subject="Hello",
    html_body="<p>hi</p>",
    text_body="hi",
)


def _smtp_notifier(port: int = 587) -> Notifier:
    return Notifier(
        smtp_host="smtp.example.com",
        smtp_port=port,
        smtp_user="mailer",
        smtp_password="secret",
        from_email="noreply@example.com",
        app_url="https://app.example.com/",
    )


class TestRedaction:

    def test_keeps_domain_and_two_characters(self):
        assert _redact_email("alice@example.com") == "al***@example.com"

    def test_not_an_address(self):
        assert _redact_email("nonsense") == "redacted"


class TestDeliver:

    def test_unconfigured_delivery_is_simulated(self, caplog):
        notifier = Notifier()
        with caplog.at_level(logging.INFO, logger="backend.app.services.notification_service"):
            assert notifier.deliver(MESSAGE) is True
        assert "[EMAIL SIMULATED]" in caplog.text
        assert "alice@example.com" not in caplog.text

    def test_starttls_on_submission_port(self):
        notifier = _smtp_notifier(587)
        with patch("smtplib.SMTP") as smtp_cls:
            assert notifier.deliver(MESSAGE) is True

        server = smtp_cls.return_value.__enter__.return_value
        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=15)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        from_addr, to_addr, body = server.sendmail.call_args.args
        assert (from_addr, to_addr) == ("noreply@example.com", "alice@example.com")
        assert "Subject: Hello" in body

    def test_implicit_tls_on_port_465(self):
        notifier = _smtp_notifier(465)
        with patch("smtplib.SMTP_SSL") as ssl_cls, patch("smtplib.SMTP") as plain_cls:
            assert notifier.deliver(MESSAGE) is True

        ssl_cls.assert_called_once()
        plain_cls.assert_not_called()

    def test_smtp_failure_is_logged_not_raised(self, caplog):
        notifier = _smtp_notifier(587)
        with patch("smtplib.SMTP", side_effect=OSError("connection refused")):
            with caplog.at_level(logging.ERROR, logger="backend.app.services.notification_service"):
                assert notifier.deliver(MESSAGE) is False
        assert "OSError" in caplog.text

    def test_authentication_failure_is_logged_not_raised(self):
        notifier = _smtp_notifier(587)
        with patch("smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
            assert notifier.deliver(MESSAGE) is False


class TestQueue:

    def test_links_point_at_the_frontend(self):
        notifier = _smtp_notifier()
        with patch.object(Notifier, "submit", return_value=True) as submit:
            notifier.send_verification("alice@example.com", "Alice", "tok123")
            notifier.send_password_reset("alice@example.com", "Alice", "tok456")

        verification, reset = (c.args[0] for c in submit.call_args_list)
        assert "https://app.example.com/#/verify-email?token=tok123" in verification.text_body
        assert "https://app.example.com/#/reset-password?token=tok456" in reset.text_body

    def test_name_is_escaped_in_html_body(self):
        notifier = _smtp_notifier()
        name = '<a href="https://evil.example">Click</a>'
        with patch.object(Notifier, "submit", return_value=True) as submit:
            notifier.send_verification("alice@example.com", name, "tok123")
            notifier.send_password_reset("alice@example.com", name, "tok456")

        for call in submit.call_args_list:
            message = call.args[0]
            assert "evil.example" in message.html_body
            assert '<a href="https://evil.example">' not in message.html_body
            assert "&lt;a href=&quot;https://evil.example&quot;&gt;" in message.html_body

    def test_worker_delivers_queued_message(self):
        notifier = Notifier(workers=1)
        delivered = threading.Event()
        with patch.object(Notifier, "deliver", side_effect=lambda m: delivered.set()):
            assert notifier.submit(MESSAGE) is True
            assert delivered.wait(2)
            notifier.stop()

    def test_full_queue_drops_message(self, caplog):
        notifier = Notifier(queue_size=1, workers=1)
        release = threading.Event()
        picked_up = threading.Event()

        def slow_deliver(message):
            picked_up.set()
            release.wait(2)
            return True

        with patch.object(Notifier, "deliver", side_effect=slow_deliver):
            assert notifier.submit(MESSAGE) is True
            assert picked_up.wait(2)
            # Worker is busy; one slot in the queue, then full.
            assert notifier.submit(MESSAGE) is True
            with caplog.at_level(logging.WARNING, logger="backend.app.services.notification_service"):
                assert notifier.submit(MESSAGE) is False
            release.set()
            notifier.stop()

        assert "Notification queue full" in caplog.text

    def test_stop_without_workers_is_a_noop(self):
        Notifier().stop()
