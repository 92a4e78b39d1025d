"""Tests for the SMTP transport and credential encryption."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from notification_engine.config import Settings
from notification_engine.notifications.exceptions import TransportError
from notification_engine.notifications.transport import SmtpTransport, decrypt_value, encrypt_value


def _settings(**overrides):
    values = {
        "database_url": "sqlite://",
        "secret_key": "unit-test-secret",
        "smtp_host": "smtp.example.com",
        "smtp_port": 587,
        "smtp_user": "noreply@example.com",
        "smtp_password": "plain-password",
        "email_from_name": "Training Portal",
    }
    values.update(overrides)
    return Settings(**values)


class TestEncryptDecrypt:
    def test_roundtrip(self):
        encrypted = encrypt_value("my-secret-smtp-password", "k1")
        assert encrypted != "my-secret-smtp-password"
        assert decrypt_value(encrypted, "k1") == "my-secret-smtp-password"

    def test_encrypted_starts_with_gAAAAA(self):
        assert encrypt_value("test", "k1").startswith("gAAAAA")

    def test_wrong_key_fails(self):
        from cryptography.fernet import InvalidToken

        with pytest.raises(InvalidToken):
            decrypt_value(encrypt_value("test", "k1"), "k2")


class TestBuildMessage:
    def test_headers(self):
        msg = SmtpTransport(_settings(email_reply_to="help@example.com")).build_message(
            "ada@example.com", "Reminder: Onboarding", "<p>hi</p>"
        )
        assert msg["To"] == "ada@example.com"
        assert msg["Subject"] == "Reminder: Onboarding"
        assert msg["From"] == "Training Portal <noreply@example.com>"
        assert msg["Reply-To"] == "help@example.com"
        assert msg["Message-ID"].endswith("@example.com>")
        parts = msg.get_payload()
        assert [p.get_content_type() for p in parts] == ["text/plain", "text/html"]


class TestSend:
    def test_unconfigured_raises(self):
        with pytest.raises(TransportError, match="not configured"):
            SmtpTransport(_settings(smtp_user="", smtp_password="")).send("a@example.com", "s", "<p></p>")

    @patch("notification_engine.notifications.transport.smtplib.SMTP")
    def test_sends_with_tls_and_timeout(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value.__enter__.return_value = server

        SmtpTransport(_settings()).send("ada@example.com", "Subject", "<p>body</p>")

        mock_smtp.assert_called_once_with("smtp.example.com", 587, timeout=6.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("noreply@example.com", "plain-password")
        server.send_message.assert_called_once()
        assert server.send_message.call_args.kwargs["to_addrs"] == ["ada@example.com"]

    @patch("notification_engine.notifications.transport.smtplib.SMTP")
    def test_encrypted_password_is_decrypted(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value.__enter__.return_value = server
        token = encrypt_value("real-password", "unit-test-secret")

        SmtpTransport(_settings(smtp_password=token)).send("ada@example.com", "Subject", "<p>body</p>")

        server.login.assert_called_once_with("noreply@example.com", "real-password")

    @patch("notification_engine.notifications.transport.smtplib.SMTP")
    def test_timeout_is_transport_error(self, mock_smtp):
        mock_smtp.side_effect = TimeoutError("timed out")
        with pytest.raises(TransportError, match="timed out after 6.0s"):
            SmtpTransport(_settings()).send("ada@example.com", "Subject", "<p>body</p>")

    @patch("notification_engine.notifications.transport.smtplib.SMTP")
    def test_refused_recipient_is_transport_error(self, mock_smtp):
        server = MagicMock()
        server.send_message.side_effect = smtplib.SMTPRecipientsRefused({"ada@example.com": (550, b"no such user")})
        mock_smtp.return_value.__enter__.return_value = server
        with pytest.raises(TransportError):
            SmtpTransport(_settings()).send("ada@example.com", "Subject", "<p>body</p>")

    @patch("notification_engine.notifications.transport.smtplib.SMTP")
    def test_connection_refused_is_transport_error(self, mock_smtp):
        mock_smtp.side_effect = ConnectionRefusedError(111, "Connection refused")
        with pytest.raises(TransportError, match="Connection refused"):
            SmtpTransport(_settings()).send("ada@example.com", "Subject", "<p>body</p>")
