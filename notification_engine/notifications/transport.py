"""SMTP transport with encrypted credentials.

SMTP password may be stored encrypted using Fernet (AES-128-CBC) derived from SECRET_KEY.
Every send is bounded by a socket timeout; a timeout is reported as a failed send.
"""

import base64
import hashlib
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from ..config import Settings, settings
from .exceptions import TransportError

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def send(self, to: str, subject: str, html_body: str) -> None:
        """Deliver one message. Raises TransportError on any failure."""
        ...


# ── Credential encryption ─────────────────────────────────────────────


def _derive_fernet_key(secret: str) -> bytes:
    """Derive a Fernet key from the app SECRET_KEY using SHA-256."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_value(plaintext: str, secret: str | None = None) -> str:
    """Encrypt a string value using the app's SECRET_KEY."""
    f = Fernet(_derive_fernet_key(secret or settings.secret_key))
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, secret: str | None = None) -> str:
    """Decrypt a string value using the app's SECRET_KEY."""
    f = Fernet(_derive_fernet_key(secret or settings.secret_key))
    return f.decrypt(ciphertext.encode()).decode()


# ── SMTP ──────────────────────────────────────────────────────────────


class SmtpTransport:
    def __init__(self, config: Settings = settings) -> None:
        self.config = config

    def _password(self) -> str:
        password = self.config.smtp_password
        # Fernet tokens start with 'gAAAAA'
        if password.startswith("gAAAAA"):
            try:
                return decrypt_value(password, self.config.secret_key)
            except InvalidToken as exc:
                raise TransportError("SMTP password cannot be decrypted with SECRET_KEY") from exc
        return password

    def build_message(self, to: str, subject: str, html_body: str) -> MIMEMultipart:
        """Build a multipart message with the anti-spam headers mail providers expect."""
        cfg = self.config
        sender = cfg.sender_address
        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((cfg.email_from_name, sender))
        msg["To"] = to
        msg["Reply-To"] = cfg.reply_to_address
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid(domain=sender.split("@")[-1] if "@" in sender else "local")
        msg["Subject"] = subject
        # Plain-text part kept for spam score
        msg.attach(MIMEText(f"{subject}\n\nOpen this message in an HTML-capable client for details.\n", "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg

    def send(self, to: str, subject: str, html_body: str) -> None:
        cfg = self.config
        if not cfg.smtp_user or not cfg.smtp_password:
            raise TransportError("SMTP not configured")

        msg = self.build_message(to, subject, html_body)
        try:
            with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.smtp_timeout_seconds) as server:
                server.ehlo()
                if cfg.smtp_use_tls:
                    server.starttls()
                    server.ehlo()
                server.login(cfg.smtp_user, self._password())
                server.send_message(msg, from_addr=cfg.smtp_user, to_addrs=[to])
        except TimeoutError as exc:
            raise TransportError(f"SMTP timed out after {cfg.smtp_timeout_seconds}s") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
        logger.debug("SMTP accepted message for %s", to)
