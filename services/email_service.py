"""Mail Transport Adapter.

Picks an SMTP provider from the environment on every send:

  SENDGRID_USER, SENDGRID_PASS  -> smtp.sendgrid.net:587 (STARTTLS)
  EMAIL_USER, EMAIL_PASS        -> smtp.gmail.com:465 (SSL)

Every attempt is appended to a plain-text delivery log (EMAIL_LOG_PATH,
default logs/complaints.log). Sends are retried with exponential backoff.
"""
import logging
import os
import smtplib
import time
from datetime import datetime, timezone
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Callable, Dict, Optional

from services.errors import ConfigurationError, DeliveryError
from utils.validators import escape

logger = logging.getLogger(__name__)

DEFAULT_FROM_NAME = "Smart Civic Issue Reporter"
DEFAULT_LOG_PATH = os.path.join("logs", "complaints.log")
BACKOFF_BASE_SECONDS = 0.5
SMTP_TIMEOUT = 20


class SMTPTransport:
    """One provider configuration; opens a fresh connection per message."""

    def __init__(self, provider: str, host: str, port: int, user: str, password: str, use_ssl: bool):
        self.provider = provider
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_ssl = use_ssl

    def _connect(self) -> smtplib.SMTP:
        if self.use_ssl:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=SMTP_TIMEOUT)
        server = smtplib.SMTP(self.host, self.port, timeout=SMTP_TIMEOUT)
        server.starttls()
        return server

    def send_mail(self, options: Dict) -> Dict:
        msg = MIMEText(options["html"], "html")
        msg["Subject"] = options["subject"]
        msg["From"] = options["from"]
        msg["To"] = options["to"]
        if options.get("cc"):
            msg["Cc"] = options["cc"]
        msg["Message-ID"] = make_msgid(domain=self.host)
        recipients = [options["to"]] + ([options["cc"]] if options.get("cc") else [])
        with self._connect() as server:
            server.login(self.user, self.password)
            refused = server.send_message(msg, to_addrs=recipients)
        return {
            "message_id": msg["Message-ID"],
            "accepted": [r for r in recipients if r not in refused],
            "provider": self.provider,
        }

    def verify(self):
        with self._connect() as server:
            server.login(self.user, self.password)


class EmailService:
    def __init__(self, transport_factory: Optional[Callable[[], SMTPTransport]] = None,
                 sleep: Callable[[float], None] = time.sleep, log_path: Optional[str] = None):
        self._transport_factory = transport_factory
        self._sleep = sleep
        self.log_path = log_path or os.getenv("EMAIL_LOG_PATH", DEFAULT_LOG_PATH)

    # --- provider selection ---
    @staticmethod
    def create_transport() -> SMTPTransport:
        sg_user = os.getenv("SENDGRID_USER")
        sg_pass = os.getenv("SENDGRID_PASS")
        if sg_user and sg_pass:
            return SMTPTransport("sendgrid", "smtp.sendgrid.net", 587, sg_user, sg_pass, use_ssl=False)

        user = os.getenv("EMAIL_USER")
        password = os.getenv("EMAIL_PASS")
        if not user or not password:
            raise ConfigurationError("Missing EMAIL_USER or EMAIL_PASS in environment")
        return SMTPTransport("gmail", "smtp.gmail.com", 465, user, password, use_ssl=True)

    def _transport(self) -> SMTPTransport:
        if self._transport_factory is not None:
            return self._transport_factory()
        return self.create_transport()

    @property
    def sender(self) -> str:
        return os.getenv("EMAIL_USER") or "noreply@example.com"

    def from_header(self, from_name: Optional[str] = None) -> str:
        name = from_name or os.getenv("EMAIL_FROM_NAME") or DEFAULT_FROM_NAME
        return f"{name} <{self.sender}>"

    # --- delivery log ---
    def log_email(self, entry: str):
        try:
            directory = os.path.dirname(self.log_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(f"{datetime.now(timezone.utc).isoformat()} - {entry}\n")
        except OSError as e:
            logger.error(f"Failed to log email: {e}")

    # --- sending ---
    def send_with_retries(self, options: Dict, max_attempts: int = 3) -> Dict:
        transport = self._transport()
        last_err = None
        for attempt in range(1, max_attempts + 1):
            try:
                info = transport.send_mail(options)
                self.log_email(
                    f'SENT to {options["to"]} subject="{options["subject"]}" '
                    f'attempt={attempt} messageId={info.get("message_id")}'
                )
                return info
            except Exception as e:
                last_err = e
                self.log_email(
                    f'FAILED to {options["to"]} subject="{options["subject"]}" '
                    f'attempt={attempt} error={e}'
                )
                if attempt < max_attempts:
                    self._sleep(BACKOFF_BASE_SECONDS * (2 ** attempt))
        raise DeliveryError(
            f"Failed to send email after {max_attempts} attempts. Last error: {last_err}"
        )

    def send_complaint_email(self, to: str, subject: str, html: str, cc: Optional[str] = None,
                             from_name: Optional[str] = None, max_attempts: int = 3) -> Dict:
        options = {
            "from": self.from_header(from_name),
            "to": to,
            "cc": cc or None,
            "subject": subject,
            "html": html,
        }
        return self.send_with_retries(options, max_attempts=max_attempts)

    def send_user_ack(self, user_email: str, user_name: Optional[str], reference_id: str,
                      category: str, location_link: Optional[str] = None) -> Dict:
        """Acknowledgement to the citizen. Two attempts only; failure is re-raised."""
        subject = f"[CIVIC EYE] Complaint Received: {reference_id}"
        location_html = (
            f'<p>Location: <a href="{escape(location_link)}">Open in Maps</a></p>' if location_link else ""
        )
        html = (
            '<div style="font-family: Arial, sans-serif;">'
            f"<p>Dear {escape(user_name) or 'Citizen'},</p>"
            f"<p>Thank you for reporting a {escape(category)} issue. "
            f"Your complaint reference ID is <strong>{escape(reference_id)}</strong>.</p>"
            f"{location_html}"
            "<p>We will notify you on status updates.</p>"
            "<p>Regards,<br/>Civic Eye Team</p>"
            "</div>"
        )
        options = {"from": self.from_header(), "to": user_email, "cc": None,
                   "subject": subject, "html": html}
        try:
            info = self.send_with_retries(options, max_attempts=2)
        except Exception as e:
            self.log_email(f"ACK_ERROR to {user_email} ref={reference_id} error={e}")
            raise
        self.log_email(f"ACK_SENT to {user_email} ref={reference_id} messageId={info.get('message_id')}")
        return info

    def send_otp_email(self, to_email: str, code: str, resend: bool = False) -> Dict:
        subject = "Your CivicEye login code" + (" (resend)" if resend else "")
        html = (
            '<div style="font-family: Arial, sans-serif;">'
            f"<p>Your one-time login code is <strong>{code}</strong>. It expires in 5 minutes.</p>"
            "<p>If you did not request this, ignore this email.</p>"
            "</div>"
        )
        return self.send_complaint_email(to=to_email, subject=subject, html=html)

    def test_connection(self) -> str:
        """Attempt a lightweight SMTP login to verify credentials."""
        try:
            transport = self._transport()
        except ConfigurationError as e:
            return f"not configured: {e}"
        try:
            transport.verify()
            return "ok"
        except Exception as e:
            return f"failed: {e}"
