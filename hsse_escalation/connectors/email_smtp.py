"""SMTP email sender for escalation notifications."""

import asyncio
import smtplib
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional

from hsse_escalation.config import settings
from hsse_escalation.interfaces import SendResult
from hsse_escalation.models.rule import NotificationChannel
from hsse_escalation.utils.logging import get_logger
from hsse_escalation.utils.validation import mask_contact

logger = get_logger(__name__)


class SMTPEmailSender:
    """Email channel sender. smtplib runs in a worker thread."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
    ):
        self.host = host if host is not None else settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.username = username if username is not None else settings.SMTP_USER
        self.password = password if password is not None else settings.SMTP_PASS
        self.use_tls = settings.SMTP_USE_TLS if use_tls is None else use_tls
        self.from_email = settings.SMTP_FROM
        self.from_name = settings.SMTP_FROM_NAME

    @property
    def is_configured(self) -> bool:
        return bool(self.host)

    async def send(
        self,
        channel: NotificationChannel,
        recipient_contact: str,
        subject: str,
        content: str,
    ) -> SendResult:
        """Send one email."""
        if not self.is_configured:
            return SendResult(accepted=False, error="SMTP is not configured")

        msg = MIMEText(content, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_email))
        msg["To"] = recipient_contact
        msg["Message-ID"] = make_msgid(domain=self.from_email.partition("@")[2] or None)
        msg["X-Mailer"] = "HSSE Escalation Service"

        try:
            await asyncio.to_thread(self._deliver, recipient_contact, msg.as_string())

        except smtplib.SMTPRecipientsRefused as e:
            logger.error("SMTP recipient refused", to=mask_contact(recipient_contact), error=str(e))
            return SendResult(accepted=False, error=f"Recipient refused: {recipient_contact}")
        except smtplib.SMTPResponseException as e:
            retryable = 400 <= e.smtp_code < 500
            logger.error(
                "SMTP error sending email",
                to=mask_contact(recipient_contact),
                smtp_code=e.smtp_code,
                error=str(e)
            )
            message = e.smtp_error.decode("utf-8", "replace") if isinstance(e.smtp_error, bytes) else str(e.smtp_error)
            return SendResult(accepted=False, error=f"SMTP {e.smtp_code}: {message}", retryable=retryable)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP connection error", to=mask_contact(recipient_contact), error=str(e))
            return SendResult(accepted=False, error=f"SMTP connection error: {e}", retryable=True)

        logger.info(
            "Email sent successfully",
            to=mask_contact(recipient_contact),
            subject=subject[:50]
        )
        return SendResult(accepted=True, provider_message_id=msg["Message-ID"])

    def _deliver(self, recipient: str, message: str) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=settings.CHANNEL_SEND_TIMEOUT_SECONDS) as server:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password)
            server.sendmail(self.from_email, [recipient], message)

    async def check_connection(self) -> bool:
        """Check SMTP connection."""
        if not self.is_configured:
            return False

        def _noop_check() -> None:
            with smtplib.SMTP(self.host, self.port, timeout=settings.CHANNEL_SEND_TIMEOUT_SECONDS) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)

        try:
            await asyncio.to_thread(_noop_check)
            logger.info("SMTP connection test successful")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP connection test failed", error=str(e))
            return False
