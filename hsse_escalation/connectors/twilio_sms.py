"""Twilio SMS sender for escalation alerts."""

import asyncio
from typing import Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from hsse_escalation.config import settings
from hsse_escalation.interfaces import SendResult
from hsse_escalation.models.rule import NotificationChannel
from hsse_escalation.utils.logging import get_logger
from hsse_escalation.utils.validation import mask_contact, validate_phone

logger = get_logger(__name__)

# SMS body limit with buffer
MAX_SMS_LENGTH = 1600


class TwilioSMSSender:
    """SMS channel sender backed by the Twilio REST client."""

    def __init__(self, client: Optional[Client] = None, from_number: Optional[str] = None):
        self.account_sid = settings.TWILIO_ACCOUNT_SID
        self.from_number = from_number or settings.TWILIO_FROM_NUMBER
        self.status_callback = settings.TWILIO_STATUS_CALLBACK_URL

        if client is not None:
            self.client = client
        elif self.account_sid and settings.TWILIO_AUTH_TOKEN:
            self.client = Client(self.account_sid, settings.TWILIO_AUTH_TOKEN)
        else:
            self.client = None
            logger.warning("Twilio credentials not configured")

    async def send(
        self,
        channel: NotificationChannel,
        recipient_contact: str,
        subject: str,
        content: str,
    ) -> SendResult:
        """Send one SMS. The subject is not part of the message body."""
        if not settings.ENABLE_SMS_ALERTS:
            return SendResult(accepted=False, error="SMS alerts are disabled")
        if self.client is None:
            return SendResult(accepted=False, error="Twilio client not initialized")
        if not validate_phone(recipient_contact):
            return SendResult(accepted=False, error=f"Invalid phone number: {mask_contact(recipient_contact)}")

        kwargs = {
            "body": content[:MAX_SMS_LENGTH],
            "from_": self.from_number,
            "to": recipient_contact,
        }
        if self.status_callback:
            kwargs["status_callback"] = self.status_callback

        try:
            message = await asyncio.to_thread(self.client.messages.create, **kwargs)

        except TwilioRestException as e:
            retryable = e.status == 429 or e.status >= 500
            logger.error(
                "Twilio error sending SMS",
                to_number=mask_contact(recipient_contact),
                http_status=e.status,
                error_code=e.code,
                error=e.msg
            )
            return SendResult(accepted=False, error=f"Twilio {e.code or e.status}: {e.msg}", retryable=retryable)
        except TwilioException as e:
            logger.error("Twilio client error", to_number=mask_contact(recipient_contact), error=str(e))
            return SendResult(accepted=False, error=f"Twilio error: {e}", retryable=True)

        logger.info(
            "SMS sent successfully",
            to_number=mask_contact(recipient_contact),
            message_sid=message.sid,
            message_length=len(content)
        )
        return SendResult(accepted=True, provider_message_id=message.sid)

    async def check_connection(self) -> bool:
        """Check Twilio connection by validating credentials."""
        if self.client is None:
            logger.error("Twilio client not initialized")
            return False

        try:
            account = await asyncio.to_thread(self.client.api.accounts(self.account_sid).fetch)
            logger.info(
                "Twilio connection test successful",
                account_sid=account.sid,
                status=account.status
            )
            return True

        except TwilioException as e:
            logger.error(
                "Twilio connection test failed",
                error_code=getattr(e, 'code', None),
                error=str(e)
            )
            return False
