"""Channel senders and incident API connectors."""

from .email_smtp import SMTPEmailSender
from .incident_api import IncidentApiClient
from .twilio_sms import TwilioSMSSender
from .webhook import WebhookChannelSender

__all__ = [
    "SMTPEmailSender",
    "IncidentApiClient",
    "TwilioSMSSender",
    "WebhookChannelSender",
]
