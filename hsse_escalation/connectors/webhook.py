"""HTTP webhook sender for push and in-app notifications."""

from time import perf_counter
from typing import Any, Dict, Optional

import httpx

from hsse_escalation.config import settings
from hsse_escalation.interfaces import SendResult
from hsse_escalation.models.rule import NotificationChannel
from hsse_escalation.utils.logging import get_logger, log_external_api_call

logger = get_logger(__name__)


class WebhookChannelSender:
    """Posts notifications to a push gateway or the host application.

    5xx and 429 responses are transient; other 4xx responses are permanent.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        service_name: str = "webhook",
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.service_name = service_name
        self.timeout = timeout or settings.CHANNEL_SEND_TIMEOUT_SECONDS
        self.transport = transport

    @classmethod
    def for_push(cls, **kwargs: Any) -> "WebhookChannelSender":
        return cls(settings.PUSH_GATEWAY_URL, settings.PUSH_API_KEY, service_name="push_gateway", **kwargs)

    @classmethod
    def for_in_app(cls, **kwargs: Any) -> "WebhookChannelSender":
        return cls(settings.IN_APP_NOTIFY_URL, settings.IN_APP_API_KEY, service_name="in_app", **kwargs)

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def send(
        self,
        channel: NotificationChannel,
        recipient_contact: str,
        subject: str,
        content: str,
    ) -> SendResult:
        if not self.is_configured:
            return SendResult(accepted=False, error=f"{self.service_name} endpoint is not configured")

        payload = {
            "channel": channel.value,
            "recipient": recipient_contact,
            "title": subject,
            "body": content,
        }

        started = perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            return self._failed("send", started, f"{self.service_name} request timed out", True, e)
        except httpx.TransportError as e:
            return self._failed("send", started, f"{self.service_name} unreachable: {e}", True, e)

        duration_ms = (perf_counter() - started) * 1000
        status = response.status_code
        if status >= 400:
            retryable = status == 429 or status >= 500
            log_external_api_call(
                logger, self.service_name, "send", False, duration_ms,
                status_code=status, channel=channel.value
            )
            return SendResult(
                accepted=False,
                error=f"{self.service_name} returned HTTP {status}: {response.text[:200]}",
                retryable=retryable,
            )

        log_external_api_call(
            logger, self.service_name, "send", True, duration_ms,
            status_code=status, channel=channel.value
        )
        return SendResult(accepted=True, provider_message_id=_message_id(response))

    def _failed(
        self,
        operation: str,
        started: float,
        message: str,
        retryable: bool,
        error: Exception,
    ) -> SendResult:
        log_external_api_call(
            logger,
            self.service_name,
            operation,
            False,
            (perf_counter() - started) * 1000,
            error=str(error)
        )
        return SendResult(accepted=False, error=message, retryable=retryable)


def _message_id(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    value = data.get("message_id") or data.get("id")
    return str(value) if value is not None else None
