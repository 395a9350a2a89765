"""
SMS over a generic HTTP gateway
"""
from __future__ import annotations

import httpx

from app.core.circuit_breaker import CircuitBreaker, get_sms_circuit_breaker
from app.core.config import settings
from app.core.exceptions import ExternalServiceException, ServiceTimeoutError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.domain.services.notifications.base_sender import BaseNotificationSender

logger = get_logger(__name__)


class HttpSmsSender(BaseNotificationSender):

    channel = "sms"

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        sender: str | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self._api_url = api_url if api_url is not None else settings.SMS_API_URL
        self._api_key = api_key if api_key is not None else settings.SMS_API_KEY
        self._sender = sender if sender is not None else settings.SMS_FROM
        self._circuit_breaker = circuit_breaker or get_sms_circuit_breaker()

    @property
    def is_configured(self) -> bool:
        return bool(self._api_url and self._api_key)

    async def send(self, recipient: str, body: str, subject: str | None = None) -> None:
        if not self.is_configured:
            raise ExternalServiceException("sms", "SMS gateway is not configured")

        # נרמול ל-E.164 - השער דוחה מספרים בלי +
        payload = {
            "from": self._sender,
            "to": PhoneNumberValidator.normalize(recipient),
            "body": body,
        }
        timeout = settings.NOTIFICATION_HTTP_TIMEOUT_SECONDS

        async def _send() -> None:
            async with httpx.AsyncClient(timeout=timeout) as client:
                try:
                    response = await client.post(
                        self._api_url,
                        json=payload,
                        headers={"Authorization": f"Bearer {self._api_key}"},
                    )
                except httpx.TimeoutException:
                    raise ServiceTimeoutError("sms", timeout)
                except httpx.RequestError as exc:
                    raise ExternalServiceException("sms", f"sms send network error: {exc}")
            if response.status_code >= 300:
                raise ExternalServiceException.from_response("sms", "send", response)

        await self._circuit_breaker.execute(_send)
        logger.info("SMS sent", extra_data={"recipient": PhoneNumberValidator.mask(recipient)})
