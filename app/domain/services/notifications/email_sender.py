"""
Email over a generic HTTP gateway (JSON POST with a bearer key)
"""
from __future__ import annotations

import httpx

from app.core.circuit_breaker import CircuitBreaker, get_email_circuit_breaker
from app.core.config import settings
from app.core.exceptions import ExternalServiceException, ServiceTimeoutError
from app.core.logging import get_logger
from app.core.validation import EmailValidator
from app.domain.services.notifications.base_sender import BaseNotificationSender

logger = get_logger(__name__)


class HttpEmailSender(BaseNotificationSender):

    channel = "email"

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        sender: str | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self._api_url = api_url if api_url is not None else settings.EMAIL_API_URL
        self._api_key = api_key if api_key is not None else settings.EMAIL_API_KEY
        self._sender = sender or settings.EMAIL_FROM
        self._circuit_breaker = circuit_breaker or get_email_circuit_breaker()

    @property
    def is_configured(self) -> bool:
        return bool(self._api_url and self._api_key)

    async def send(self, recipient: str, body: str, subject: str | None = None) -> None:
        if not self.is_configured:
            raise ExternalServiceException("email", "Email gateway is not configured")

        payload = {
            "from": self._sender,
            "to": EmailValidator.normalize(recipient),
            "subject": subject or "",
            "text": body,
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
                    raise ServiceTimeoutError("email", timeout)
                except httpx.RequestError as exc:
                    raise ExternalServiceException("email", f"email send network error: {exc}")
            if response.status_code >= 300:
                raise ExternalServiceException.from_response("email", "send", response)

        await self._circuit_breaker.execute(_send)
        logger.info("Email sent", extra_data={"recipient": EmailValidator.mask(recipient)})
