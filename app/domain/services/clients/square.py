"""
Square API client - customer lookup used to enrich order webhooks
"""
from __future__ import annotations

from dataclasses import dataclass

import httpx

from app.core.circuit_breaker import get_square_circuit_breaker
from app.core.config import settings
from app.core.exceptions import ExternalServiceException, ServiceTimeoutError
from app.core.logging import get_logger

logger = get_logger(__name__)

SQUARE_BASE_URLS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}


@dataclass(frozen=True)
class SquareCustomer:
    email: str = ""
    phone: str = ""
    given_name: str = ""
    family_name: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.given_name} {self.family_name}".strip()


class SquareClient:
    """Thin wrapper over ``GET /v2/customers/{id}``"""

    def __init__(
        self,
        access_token: str,
        environment: str = "production",
        timeout_seconds: float | None = None,
    ) -> None:
        self._access_token = access_token
        self._base_url = SQUARE_BASE_URLS.get(environment, SQUARE_BASE_URLS["production"])
        self._timeout = timeout_seconds or settings.COMMERCE_HTTP_TIMEOUT_SECONDS
        self._circuit_breaker = get_square_circuit_breaker()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Square-Version": settings.SQUARE_API_VERSION,
            "Accept": "application/json",
        }

    async def _get(self, path: str, operation: str) -> dict | None:
        async def _call() -> dict | None:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                try:
                    response = await client.get(f"{self._base_url}{path}", headers=self._headers())
                except httpx.TimeoutException:
                    raise ServiceTimeoutError("square", self._timeout)
                except httpx.RequestError as exc:
                    raise ExternalServiceException("square", f"square {operation} network error: {exc}")
            if response.status_code == 404:
                return None
            if response.status_code != 200:
                raise ExternalServiceException.from_response("square", operation, response)
            return response.json()

        return await self._circuit_breaker.execute(_call)

    async def get_customer(self, customer_id: str) -> SquareCustomer | None:
        data = await self._get(f"/v2/customers/{customer_id}", "get_customer")
        if not data:
            return None
        customer = data.get("customer") or {}
        return SquareCustomer(
            email=customer.get("email_address") or "",
            phone=customer.get("phone_number") or "",
            given_name=customer.get("given_name") or "",
            family_name=customer.get("family_name") or "",
        )
