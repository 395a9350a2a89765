"""
Shopify Admin REST client - customer and order lookups
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import httpx

from app.core.circuit_breaker import get_shopify_circuit_breaker
from app.core.config import settings
from app.core.exceptions import ExternalServiceException, ServiceTimeoutError
from app.core.logging import get_logger
from app.core.validation import AmountValidator

logger = get_logger(__name__)


@dataclass(frozen=True)
class ShopifyCustomer:
    email: str = ""
    phone: str = ""
    first_name: str = ""
    last_name: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class ShopifyOrderInfo:
    total_amount: Decimal
    currency: str
    customer_email: str


def _shop_base_url(shop_url: str) -> str:
    """'my-shop.myshopify.com' או 'https://my-shop.myshopify.com/' → https://my-shop.myshopify.com"""
    shop = shop_url.strip().rstrip("/")
    if not shop.startswith(("http://", "https://")):
        shop = f"https://{shop}"
    return shop


class ShopifyClient:
    def __init__(
        self,
        shop_url: str,
        access_token: str,
        timeout_seconds: float | None = None,
    ) -> None:
        self._base_url = f"{_shop_base_url(shop_url)}/admin/api/{settings.SHOPIFY_API_VERSION}"
        self._access_token = access_token
        self._timeout = timeout_seconds or settings.COMMERCE_HTTP_TIMEOUT_SECONDS
        self._circuit_breaker = get_shopify_circuit_breaker()

    async def _get(self, path: str, operation: str) -> dict | None:
        async def _call() -> dict | None:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                try:
                    response = await client.get(
                        f"{self._base_url}{path}",
                        headers={"X-Shopify-Access-Token": self._access_token},
                    )
                except httpx.TimeoutException:
                    raise ServiceTimeoutError("shopify", self._timeout)
                except httpx.RequestError as exc:
                    raise ExternalServiceException("shopify", f"shopify {operation} network error: {exc}")
            if response.status_code == 404:
                return None
            if response.status_code != 200:
                raise ExternalServiceException.from_response("shopify", operation, response)
            return response.json()

        return await self._circuit_breaker.execute(_call)

    async def get_customer(self, customer_id: str) -> ShopifyCustomer | None:
        data = await self._get(f"/customers/{customer_id}.json", "get_customer")
        if not data:
            return None
        customer = data.get("customer") or {}
        return ShopifyCustomer(
            email=customer.get("email") or "",
            phone=customer.get("phone") or "",
            first_name=customer.get("first_name") or "",
            last_name=customer.get("last_name") or "",
        )

    async def get_order(self, order_id: str) -> ShopifyOrderInfo | None:
        data = await self._get(f"/orders/{order_id}.json", "get_order")
        if not data:
            return None
        order = data.get("order") or {}
        return ShopifyOrderInfo(
            total_amount=AmountValidator.parse(order.get("total_price")) or Decimal("0"),
            currency=order.get("currency") or "",
            customer_email=order.get("email") or (order.get("customer") or {}).get("email") or "",
        )
