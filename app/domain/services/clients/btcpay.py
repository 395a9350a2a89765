"""
BTCPay Server Greenfield API client

Pull payments fund Lightning and on-chain rewards, invoices feed the BTCPay
webhook path, payouts tell whether a pull payment was claimed.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx

from app.core.circuit_breaker import get_btcpay_circuit_breaker
from app.core.config import settings
from app.core.exceptions import ExternalServiceException, ServiceTimeoutError
from app.core.logging import get_logger

logger = get_logger(__name__)

SATS_PER_BTC = Decimal("100000000")

PAYOUT_METHOD_LIGHTNING = "BTC-LN"
PAYOUT_METHOD_ONCHAIN = "BTC-CHAIN"

# payout states that mean the customer already claimed the reward
CLAIMED_PAYOUT_STATES = frozenset({"AwaitingPayment", "InProgress", "Completed"})


@dataclass(frozen=True)
class PullPayment:
    id: str
    view_link: str
    expires_at: datetime | None = None


def sats_to_btc_string(amount_sats: int) -> str:
    """2000 → '0.00002000'"""
    return f"{(Decimal(amount_sats) / SATS_PER_BTC):.8f}"


class BTCPayClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._base_url = (base_url or settings.BTCPAY_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.BTCPAY_API_KEY
        self._timeout = timeout_seconds or settings.COMMERCE_HTTP_TIMEOUT_SECONDS
        self._circuit_breaker = get_btcpay_circuit_breaker()

    @property
    def is_configured(self) -> bool:
        return bool(self._base_url and self._api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"token {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json_body: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        async def _call() -> Any:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                try:
                    response = await client.request(
                        method,
                        f"{self._base_url}{path}",
                        headers=self._headers(),
                        json=json_body,
                    )
                except httpx.TimeoutException:
                    raise ServiceTimeoutError("btcpay", self._timeout)
                except httpx.RequestError as exc:
                    raise ExternalServiceException("btcpay", f"btcpay {operation} network error: {exc}")
            if allow_not_found and response.status_code == 404:
                return None
            if response.status_code not in (200, 201):
                raise ExternalServiceException.from_response("btcpay", operation, response)
            return response.json()

        return await self._circuit_breaker.execute(_call)

    async def create_pull_payment(
        self,
        store_id: str,
        amount_sats: int,
        payout_method: str,
        name: str,
        description: str = "",
        expiry_days: int | None = None,
    ) -> PullPayment:
        """
        Create an auto-approved pull payment in BTC.

        The pull payment's ``viewLink`` is the claim page shown to the
        customer.
        """
        expiry_days = expiry_days or settings.PULL_PAYMENT_EXPIRY_DAYS
        expires_at = datetime.now(timezone.utc) + timedelta(days=expiry_days)
        body = {
            "name": name,
            "description": description,
            "amount": sats_to_btc_string(amount_sats),
            "currency": "BTC",
            "autoApproveClaims": True,
            "payoutMethods": [payout_method],
            "expiresAt": int(expires_at.timestamp()),
        }
        data = await self._request(
            "POST",
            f"/api/v1/stores/{store_id}/pull-payments",
            "create_pull_payment",
            json_body=body,
        )
        view_link = data.get("viewLink") or ""
        if not data.get("id") or not view_link:
            raise ExternalServiceException(
                "btcpay",
                "btcpay create_pull_payment returned no id/viewLink",
                details={"operation": "create_pull_payment"},
            )

        logger.info(
            "Pull payment created",
            extra_data={
                "store_id": store_id,
                "pull_payment_id": data["id"],
                "payout_method": payout_method,
                "amount_sats": amount_sats,
            },
        )
        return PullPayment(
            id=data["id"],
            view_link=view_link,
            expires_at=expires_at.replace(tzinfo=None),
        )

    async def get_pull_payment(self, pull_payment_id: str) -> dict | None:
        return await self._request(
            "GET",
            f"/api/v1/pull-payments/{pull_payment_id}",
            "get_pull_payment",
            allow_not_found=True,
        )

    async def get_pull_payment_payouts(self, pull_payment_id: str) -> list[dict]:
        data = await self._request(
            "GET",
            f"/api/v1/pull-payments/{pull_payment_id}/payouts",
            "get_pull_payment_payouts",
            allow_not_found=True,
        )
        return data or []

    async def get_invoice(self, store_id: str, invoice_id: str) -> dict | None:
        return await self._request(
            "GET",
            f"/api/v1/stores/{store_id}/invoices/{invoice_id}",
            "get_invoice",
            allow_not_found=True,
        )
