"""
Cashu mint HTTP client (NUT-01..09)

Error classes returned to the ledger:
- CashuPaymentError: the mint answered 4xx, the request was definitely rejected
- MintUnavailableError: transport error, timeout or 5xx; outcome unknown
- CashuPluginError: 2xx with a body that cannot be used; outcome unknown
- CircuitBreakerOpenError: nothing was sent
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from app.core.circuit_breaker import get_mint_circuit_breaker
from app.core.config import settings
from app.core.exceptions import CashuPaymentError, CashuPluginError, MintUnavailableError
from app.core.logging import get_logger
from app.core.validation import UrlValidator

logger = get_logger(__name__)


@dataclass(frozen=True)
class KeysetInfo:
    id: str
    unit: str
    active: bool
    input_fee_ppk: int = 0


@dataclass(frozen=True)
class MeltQuote:
    quote: str
    amount: int
    fee_reserve: int
    state: str
    expiry: int | None = None
    payment_preimage: str | None = None
    change: list[dict] | None = None


class MintClient:
    def __init__(self, mint_url: str, timeout_seconds: float | None = None) -> None:
        self.mint_url = UrlValidator.normalize(mint_url)
        self._timeout = timeout_seconds or settings.CASHU_HTTP_TIMEOUT_SECONDS
        self._circuit_breaker = get_mint_circuit_breaker(self.mint_url)

    async def _request(self, method: str, path: str, json_body: dict | None = None) -> dict:
        async def _call() -> dict:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                try:
                    response = await client.request(method, f"{self.mint_url}{path}", json=json_body)
                except httpx.TimeoutException:
                    raise MintUnavailableError(self.mint_url, f"timeout on {path}")
                except httpx.RequestError as exc:
                    raise MintUnavailableError(self.mint_url, f"{type(exc).__name__} on {path}")

            if 400 <= response.status_code < 500:
                try:
                    error_body = response.json()
                except ValueError:
                    error_body = {"detail": response.text[:500]}
                raise CashuPaymentError(
                    f"Mint rejected {path}: {error_body.get('detail') or response.status_code}",
                    details={
                        "mint_url": self.mint_url,
                        "status_code": response.status_code,
                        "mint_code": error_body.get("code"),
                    },
                )
            if response.status_code >= 500:
                raise MintUnavailableError(self.mint_url, f"status {response.status_code} on {path}")

            try:
                data = response.json()
            except ValueError:
                raise CashuPluginError(f"Mint returned invalid JSON on {path}", mint_url=self.mint_url)
            if not isinstance(data, dict):
                raise CashuPluginError(f"Mint returned unexpected body on {path}", mint_url=self.mint_url)
            return data

        return await self._circuit_breaker.execute(_call)

    def _list(self, data: dict, key: str, path: str) -> list:
        value = data.get(key)
        if not isinstance(value, list):
            raise CashuPluginError(f"Mint response to {path} has no '{key}' list", mint_url=self.mint_url)
        return value

    async def get_keysets(self) -> list[KeysetInfo]:
        data = await self._request("GET", "/v1/keysets")
        return [
            KeysetInfo(
                id=str(item["id"]),
                unit=str(item.get("unit") or "sat"),
                active=bool(item.get("active", False)),
                input_fee_ppk=int(item.get("input_fee_ppk") or 0),
            )
            for item in self._list(data, "keysets", "/v1/keysets")
        ]

    async def get_keys(self, keyset_id: str) -> dict[int, str]:
        path = f"/v1/keys/{keyset_id}"
        keysets = self._list(await self._request("GET", path), "keysets", path)
        match = next((k for k in keysets if str(k.get("id")) == keyset_id), None)
        if match is None or not isinstance(match.get("keys"), dict):
            raise CashuPluginError(f"Mint did not return keys for keyset {keyset_id}", mint_url=self.mint_url)
        return {int(amount): str(pubkey) for amount, pubkey in match["keys"].items()}

    async def swap(self, inputs: list[dict], outputs: list[dict]) -> list[dict]:
        data = await self._request("POST", "/v1/swap", {"inputs": inputs, "outputs": outputs})
        return self._list(data, "signatures", "/v1/swap")

    async def check_state(self, ys: list[str]) -> list[dict]:
        data = await self._request("POST", "/v1/checkstate", {"Ys": ys})
        return self._list(data, "states", "/v1/checkstate")

    async def restore(self, outputs: list[dict]) -> tuple[list[dict], list[dict]]:
        data = await self._request("POST", "/v1/restore", {"outputs": outputs})
        return self._list(data, "outputs", "/v1/restore"), self._list(data, "signatures", "/v1/restore")

    @staticmethod
    def _melt_quote(data: dict[str, Any]) -> MeltQuote:
        state = data.get("state")
        if state is None:
            # mints before NUT-05 state used a boolean
            state = "PAID" if data.get("paid") else "UNPAID"
        return MeltQuote(
            quote=str(data["quote"]),
            amount=int(data.get("amount") or 0),
            fee_reserve=int(data.get("fee_reserve") or 0),
            state=str(state).upper(),
            expiry=data.get("expiry"),
            payment_preimage=data.get("payment_preimage"),
            change=data.get("change"),
        )

    async def melt_quote(self, bolt11: str, unit: str) -> MeltQuote:
        data = await self._request("POST", "/v1/melt/quote/bolt11", {"request": bolt11, "unit": unit})
        return self._melt_quote(data)

    async def get_melt_quote(self, quote_id: str) -> MeltQuote:
        return self._melt_quote(await self._request("GET", f"/v1/melt/quote/bolt11/{quote_id}"))

    async def melt(self, quote_id: str, inputs: list[dict], outputs: list[dict]) -> MeltQuote:
        data = await self._request(
            "POST",
            "/v1/melt/bolt11",
            {"quote": quote_id, "inputs": inputs, "outputs": outputs},
        )
        data.setdefault("quote", quote_id)
        return self._melt_quote(data)

    async def mint(self, quote_id: str, outputs: list[dict]) -> list[dict]:
        data = await self._request("POST", "/v1/mint/bolt11", {"quote": quote_id, "outputs": outputs})
        return self._list(data, "signatures", "/v1/mint/bolt11")

    async def get_mint_quote(self, quote_id: str) -> str:
        """Quote state: UNPAID, PAID or ISSUED"""
        data = await self._request("GET", f"/v1/mint/quote/bolt11/{quote_id}")
        state = data.get("state")
        if state is None:
            state = "PAID" if data.get("paid") else "UNPAID"
        return str(state).upper()
