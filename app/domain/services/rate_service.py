"""
Rate Service - fiat to BTC conversion with deterministic fallback

Conversion never fails: when no provider can answer, the amount is divided
by the fixed FALLBACK_BTC_RATE and a warning is logged.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping

import httpx

from app.core.circuit_breaker import get_rate_provider_circuit_breaker
from app.core.config import settings
from app.core.exceptions import ExternalServiceException
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CurrencyPair:
    left: str
    right: str

    @classmethod
    def of(cls, left: str, right: str) -> "CurrencyPair":
        return cls(left.strip().upper(), right.strip().upper())

    def __str__(self) -> str:
        return f"{self.left}/{self.right}"


@dataclass(frozen=True)
class BidAsk:
    bid: Decimal
    ask: Decimal


@dataclass(frozen=True)
class PairRate:
    """
    Quote for a pair. For ``USD/BTC`` the bid is the number of USD paid
    for one BTC.
    """
    pair: CurrencyPair
    bid_ask: BidAsk | None


class RateProvider(ABC):
    """A source of pair quotes"""

    name: str = ""

    @abstractmethod
    async def query_rates(self) -> list[PairRate]:
        """Return every pair the provider knows. May raise on transport errors."""


class StaticRateProvider(RateProvider):
    """Fixed quote table, e.g. {"USD": Decimal("50000")} for USD/BTC"""

    def __init__(self, rates: Mapping[str, Decimal], name: str = "static") -> None:
        self.name = name
        self._rates = {code.upper(): Decimal(str(value)) for code, value in rates.items()}

    async def query_rates(self) -> list[PairRate]:
        return [
            PairRate(CurrencyPair.of(code, "BTC"), BidAsk(bid=value, ask=value))
            for code, value in self._rates.items()
        ]


class CoinGeckoRateProvider(RateProvider):
    """
    CoinGecko ``/simple/price`` quotes. CoinGecko publishes a single price,
    used as both bid and ask.
    """

    name = "coingecko"

    def __init__(
        self,
        base_url: str | None = None,
        vs_currencies: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._base_url = (base_url or settings.COINGECKO_API_URL).rstrip("/")
        self._vs_currencies = vs_currencies or settings.COINGECKO_VS_CURRENCIES
        self._timeout = timeout_seconds or settings.RATE_HTTP_TIMEOUT_SECONDS
        self._circuit_breaker = get_rate_provider_circuit_breaker(self.name)

    async def _fetch(self) -> dict:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(
                f"{self._base_url}/simple/price",
                params={"ids": "bitcoin", "vs_currencies": self._vs_currencies},
            )
            if response.status_code != 200:
                raise ExternalServiceException.from_response("coingecko", "simple_price", response)
            return response.json()

    async def query_rates(self) -> list[PairRate]:
        data = await self._circuit_breaker.execute(self._fetch)
        prices = data.get("bitcoin") or {}
        rates: list[PairRate] = []
        for code, price in prices.items():
            value = Decimal(str(price))
            rates.append(PairRate(CurrencyPair.of(code, "BTC"), BidAsk(bid=value, ask=value)))
        return rates


class RateService:
    """
    Converts amounts to BTC through a registry of named providers.

    Providers are looked up by lowercase name. An unknown preferred provider
    falls back to the default one; when that one is missing too, or the
    provider errors or has no usable quote, the fixed fallback rate is used.
    """

    def __init__(
        self,
        providers: Mapping[str, RateProvider],
        default_provider: str | None = None,
        fallback_rate: Decimal | None = None,
    ) -> None:
        self._providers = {name.lower(): provider for name, provider in providers.items()}
        self._default_provider = (default_provider or settings.DEFAULT_RATE_PROVIDER).lower()
        self._fallback_rate = fallback_rate or settings.FALLBACK_BTC_RATE

    @property
    def providers(self) -> dict[str, RateProvider]:
        return dict(self._providers)

    def _fallback(self, amount: Decimal) -> Decimal:
        return amount / self._fallback_rate

    async def convert_to_btc(
        self,
        amount: Decimal,
        currency: str,
        preferred_provider: str | None = "coingecko",
    ) -> Decimal:
        """
        Convert ``amount`` of ``currency`` to BTC.

        Uses the bid of the ``currency/BTC`` pair. Never raises.
        """
        amount = Decimal(str(amount))
        currency = (currency or "").strip().upper()

        if currency == "BTC":
            return amount

        provider_name = (preferred_provider or self._default_provider).lower()
        log_context = {"currency": currency, "provider": provider_name}

        try:
            if provider_name not in self._providers:
                logger.warning(
                    "Rate provider not registered, using default provider",
                    extra_data={**log_context, "default_provider": self._default_provider},
                )
                provider_name = self._default_provider
                if provider_name not in self._providers:
                    logger.warning(
                        "No rate provider available, using fallback rate",
                        extra_data={**log_context, "fallback_rate": str(self._fallback_rate)},
                    )
                    return self._fallback(amount)

            pair = CurrencyPair.of(currency, "BTC")
            rates = await self._providers[provider_name].query_rates()
            pair_rate = next((rate for rate in rates if rate.pair == pair), None)

            if pair_rate is None or pair_rate.bid_ask is None or pair_rate.bid_ask.bid <= 0:
                logger.warning(
                    f"No usable {pair} quote, using fallback rate",
                    extra_data={**log_context, "provider": provider_name},
                )
                return self._fallback(amount)

            return amount / pair_rate.bid_ask.bid

        except Exception as e:
            logger.warning(
                "Rate lookup failed, using fallback rate",
                extra_data={**log_context, "provider": provider_name, "error": str(e)},
            )
            return self._fallback(amount)


def default_rate_providers() -> dict[str, RateProvider]:
    return {CoinGeckoRateProvider.name: CoinGeckoRateProvider()}
