"""
Payout Providers - one per funding source

Each provider turns an amount in sats into something the customer can claim:
a BTCPay pull payment (Lightning / on-chain) or a Cashu token (ecash).
Providers raise; the dispatcher decides whether to fall back.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from app.core.config import settings as app_settings
from app.core.exceptions import PayoutUnavailableError
from app.core.logging import get_logger
from app.domain.models.reward_settings import FundingSource, StoreRewardSettings
from app.domain.services.cashu import CashuToken, CashuWalletLedger
from app.domain.services.clients.btcpay import (
    PAYOUT_METHOD_LIGHTNING,
    PAYOUT_METHOD_ONCHAIN,
    BTCPayClient,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Payout:
    funding_source: FundingSource
    # pull payment id, or the encoded token for ecash
    payout_reference: str
    claim_link: str
    expires_at: datetime | None = None


class PayoutProvider(ABC):
    funding_source: FundingSource

    @abstractmethod
    async def create_payout(
        self,
        store_id: str,
        amount_sats: int,
        store_settings: StoreRewardSettings,
        description: str,
    ) -> Payout:
        """
        Raises:
            PayoutUnavailableError: the source is not configured for this store
            AppException: any failure of the underlying rail
        """


class PullPaymentProvider(PayoutProvider):
    """Greenfield pull payment; the claim link is the pull payment view link"""

    def __init__(self, funding_source: FundingSource, btcpay_client: BTCPayClient):
        if funding_source == FundingSource.LIGHTNING:
            self.payout_method = PAYOUT_METHOD_LIGHTNING
        elif funding_source == FundingSource.ONCHAIN:
            self.payout_method = PAYOUT_METHOD_ONCHAIN
        else:
            raise ValueError(f"Pull payments do not support {funding_source}")
        self.funding_source = funding_source
        self._client = btcpay_client

    async def create_payout(
        self,
        store_id: str,
        amount_sats: int,
        store_settings: StoreRewardSettings,
        description: str,
    ) -> Payout:
        if not self._client.is_configured:
            raise PayoutUnavailableError(self.funding_source.value, "BTCPay API key is not configured")

        pull_payment = await self._client.create_pull_payment(
            store_id,
            amount_sats,
            self.payout_method,
            name=f"Bitcoin reward {amount_sats} sats",
            description=description,
            expiry_days=app_settings.PULL_PAYMENT_EXPIRY_DAYS,
        )
        return Payout(
            funding_source=self.funding_source,
            payout_reference=pull_payment.id,
            claim_link=pull_payment.view_link,
            expires_at=pull_payment.expires_at,
        )


class EcashPayoutProvider(PayoutProvider):
    """Proofs taken from the store wallet and handed over as a cashuA token"""

    funding_source = FundingSource.ECASH

    def __init__(self, ledger: CashuWalletLedger):
        self._ledger = ledger

    async def create_payout(
        self,
        store_id: str,
        amount_sats: int,
        store_settings: StoreRewardSettings,
        description: str,
    ) -> Payout:
        mint_url = store_settings.normalized_mint_url
        unit = store_settings.rewards.unit
        if not mint_url:
            raise PayoutUnavailableError(self.funding_source.value, "no mint configured")
        if unit != "sat":
            # reward amounts are computed in sats
            raise PayoutUnavailableError(self.funding_source.value, f"unit '{unit}' is not supported for rewards")

        proofs = await self._ledger.send(store_id, mint_url, unit, amount_sats)
        token = CashuToken(mint=mint_url, proofs=proofs, unit=unit, memo=description or None)
        return Payout(
            funding_source=self.funding_source,
            payout_reference=token.encode(),
            claim_link=token.to_claim_link(),
        )


def build_payout_providers(
    btcpay_client: BTCPayClient,
    ledger: CashuWalletLedger,
) -> dict[FundingSource, PayoutProvider]:
    return {
        FundingSource.LIGHTNING: PullPaymentProvider(FundingSource.LIGHTNING, btcpay_client),
        FundingSource.ONCHAIN: PullPaymentProvider(FundingSource.ONCHAIN, btcpay_client),
        FundingSource.ECASH: EcashPayoutProvider(ledger),
    }
