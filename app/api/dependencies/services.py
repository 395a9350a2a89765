"""
Service wiring - every request gets its own service graph over its own session
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import get_db
from app.domain.services.cashu import CashuWalletLedger
from app.domain.services.clients import BTCPayClient
from app.domain.services.payout_dispatcher import PayoutDispatcher
from app.domain.services.payout_providers import build_payout_providers
from app.domain.services.rate_service import RateService, default_rate_providers
from app.domain.services.reward_record_service import RewardRecordService
from app.domain.services.reward_service import RewardService
from app.domain.services.store_settings_service import StoreSettingsService

# provider registry משותף - ה-circuit breaker שלו גלובלי בכל מקרה
_rate_service: RateService | None = None


def get_rate_service() -> RateService:
    global _rate_service
    if _rate_service is None:
        _rate_service = RateService(default_rate_providers())
    return _rate_service


def get_btcpay_client() -> BTCPayClient:
    return BTCPayClient()


def get_wallet_ledger(db: AsyncSession = Depends(get_db)) -> CashuWalletLedger:
    return CashuWalletLedger(db)


def get_reward_record_service(db: AsyncSession = Depends(get_db)) -> RewardRecordService:
    return RewardRecordService(db)


def get_store_settings_service(db: AsyncSession = Depends(get_db)) -> StoreSettingsService:
    return StoreSettingsService(db)


def get_reward_service(
    db: AsyncSession = Depends(get_db),
    rate_service: RateService = Depends(get_rate_service),
    btcpay_client: BTCPayClient = Depends(get_btcpay_client),
    ledger: CashuWalletLedger = Depends(get_wallet_ledger),
) -> RewardService:
    dispatcher = PayoutDispatcher(db, build_payout_providers(btcpay_client, ledger))
    return RewardService(db, rate_service, dispatcher, btcpay_client=btcpay_client)
