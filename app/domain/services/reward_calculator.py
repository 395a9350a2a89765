"""
Reward Calculator - BTC amount + store settings → reward in sats
"""
from decimal import Decimal, ROUND_FLOOR

from app.core.logging import get_logger
from app.domain.models.reward_settings import StoreRewardSettings
from app.domain.models.transaction import Transaction

logger = get_logger(__name__)

SATS_PER_BTC = Decimal("100000000")
TEST_REWARD_PERCENTAGE = Decimal("100")


class RewardCalculator:
    """
    ``floor(btc_amount * pct / 100 * 1e8)``, then clamped by every
    configured cap. Transactions below the store minimum earn nothing.
    """

    @staticmethod
    def percentage_for(transaction: Transaction, settings: StoreRewardSettings) -> Decimal:
        if transaction.is_test:
            return TEST_REWARD_PERCENTAGE
        return settings.reward_percentage_for(transaction.platform)

    @staticmethod
    def caps(settings: StoreRewardSettings) -> list[int]:
        return [
            cap
            for cap in (
                settings.maximum_reward_satoshis,
                settings.rewards.max_reward_sats,
                settings.maximum_single_reward_satoshis,
            )
            if cap is not None
        ]

    def compute(
        self,
        transaction: Transaction,
        btc_amount: Decimal,
        settings: StoreRewardSettings,
    ) -> int:
        if transaction.amount < settings.minimum_transaction_amount:
            logger.info(
                "Transaction below store minimum, no reward",
                extra_data={
                    "transaction_id": transaction.transaction_id,
                    "amount": str(transaction.amount),
                    "minimum": str(settings.minimum_transaction_amount),
                },
            )
            return 0

        percentage = self.percentage_for(transaction, settings)
        raw = Decimal(str(btc_amount)) * percentage / Decimal("100") * SATS_PER_BTC
        reward_sats = max(int(raw.to_integral_value(rounding=ROUND_FLOOR)), 0)

        caps = self.caps(settings)
        if caps and reward_sats > min(caps):
            logger.info(
                "Reward clamped to cap",
                extra_data={
                    "transaction_id": transaction.transaction_id,
                    "computed_sats": reward_sats,
                    "cap_sats": min(caps),
                },
            )
            reward_sats = min(caps)

        return reward_sats
