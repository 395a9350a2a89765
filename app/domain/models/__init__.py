"""
Domain value objects
"""
from app.domain.models.transaction import Platform, Transaction, TEST_TRANSACTION_PREFIX
from app.domain.models.reward_settings import (
    DeliveryMethod,
    FundingSource,
    PlatformFlags,
    RewardsConfig,
    StoreRewardSettings,
)
from app.domain.models.display import RewardDisplayMessage

__all__ = [
    "Platform",
    "Transaction",
    "TEST_TRANSACTION_PREFIX",
    "DeliveryMethod",
    "FundingSource",
    "PlatformFlags",
    "RewardsConfig",
    "StoreRewardSettings",
    "RewardDisplayMessage",
]
