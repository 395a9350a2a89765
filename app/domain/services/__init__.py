"""
Domain Services
"""
from app.domain.services.claim_status_service import ClaimStatusService
from app.domain.services.display_service import DisplayService
from app.domain.services.notification_service import NotificationService
from app.domain.services.payout_dispatcher import DispatchOutcome, PayoutDispatcher
from app.domain.services.rate_service import RateService
from app.domain.services.reward_calculator import RewardCalculator
from app.domain.services.reward_record_service import RewardRecordService
from app.domain.services.reward_service import RewardResult, RewardService
from app.domain.services.store_settings_service import StoreSettingsService

__all__ = [
    "ClaimStatusService",
    "DisplayService",
    "DispatchOutcome",
    "NotificationService",
    "PayoutDispatcher",
    "RateService",
    "RewardCalculator",
    "RewardRecordService",
    "RewardResult",
    "RewardService",
    "StoreSettingsService",
]
