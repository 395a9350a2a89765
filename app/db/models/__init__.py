"""
Database Models
"""
from app.db.models.store_settings import StoreSettings
from app.db.models.reward_issue import RewardIssue, RewardStage, RewardStatus
from app.db.models.notification_message import (
    NotificationMessage,
    NotificationChannel,
    NotificationStatus,
)
from app.db.models.mint import Mint, MintKeys
from app.db.models.stored_proof import StoredProof, ProofState
from app.db.models.failed_transaction import (
    FailedTransaction,
    MintOperationType,
    Resolution,
)

__all__ = [
    "StoreSettings",
    "RewardIssue",
    "RewardStage",
    "RewardStatus",
    "NotificationMessage",
    "NotificationChannel",
    "NotificationStatus",
    "Mint",
    "MintKeys",
    "StoredProof",
    "ProofState",
    "FailedTransaction",
    "MintOperationType",
    "Resolution",
]
