"""
Reward Record Service - history of issued rewards, used for idempotency and audit
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidStatusTransitionError, RewardAlreadyExistsError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.reward_issue import (
    REWARD_STATUS_TRANSITIONS,
    RewardIssue,
    RewardStatus,
)

logger = get_logger(__name__)

# fields that update() is allowed to change; id/store_id/transaction_id are fixed
UPDATABLE_FIELDS = frozenset({
    "order_id",
    "invoice_id",
    "customer_email",
    "customer_phone",
    "funding_source",
    "payout_reference",
    "claim_link",
    "delivery_channel",
    "stage",
    "status",
    "error",
    "sent_at",
    "claimed_at",
    "expires_at",
    "last_checked_at",
})


class RewardRecordService:
    """Create/read/update RewardIssue rows. Writes flush; the caller commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, reward: RewardIssue) -> RewardIssue:
        """
        Add a new reward row.

        Raises:
            RewardAlreadyExistsError: a row with the same id already exists
        """
        if reward.id and await self.db.get(RewardIssue, reward.id) is not None:
            raise RewardAlreadyExistsError(reward.id)
        self.db.add(reward)
        await self.db.flush()
        return reward

    async def update(self, reward_id: str, **changes: Any) -> RewardIssue | None:
        """
        Apply ``changes`` to an existing row.

        Unknown ids are a no-op (returns None); nothing is created.
        """
        reward = await self.db.get(RewardIssue, reward_id)
        if reward is None:
            logger.warning("Reward not found for update", extra_data={"reward_id": reward_id})
            return None

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")

        target_status = changes.pop("status", None)
        if target_status is not None and target_status != reward.status:
            self._check_transition(reward, RewardStatus(target_status))
            reward.status = RewardStatus(target_status)

        for field_name, value in changes.items():
            setattr(reward, field_name, value)

        await self.db.flush()
        return reward

    async def get_by_id(self, reward_id: str) -> RewardIssue | None:
        return await self.db.get(RewardIssue, reward_id)

    async def get_by_transaction(self, store_id: str, transaction_id: str) -> RewardIssue | None:
        result = await self.db.execute(
            select(RewardIssue).where(
                RewardIssue.store_id == store_id,
                RewardIssue.transaction_id == transaction_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_by_store(
        self,
        store_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RewardIssue]:
        """Newest first"""
        result = await self.db.execute(
            select(RewardIssue)
            .where(RewardIssue.store_id == store_id)
            .order_by(RewardIssue.created_at.desc(), RewardIssue.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def list_by_customer(self, store_id: str, email: str, limit: int = 100) -> list[RewardIssue]:
        result = await self.db.execute(
            select(RewardIssue)
            .where(
                RewardIssue.store_id == store_id,
                RewardIssue.customer_email == email.strip().lower(),
            )
            .order_by(RewardIssue.created_at.desc(), RewardIssue.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_latest_for_customer(self, store_id: str, email: str) -> RewardIssue | None:
        rewards = await self.list_by_customer(store_id, email, limit=1)
        return rewards[0] if rewards else None

    async def list_outstanding(self, limit: int = 200) -> list[RewardIssue]:
        """Sent rewards whose claim state is still unknown, least recently checked first"""
        result = await self.db.execute(
            select(RewardIssue)
            .where(RewardIssue.status == RewardStatus.SENT)
            .order_by(RewardIssue.last_checked_at.asc().nulls_first(), RewardIssue.sent_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_claimed(self, reward_id: str, claimed_at: datetime | None = None) -> RewardIssue | None:
        return await self._transition(reward_id, RewardStatus.CLAIMED, claimed_at=claimed_at or utcnow())

    async def mark_expired(self, reward_id: str) -> RewardIssue | None:
        return await self._transition(reward_id, RewardStatus.EXPIRED)

    async def _transition(self, reward_id: str, target: RewardStatus, **changes: Any) -> RewardIssue | None:
        reward = await self.db.get(RewardIssue, reward_id)
        if reward is None:
            return None
        if reward.status == target:
            return reward
        self._check_transition(reward, target)
        reward.status = target
        for field_name, value in changes.items():
            setattr(reward, field_name, value)
        await self.db.flush()

        logger.info(
            "Reward status changed",
            extra_data={"reward_id": reward_id, "status": target.value},
        )
        return reward

    @staticmethod
    def _check_transition(reward: RewardIssue, target: RewardStatus) -> None:
        current = RewardStatus(reward.status)
        if target not in REWARD_STATUS_TRANSITIONS[current]:
            raise InvalidStatusTransitionError(reward.id, current.value, target.value)
