"""
Display Service - push claim links to in-store screens over Redis pub/sub
"""
from __future__ import annotations

from decimal import Decimal

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import publish_json
from app.db.database import utcnow
from app.domain.models.display import RewardDisplayMessage

logger = get_logger(__name__)


def display_channel(store_id: str) -> str:
    return f"{settings.DISPLAY_CHANNEL_PREFIX}:{store_id}"


class DisplayService:
    """Best effort: a reward is already funded when it reaches the display"""

    async def publish_reward(
        self,
        store_id: str,
        *,
        claim_link: str,
        reward_sats: int,
        reward_amount: Decimal,
        currency: str,
        transaction_id: str,
        order_id: str | None = None,
        display_duration_seconds: int = 60,
    ) -> RewardDisplayMessage:
        message = RewardDisplayMessage(
            claim_link=claim_link,
            reward_satoshis=reward_sats,
            currency=currency,
            reward_amount=reward_amount,
            transaction_id=transaction_id,
            order_id=order_id,
            created_at=utcnow(),
            display_duration_seconds=display_duration_seconds,
        )
        receivers = await publish_json(display_channel(store_id), message.to_wire())

        logger.info(
            "Reward published to display",
            extra_data={
                "store_id": store_id,
                "transaction_id": transaction_id,
                "reward_sats": reward_sats,
                "receivers": receivers,
            },
        )
        return message
