"""
Notification Service - Transactional Outbox for reward emails/SMS

The dispatcher queues the customer message in the same DB transaction that
marks the reward Sent; a Celery beat task drains the outbox.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Callable, List

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.retry import calculate_backoff_seconds
from app.core.validation import EmailValidator, PhoneNumberValidator
from app.db.database import utcnow
from app.db.models.notification_message import (
    NotificationChannel,
    NotificationMessage,
    NotificationStatus,
)
from app.domain.models.reward_settings import RewardsConfig, render_template
from app.domain.services.notifications.base_sender import BaseNotificationSender
from app.domain.services.notifications.sender_factory import get_notification_sender

logger = get_logger(__name__)


def _mask_recipient(channel: NotificationChannel, recipient: str) -> str:
    if channel == NotificationChannel.EMAIL:
        return EmailValidator.mask(recipient)
    return PhoneNumberValidator.mask(recipient)


class NotificationService:
    """
    Service for managing outbox messages.

    queue_* only adds rows; the caller owns the transaction. The mark_*
    methods are used by the worker and commit.
    """

    def __init__(
        self,
        db: AsyncSession,
        sender_factory: Callable[[NotificationChannel], BaseNotificationSender] = get_notification_sender,
    ):
        self.db = db
        self._sender_factory = sender_factory

    async def queue_message(
        self,
        channel: NotificationChannel,
        recipient: str,
        body: str,
        subject: str | None = None,
        reward_id: str | None = None,
    ) -> NotificationMessage:
        """Queue a single message for delivery"""
        message = NotificationMessage(
            channel=channel,
            recipient=recipient,
            subject=subject,
            body=body,
            reward_id=reward_id,
            status=NotificationStatus.PENDING,
            retry_count=0,
        )
        self.db.add(message)
        return message

    async def queue_reward_notification(
        self,
        channel: NotificationChannel,
        recipient: str,
        rewards_config: RewardsConfig,
        *,
        reward_id: str,
        reward_sats: int,
        claim_link: str,
        order_id: str | None = None,
    ) -> NotificationMessage:
        """Render the store templates for one reward and queue the message"""
        if channel == NotificationChannel.EMAIL:
            subject = render_template(
                rewards_config.email_subject_template,
                reward_sats=reward_sats,
                claim_link=claim_link,
                order_id=order_id,
            )
            body = render_template(
                rewards_config.email_body_template,
                reward_sats=reward_sats,
                claim_link=claim_link,
                order_id=order_id,
            )
            recipient = EmailValidator.normalize(recipient)
        else:
            subject = None
            body = render_template(
                rewards_config.sms_template,
                reward_sats=reward_sats,
                claim_link=claim_link,
                order_id=order_id,
            )
            recipient = PhoneNumberValidator.normalize(recipient)

        message = await self.queue_message(
            channel=channel,
            recipient=recipient,
            body=body,
            subject=subject,
            reward_id=reward_id,
        )
        logger.info(
            "Reward notification queued",
            extra_data={
                "reward_id": reward_id,
                "channel": channel.value,
                "recipient": _mask_recipient(channel, recipient),
            },
        )
        return message

    async def get_pending_messages(self, limit: int = 100) -> List[NotificationMessage]:
        """Pending messages whose backoff (if any) has passed, oldest first"""
        now = utcnow()
        result = await self.db.execute(
            select(NotificationMessage)
            .where(
                NotificationMessage.status == NotificationStatus.PENDING,
                or_(
                    NotificationMessage.next_retry_at.is_(None),
                    NotificationMessage.next_retry_at <= now,
                ),
            )
            .order_by(NotificationMessage.created_at, NotificationMessage.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get(self, message_id: int) -> NotificationMessage | None:
        result = await self.db.execute(
            select(NotificationMessage).where(NotificationMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def mark_as_processing(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = NotificationStatus.PROCESSING
            await self.db.commit()

    async def mark_as_sent(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = NotificationStatus.SENT
            message.processed_at = utcnow()
            message.last_error = None
            await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> None:
        """Mark message as failed with error"""
        message = await self._get(message_id)
        if message:
            message.retry_count = (message.retry_count or 0) + 1
            message.last_error = error[:1000]

            if message.retry_count >= message.max_retries:
                message.status = NotificationStatus.FAILED
                logger.error(
                    "Notification gave up after max retries",
                    extra_data={
                        "message_id": message.id,
                        "reward_id": message.reward_id,
                        "retry_count": message.retry_count,
                        "error": message.last_error,
                    },
                )
            else:
                message.status = NotificationStatus.PENDING
                # Exponential backoff for retry
                backoff_seconds = calculate_backoff_seconds(
                    message.retry_count,
                    base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                    max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
                )
                message.next_retry_at = utcnow() + timedelta(seconds=backoff_seconds)

            await self.db.commit()

    async def process_pending(self, limit: int = 100) -> dict[str, int]:
        """
        Send every due message once.

        Returns:
            {"processed": n, "sent": n, "failed": n}
        """
        messages = await self.get_pending_messages(limit)
        stats = {"processed": 0, "sent": 0, "failed": 0}

        for message in messages:
            message_id = message.id
            stats["processed"] += 1
            await self.mark_as_processing(message_id)
            try:
                sender = self._sender_factory(NotificationChannel(message.channel))
                await sender.send(message.recipient, message.body, subject=message.subject)
            except Exception as exc:
                logger.warning(
                    "Notification send failed",
                    extra_data={
                        "message_id": message_id,
                        "channel": NotificationChannel(message.channel).value,
                        "error": str(exc),
                    },
                )
                await self.mark_as_failed(message_id, str(exc))
                stats["failed"] += 1
            else:
                await self.mark_as_sent(message_id)
                stats["sent"] += 1

        return stats

    async def cleanup_sent(self, days: int = 7) -> int:
        """מחיקת הודעות שנשלחו לפני יותר מ-N ימים"""
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(NotificationMessage).where(
                NotificationMessage.status == NotificationStatus.SENT,
                NotificationMessage.processed_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
