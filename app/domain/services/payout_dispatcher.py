"""
Payout Dispatcher - fund a computed reward and deliver the claim link

Stages of one issuance, persisted on the RewardIssue row:

    created → funding → delivering → sent | failed

Each stage is committed before the next network call so a crash leaves a
row that says how far the issuance got.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.validation import EmailValidator, PhoneNumberValidator
from app.db.database import utcnow
from app.db.models.notification_message import NotificationChannel
from app.db.models.reward_issue import RewardIssue, RewardStage, RewardStatus, new_reward_id
from app.domain.models.reward_settings import DeliveryMethod, FundingSource, StoreRewardSettings
from app.domain.models.transaction import Transaction
from app.domain.services.display_service import DisplayService
from app.domain.services.notification_service import NotificationService
from app.domain.services.payout_providers import Payout, PayoutProvider
from app.domain.services.reward_record_service import RewardRecordService

logger = get_logger(__name__)

DISPLAY_CHANNEL = "display"
SATS_PER_BTC = Decimal("100000000")


@dataclass
class DispatchOutcome:
    reward: RewardIssue
    duplicate: bool = False

    @property
    def reward_id(self) -> str:
        return self.reward.id

    @property
    def status(self) -> RewardStatus:
        return RewardStatus(self.reward.status)


def _reward_value(amount_sats: int, transaction: Transaction, btc_amount: Decimal | None) -> Decimal:
    """שווי התגמול במטבע הרכישה"""
    if not btc_amount or btc_amount <= 0:
        return Decimal("0")
    value = Decimal(amount_sats) / SATS_PER_BTC * (transaction.amount / btc_amount)
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class PayoutDispatcher:
    def __init__(
        self,
        db: AsyncSession,
        providers: dict[FundingSource, PayoutProvider],
        records: RewardRecordService | None = None,
        notifications: NotificationService | None = None,
        display: DisplayService | None = None,
    ):
        self.db = db
        self.providers = providers
        self.records = records or RewardRecordService(db)
        self.notifications = notifications or NotificationService(db)
        self.display = display or DisplayService()

    async def dispatch(
        self,
        store_id: str,
        transaction: Transaction,
        amount_sats: int,
        store_settings: StoreRewardSettings,
        btc_amount: Decimal | None = None,
    ) -> DispatchOutcome:
        """
        Issue one reward for ``transaction``.

        An event that already has a RewardIssue returns it with
        ``duplicate=True`` and does nothing else.
        """
        existing = await self.records.get_by_transaction(store_id, transaction.transaction_id)
        if existing is not None:
            logger.info(
                "Reward already issued for transaction",
                extra_data={
                    "store_id": store_id,
                    "transaction_id": transaction.transaction_id,
                    "reward_id": existing.id,
                },
            )
            return DispatchOutcome(reward=existing, duplicate=True)

        reward_id = new_reward_id()
        try:
            await self.records.create(RewardIssue(
                id=reward_id,
                store_id=store_id,
                transaction_id=transaction.transaction_id,
                platform=transaction.platform.value,
                order_id=transaction.order_id,
                invoice_id=transaction.invoice_id,
                customer_email=EmailValidator.normalize(transaction.customer_email) or None,
                customer_phone=transaction.customer_phone or None,
                transaction_amount=transaction.amount,
                currency=transaction.currency,
                amount_sats=amount_sats,
                stage=RewardStage.CREATED,
                status=RewardStatus.PENDING,
            ))
            await self.db.commit()
        except IntegrityError:
            # webhook כפול שהגיע במקביל - המנצח כבר כתב את השורה
            await self.db.rollback()
            winner = await self.records.get_by_transaction(store_id, transaction.transaction_id)
            if winner is None:
                raise
            logger.info(
                "Concurrent duplicate event, returning existing reward",
                extra_data={
                    "store_id": store_id,
                    "transaction_id": transaction.transaction_id,
                    "reward_id": winner.id,
                },
            )
            return DispatchOutcome(reward=winner, duplicate=True)

        await self.records.update(reward_id, stage=RewardStage.FUNDING)
        await self.db.commit()

        payout = await self._fund(reward_id, store_id, transaction, amount_sats, store_settings)
        if payout is None:
            reward = await self.records.get_by_id(reward_id)
            return DispatchOutcome(reward=reward)

        reward = await self._deliver(reward_id, store_id, transaction, amount_sats, store_settings, payout, btc_amount)
        return DispatchOutcome(reward=reward)

    async def _fund(
        self,
        reward_id: str,
        store_id: str,
        transaction: Transaction,
        amount_sats: int,
        store_settings: StoreRewardSettings,
    ) -> Payout | None:
        description = f"Reward for order {transaction.order_id or transaction.transaction_id}"
        errors: list[str] = []

        for source in store_settings.rewards.funding_order():
            provider = self.providers.get(source)
            if provider is None:
                errors.append(f"{source.value}: no provider")
                continue
            try:
                payout = await provider.create_payout(store_id, amount_sats, store_settings, description)
            except Exception as exc:
                logger.warning(
                    "Funding source failed, trying next",
                    extra_data={
                        "reward_id": reward_id,
                        "funding_source": source.value,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                errors.append(f"{source.value}: {exc}")
                continue

            await self.records.update(
                reward_id,
                stage=RewardStage.DELIVERING,
                funding_source=payout.funding_source.value,
                payout_reference=payout.payout_reference,
                claim_link=payout.claim_link,
                expires_at=payout.expires_at,
            )
            await self.db.commit()
            logger.info(
                "Reward funded",
                extra_data={
                    "reward_id": reward_id,
                    "funding_source": payout.funding_source.value,
                    "amount_sats": amount_sats,
                },
            )
            return payout

        error = "; ".join(errors) or "no funding source configured"
        await self.records.update(
            reward_id,
            stage=RewardStage.FAILED,
            status=RewardStatus.FAILED,
            error=error,
        )
        await self.db.commit()
        logger.error(
            "All funding sources failed",
            extra_data={
                "reward_id": reward_id,
                "store_id": store_id,
                "transaction_id": transaction.transaction_id,
                "error": error,
            },
        )
        return None

    @staticmethod
    def _delivery_targets(
        transaction: Transaction,
        store_settings: StoreRewardSettings,
    ) -> list[tuple[NotificationChannel, str]]:
        """Preferred channel first, then the other one; only valid contacts"""
        contacts = {
            NotificationChannel.EMAIL: (
                transaction.customer_email
                if EmailValidator.validate(transaction.customer_email)
                else ""
            ),
            NotificationChannel.SMS: (
                transaction.customer_phone
                if PhoneNumberValidator.validate(PhoneNumberValidator.normalize(transaction.customer_phone or ""))
                else ""
            ),
        }
        if store_settings.delivery_method == DeliveryMethod.SMS:
            order = [NotificationChannel.SMS, NotificationChannel.EMAIL]
        else:
            order = [NotificationChannel.EMAIL, NotificationChannel.SMS]
        return [(channel, contacts[channel]) for channel in order if contacts[channel]]

    async def _deliver(
        self,
        reward_id: str,
        store_id: str,
        transaction: Transaction,
        amount_sats: int,
        store_settings: StoreRewardSettings,
        payout: Payout,
        btc_amount: Decimal | None,
    ) -> RewardIssue:
        targets = self._delivery_targets(transaction, store_settings)

        if targets:
            channel, recipient = targets[0]
            try:
                # ההודעה וסטטוס Sent נכתבים באותה טרנזקציה
                await self.notifications.queue_reward_notification(
                    channel,
                    recipient,
                    store_settings.rewards,
                    reward_id=reward_id,
                    reward_sats=amount_sats,
                    claim_link=payout.claim_link,
                    order_id=transaction.order_id,
                )
            except (ValueError, KeyError, IndexError, AttributeError, TypeError) as exc:
                # תבנית שבורה: התגמול כבר ממומן, הקישור עובר לתצוגה
                logger.error(
                    "Rendering reward message failed, falling back to display",
                    extra_data={"reward_id": reward_id, "store_id": store_id, "channel": channel.value, "error": str(exc)},
                )
            else:
                reward = await self._mark_sent(reward_id, channel.value)
                await self.db.commit()
                return reward

        reward = await self._mark_sent(reward_id, DISPLAY_CHANNEL)
        await self.db.commit()
        try:
            await self.display.publish_reward(
                store_id,
                claim_link=payout.claim_link,
                reward_sats=amount_sats,
                reward_amount=_reward_value(amount_sats, transaction, btc_amount),
                currency=transaction.currency,
                transaction_id=transaction.transaction_id,
                order_id=transaction.order_id,
                display_duration_seconds=store_settings.display_timeout_seconds,
            )
        except Exception as exc:
            # התגמול כבר ממומן ורשום; הקישור זמין דרך ה-admin API
            logger.error(
                "Display publish failed",
                extra_data={"reward_id": reward_id, "store_id": store_id, "error": str(exc)},
                exc_info=True,
            )
            reward = await self.records.update(reward_id, error=f"display publish failed: {exc}")
            await self.db.commit()
        return reward

    async def _mark_sent(self, reward_id: str, channel: str) -> RewardIssue:
        reward = await self.records.update(
            reward_id,
            stage=RewardStage.SENT,
            status=RewardStatus.SENT,
            delivery_channel=channel,
            sent_at=utcnow(),
        )
        logger.info(
            "Reward sent",
            extra_data={"reward_id": reward_id, "delivery_channel": channel},
        )
        return reward
