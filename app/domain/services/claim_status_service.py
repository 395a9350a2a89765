"""
Claim Status Service - advance Sent rewards to Claimed / Expired
"""
from __future__ import annotations

from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.reward_issue import RewardIssue, RewardStatus
from app.domain.models.reward_settings import FundingSource
from app.domain.services.cashu.crypto import secret_to_y_hex
from app.domain.services.cashu.mint_client import MintClient
from app.domain.services.cashu.token import decode_token
from app.domain.services.clients.btcpay import CLAIMED_PAYOUT_STATES, BTCPayClient
from app.domain.services.reward_record_service import RewardRecordService

logger = get_logger(__name__)


class ClaimStatusService:
    def __init__(
        self,
        db: AsyncSession,
        btcpay_client: BTCPayClient | None = None,
        mint_client_factory: Callable[[str], MintClient] = MintClient,
    ):
        self.db = db
        self.records = RewardRecordService(db)
        self.btcpay = btcpay_client or BTCPayClient()
        self._mint_client_factory = mint_client_factory

    async def _pull_payment_claimed(self, reward: RewardIssue) -> bool:
        payouts = await self.btcpay.get_pull_payment_payouts(reward.payout_reference)
        return any(payout.get("state") in CLAIMED_PAYOUT_STATES for payout in payouts)

    async def _token_claimed(self, reward: RewardIssue) -> bool:
        """A token counts as claimed once the mint reports every proof SPENT"""
        token = decode_token(reward.payout_reference)
        client = self._mint_client_factory(token.mint)
        states = await client.check_state([secret_to_y_hex(proof.secret) for proof in token.proofs])
        return bool(states) and all(state.get("state") == "SPENT" for state in states)

    async def refresh(self, reward: RewardIssue) -> RewardStatus:
        """Check one Sent reward; returns its (possibly new) status"""
        if reward.status != RewardStatus.SENT or not reward.payout_reference:
            return RewardStatus(reward.status)

        if reward.funding_source == FundingSource.ECASH.value:
            claimed = await self._token_claimed(reward)
        else:
            claimed = await self._pull_payment_claimed(reward)

        if claimed:
            await self.records.mark_claimed(reward.id)
            return RewardStatus.CLAIMED
        if reward.expires_at is not None and reward.expires_at <= utcnow():
            await self.records.mark_expired(reward.id)
            return RewardStatus.EXPIRED
        return RewardStatus.SENT

    async def refresh_outstanding(self, limit: int = 200) -> dict[str, int]:
        rewards = await self.records.list_outstanding(limit)
        stats = {"checked": 0, "claimed": 0, "expired": 0, "errors": 0}

        for reward_id in [reward.id for reward in rewards]:
            stats["checked"] += 1
            try:
                # rollback מבטל את הטעינה של השורות, לכן נטען מחדש לפי id
                reward = await self.records.get_by_id(reward_id)
                # נרשם לפני הבדיקה, כך ששורה שנכשלה לא חוזרת לראש התור
                await self.records.update(reward_id, last_checked_at=utcnow())
                await self.db.commit()
                status = await self.refresh(reward)
                await self.db.commit()
            except Exception as exc:
                await self.db.rollback()
                stats["errors"] += 1
                logger.warning(
                    "Claim status check failed",
                    extra_data={"reward_id": reward_id, "error": str(exc)},
                )
                continue
            if status == RewardStatus.CLAIMED:
                stats["claimed"] += 1
            elif status == RewardStatus.EXPIRED:
                stats["expired"] += 1

        if stats["claimed"] or stats["expired"]:
            logger.info("Claim status refreshed", extra_data=stats)
        return stats
