"""
Tests for the reward record store
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import InvalidStatusTransitionError, RewardAlreadyExistsError
from app.db.models.reward_issue import RewardIssue, RewardStage, RewardStatus
from app.domain.services.reward_record_service import RewardRecordService

T0 = datetime(2024, 3, 1, 12, 0)


def _reward(reward_id: str, store_id: str = "store-1", tx_id: str | None = None, **fields) -> RewardIssue:
    values = {
        "id": reward_id,
        "store_id": store_id,
        "transaction_id": tx_id or f"tx-{reward_id}",
        "platform": "shopify",
        "transaction_amount": Decimal("50"),
        "currency": "USD",
        "amount_sats": 2000,
        "customer_email": "alice@example.com",
        "created_at": T0,
        **fields,
    }
    return RewardIssue(**values)


class TestCreateAndRead:

    @pytest.mark.unit
    async def test_create_defaults(self, db_session):
        service = RewardRecordService(db_session)
        reward = await service.create(_reward("r1"))
        await db_session.commit()

        stored = await service.get_by_id("r1")
        assert stored is reward
        assert stored.status == RewardStatus.PENDING
        assert stored.stage == RewardStage.CREATED
        assert not stored.is_terminal

    @pytest.mark.unit
    async def test_duplicate_id_is_rejected(self, db_session):
        service = RewardRecordService(db_session)
        await service.create(_reward("r1"))

        with pytest.raises(RewardAlreadyExistsError) as exc_info:
            await service.create(_reward("r1", tx_id="other"))
        assert exc_info.value.status_code == 409

    @pytest.mark.unit
    async def test_one_reward_per_store_transaction(self, db_session):
        """האינדקס הייחודי חוסם תגמול שני לאותה עסקה"""
        service = RewardRecordService(db_session)
        await service.create(_reward("r1", tx_id="order-1"))

        with pytest.raises(IntegrityError):
            await service.create(_reward("r2", tx_id="order-1"))
        await db_session.rollback()

    @pytest.mark.unit
    async def test_same_transaction_in_other_store_is_allowed(self, db_session):
        service = RewardRecordService(db_session)
        await service.create(_reward("r1", tx_id="order-1"))
        await service.create(_reward("r2", store_id="store-2", tx_id="order-1"))

        assert (await service.get_by_transaction("store-2", "order-1")).id == "r2"
        assert await service.get_by_transaction("store-3", "order-1") is None

    @pytest.mark.unit
    async def test_list_by_store_newest_first_with_paging(self, db_session):
        service = RewardRecordService(db_session)
        for index in range(5):
            await service.create(_reward(f"r{index}", created_at=T0 + timedelta(minutes=index)))
        await service.create(_reward("other", store_id="store-2"))

        page = await service.list_by_store("store-1", limit=2, offset=1)
        assert [r.id for r in page] == ["r3", "r2"]
        assert len(await service.list_by_store("store-1")) == 5

    @pytest.mark.unit
    async def test_customer_lookup_is_case_insensitive_on_query(self, db_session):
        service = RewardRecordService(db_session)
        await service.create(_reward("old", created_at=T0))
        await service.create(_reward("new", created_at=T0 + timedelta(days=1)))
        await service.create(_reward("bob", customer_email="bob@example.com"))

        rewards = await service.list_by_customer("store-1", "  ALICE@example.com ")
        assert [r.id for r in rewards] == ["new", "old"]
        assert (await service.get_latest_for_customer("store-1", "alice@example.com")).id == "new"
        assert await service.get_latest_for_customer("store-1", "nobody@example.com") is None


class TestUpdate:

    @pytest.mark.unit
    async def test_update_fields_and_status(self, db_session):
        service = RewardRecordService(db_session)
        await service.create(_reward("r1"))

        updated = await service.update(
            "r1", status=RewardStatus.SENT, stage=RewardStage.SENT, claim_link="https://claim", sent_at=T0
        )

        assert updated.status == RewardStatus.SENT
        assert updated.stage == RewardStage.SENT
        assert updated.claim_link == "https://claim"

    @pytest.mark.unit
    async def test_update_unknown_id_is_noop(self, db_session):
        service = RewardRecordService(db_session)
        assert await service.update("missing", error="x") is None
        assert await service.get_by_id("missing") is None

    @pytest.mark.unit
    async def test_identity_fields_are_fixed(self, db_session):
        service = RewardRecordService(db_session)
        await service.create(_reward("r1"))

        with pytest.raises(ValueError):
            await service.update("r1", store_id="store-9")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "start, target",
        [
            (RewardStatus.PENDING, RewardStatus.CLAIMED),
            (RewardStatus.SENT, RewardStatus.PENDING),
            (RewardStatus.SENT, RewardStatus.FAILED),
            (RewardStatus.CLAIMED, RewardStatus.EXPIRED),
            (RewardStatus.FAILED, RewardStatus.SENT),
            (RewardStatus.EXPIRED, RewardStatus.CLAIMED),
        ],
    )
    async def test_illegal_transitions(self, db_session, start: RewardStatus, target: RewardStatus):
        service = RewardRecordService(db_session)
        await service.create(_reward("r1", status=start))

        with pytest.raises(InvalidStatusTransitionError):
            await service.update("r1", status=target)
        assert (await service.get_by_id("r1")).status == start


class TestClaimTransitions:

    @pytest.mark.unit
    async def test_mark_claimed(self, db_session):
        service = RewardRecordService(db_session)
        await service.create(_reward("r1", status=RewardStatus.SENT, sent_at=T0))

        reward = await service.mark_claimed("r1", claimed_at=T0 + timedelta(hours=1))

        assert reward.status == RewardStatus.CLAIMED
        assert reward.claimed_at == T0 + timedelta(hours=1)
        assert reward.is_terminal

    @pytest.mark.unit
    async def test_mark_claimed_twice_is_idempotent(self, db_session):
        service = RewardRecordService(db_session)
        await service.create(_reward("r1", status=RewardStatus.CLAIMED))
        assert (await service.mark_claimed("r1")).status == RewardStatus.CLAIMED

    @pytest.mark.unit
    async def test_expired_reward_cannot_be_claimed(self, db_session):
        service = RewardRecordService(db_session)
        await service.create(_reward("r1", status=RewardStatus.SENT))
        await service.mark_expired("r1")

        with pytest.raises(InvalidStatusTransitionError):
            await service.mark_claimed("r1")

    @pytest.mark.unit
    async def test_list_outstanding_only_sent(self, db_session):
        service = RewardRecordService(db_session)
        await service.create(_reward("late", status=RewardStatus.SENT, sent_at=T0 + timedelta(hours=2)))
        await service.create(_reward("early", status=RewardStatus.SENT, sent_at=T0))
        await service.create(_reward("pending"))
        await service.create(_reward("claimed", status=RewardStatus.CLAIMED, sent_at=T0))

        assert [r.id for r in await service.list_outstanding()] == ["early", "late"]
        assert [r.id for r in await service.list_outstanding(limit=1)] == ["early"]
