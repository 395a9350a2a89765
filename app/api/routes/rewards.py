"""
Reward history endpoints + manual test reward
"""
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import get_reward_record_service, get_reward_service
from app.core.exceptions import ErrorCode, NotFoundException
from app.db.models.reward_issue import RewardStage, RewardStatus
from app.domain.models.transaction import Platform
from app.domain.services.reward_record_service import RewardRecordService
from app.domain.services.reward_service import RewardService

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class RewardIssueResponse(BaseModel):
    """רשומת תגמול כפי שהיא נשמרת"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    store_id: str
    transaction_id: str
    platform: str
    order_id: str | None
    invoice_id: str | None
    customer_email: str | None
    customer_phone: str | None
    transaction_amount: Decimal
    currency: str
    amount_sats: int
    funding_source: str | None
    claim_link: str | None
    delivery_channel: str | None
    stage: RewardStage
    status: RewardStatus
    error: str | None
    created_at: datetime
    sent_at: datetime | None
    claimed_at: datetime | None
    expires_at: datetime | None


class TestRewardRequest(BaseModel):
    amount: Decimal = Field(default=Decimal("1"), gt=0, description="סכום הרכישה המדומה")
    currency: str = "USD"
    customer_email: str = ""
    customer_phone: str = ""
    platform: Platform = Platform.BTCPAY


class TestRewardResponse(BaseModel):
    reward_id: str | None
    status: str
    amount_sats: int
    claim_link: str | None = None


@router.get(
    "",
    response_model=list[RewardIssueResponse],
    summary="היסטוריית תגמולים של חנות",
    description="החדשים קודם. עם ?email= מחזיר רק את התגמולים של הלקוח.",
)
async def list_rewards(
    store_id: str,
    email: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    records: RewardRecordService = Depends(get_reward_record_service),
) -> list[RewardIssueResponse]:
    if email:
        rewards = await records.list_by_customer(store_id, email, limit=limit)
    else:
        rewards = await records.list_by_store(store_id, limit=limit, offset=offset)
    return [RewardIssueResponse.model_validate(reward) for reward in rewards]


@router.get("/{reward_id}", response_model=RewardIssueResponse, summary="תגמול בודד")
async def get_reward(
    store_id: str,
    reward_id: str,
    records: RewardRecordService = Depends(get_reward_record_service),
) -> RewardIssueResponse:
    reward = await records.get_by_id(reward_id)
    if reward is None or reward.store_id != store_id:
        raise NotFoundException("Reward", reward_id, error_code=ErrorCode.REWARD_NOT_FOUND)
    return RewardIssueResponse.model_validate(reward)


@router.post(
    "/test",
    response_model=TestRewardResponse,
    summary="תגמול בדיקה ידני",
    description="מזהה עסקה TEST_..., 100% מהסכום, ללא בדיקת פלטפורמה.",
)
async def create_test_reward(
    store_id: str,
    body: TestRewardRequest,
    reward_service: RewardService = Depends(get_reward_service),
) -> TestRewardResponse:
    result = await reward_service.create_test_reward(
        store_id,
        amount=body.amount,
        currency=body.currency,
        customer_email=body.customer_email,
        customer_phone=body.customer_phone,
        platform=body.platform,
    )
    return TestRewardResponse(
        reward_id=result.reward_id,
        status=result.status,
        amount_sats=result.amount_sats,
        claim_link=result.reward.claim_link if result.reward is not None else None,
    )
