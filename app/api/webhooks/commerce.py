"""
Commerce webhooks - Shopify orders, Square orders/payments, BTCPay invoices

The raw body is read before anything else: signatures are computed over the
exact bytes the platform sent.
"""
from fastapi import APIRouter, Depends, Request

from app.api.dependencies.services import get_reward_service
from app.core.logging import get_logger
from app.domain.models.transaction import Platform
from app.domain.services.reward_service import RewardService
from app.domain.services.webhook_verifier import (
    BTCPAY_SIGNATURE_HEADER,
    SHOPIFY_SIGNATURE_HEADER,
    SQUARE_HMAC_SHA256_HEADER,
    SQUARE_SIGNATURE_HEADER,
)

logger = get_logger(__name__)

router = APIRouter()

_WEBHOOK_RESPONSES = {
    200: {"description": "האירוע עובד: rewardId (או null) וסטטוס"},
    400: {"description": "גוף לא קריא, או תגמולים כבויים לחנות/פלטפורמה"},
    401: {"description": "חתימה לא תקינה"},
    404: {"description": "חנות לא מוכרת"},
}


async def _handle(
    platform: Platform,
    store_id: str,
    request: Request,
    signature: str | None,
    reward_service: RewardService,
) -> dict:
    raw_body = await request.body()
    result = await reward_service.handle_webhook(platform, store_id, raw_body, signature)
    logger.info(
        "Webhook processed",
        extra_data={
            "platform": platform.value,
            "store_id": store_id,
            "reward_id": result.reward_id,
            "status": result.status,
        },
    )
    return result.to_response()


@router.post("/shopify/{store_id}", summary="Shopify order webhook", responses=_WEBHOOK_RESPONSES)
async def shopify_webhook(
    store_id: str,
    request: Request,
    reward_service: RewardService = Depends(get_reward_service),
) -> dict:
    signature = request.headers.get(SHOPIFY_SIGNATURE_HEADER)
    return await _handle(Platform.SHOPIFY, store_id, request, signature, reward_service)


@router.post("/square/{store_id}", summary="Square order/payment webhook", responses=_WEBHOOK_RESPONSES)
async def square_webhook(
    store_id: str,
    request: Request,
    reward_service: RewardService = Depends(get_reward_service),
) -> dict:
    signature = request.headers.get(SQUARE_SIGNATURE_HEADER) or request.headers.get(SQUARE_HMAC_SHA256_HEADER)
    return await _handle(Platform.SQUARE, store_id, request, signature, reward_service)


@router.post("/btcpay/{store_id}", summary="BTCPay invoice webhook", responses=_WEBHOOK_RESPONSES)
async def btcpay_webhook(
    store_id: str,
    request: Request,
    reward_service: RewardService = Depends(get_reward_service),
) -> dict:
    signature = request.headers.get(BTCPAY_SIGNATURE_HEADER)
    return await _handle(Platform.BTCPAY, store_id, request, signature, reward_service)
