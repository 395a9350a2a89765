"""
Admin Debug Endpoints - endpoints דיאגנוסטיים לניטור ותחזוקה ללא גישה ישירה ל-DB.

שלושה כלים עיקריים:
1. סטטוס circuit breakers (mints, BTCPay, Shopify, Square, email, SMS, rates)
2. שאילתת הודעות outbox כושלות עם אפשרות retry ידני
3. יומן פעולות Cashu שלא הוכרעו, עם retry ידני
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import get_wallet_ledger
from app.core.circuit_breaker import (
    CircuitBreaker,
    get_btcpay_circuit_breaker,
    get_email_circuit_breaker,
    get_shopify_circuit_breaker,
    get_sms_circuit_breaker,
    get_square_circuit_breaker,
)
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.failed_transaction import Resolution
from app.db.models.notification_message import NotificationMessage, NotificationStatus
from app.domain.services.cashu import CashuWalletLedger

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


# ─── Pydantic models ────────────────────────────────────────────────────────

class CircuitBreakerStatusResponse(BaseModel):
    """סטטוס של circuit breaker בודד"""
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    success_count: int
    half_open_calls: int
    retry_after_seconds: float = Field(
        description="שניות עד שניסיון חוזר אפשרי (0 אם לא פתוח)"
    )


class NotificationMessageResponse(BaseModel):
    """הודעת outbox בודדת"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    channel: str
    recipient: str
    reward_id: str | None
    status: str
    retry_count: int
    max_retries: int
    last_error: str | None
    next_retry_at: datetime | None
    created_at: datetime | None
    processed_at: datetime | None


class OutboxRetryResponse(BaseModel):
    """תשובה לפעולת retry על הודעה"""
    message_id: int
    previous_status: str
    new_status: str
    retry_count: int


class OutboxSummaryResponse(BaseModel):
    """סיכום כמותי של הודעות outbox"""
    pending: int = 0
    processing: int = 0
    sent: int = 0
    failed: int = 0
    total: int = 0


class FailedTransactionResponse(BaseModel):
    """שורת יומן של פעולת mint"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    store_id: str
    mint_url: str
    unit: str
    operation_type: str
    resolution: str
    retry_count: int
    last_retried: datetime | None
    next_retry_at: datetime | None
    melt_quote_id: str | None
    mint_quote_id: str | None
    details: str | None
    created_at: datetime


class CashuRetryResponse(BaseModel):
    operation_id: str
    result: str


def _value(field) -> str:
    return field.value if hasattr(field, "value") else str(field)


# ─── 1. Circuit Breakers ────────────────────────────────────────────────────

def _cb_to_response(cb: CircuitBreaker) -> CircuitBreakerStatusResponse:
    """המרת circuit breaker למודל תשובה"""
    return CircuitBreakerStatusResponse(
        service=cb.service_name,
        state=cb.state.value,
        failure_count=cb._state.failure_count,
        success_count=cb._state.success_count,
        half_open_calls=cb._state.half_open_calls,
        retry_after_seconds=round(cb.get_retry_after(), 1),
    )


@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="סטטוס circuit breakers",
    description=(
        "מחזיר את המצב הנוכחי של כל circuit breaker רשום, כולל breaker לכל mint "
        "ולכל ספק שערים שכבר נוצר."
    ),
)
async def get_circuit_breaker_status() -> list[CircuitBreakerStatusResponse]:
    # אתחול ה-breakers הקבועים (כדי שיהיו ב-_instances גם לפני הקריאה הראשונה)
    for factory in (
        get_btcpay_circuit_breaker,
        get_shopify_circuit_breaker,
        get_square_circuit_breaker,
        get_email_circuit_breaker,
        get_sms_circuit_breaker,
    ):
        factory()
    breakers = sorted(CircuitBreaker._instances.values(), key=lambda cb: cb.service_name)
    return [_cb_to_response(cb) for cb in breakers]


# ─── 2. הודעות outbox + retry ────────────────────────────────────────────────

@router.get("/outbox/summary", response_model=OutboxSummaryResponse, summary="סיכום כמותי של הודעות outbox")
async def get_outbox_summary(db: AsyncSession = Depends(get_db)) -> OutboxSummaryResponse:
    result = await db.execute(
        select(NotificationMessage.status, func.count(NotificationMessage.id))
        .group_by(NotificationMessage.status)
    )
    counts = {_value(row_status): count for row_status, count in result.all()}

    return OutboxSummaryResponse(
        pending=counts.get("pending", 0),
        processing=counts.get("processing", 0),
        sent=counts.get("sent", 0),
        failed=counts.get("failed", 0),
        total=sum(counts.values()),
    )


@router.get(
    "/outbox/messages",
    response_model=list[NotificationMessageResponse],
    summary="שאילתת הודעות outbox",
    description="ברירת מחדל: הודעות כושלות (failed) בלבד.",
)
async def get_outbox_messages(
    db: AsyncSession = Depends(get_db),
    message_status: Optional[str] = Query(
        default="failed",
        description="סינון לפי סטטוס: pending, processing, sent, failed",
    ),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[NotificationMessageResponse]:
    query = select(NotificationMessage).order_by(NotificationMessage.created_at.desc()).limit(limit)

    if message_status:
        valid_statuses = {s.value for s in NotificationStatus}
        if message_status not in valid_statuses:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"סטטוס לא תקין. אפשרויות: {', '.join(sorted(valid_statuses))}",
            )
        query = query.where(NotificationMessage.status == NotificationStatus(message_status))

    result = await db.execute(query)
    return [
        NotificationMessageResponse(
            id=msg.id,
            channel=_value(msg.channel),
            recipient=msg.recipient,
            reward_id=msg.reward_id,
            status=_value(msg.status),
            retry_count=msg.retry_count,
            max_retries=msg.max_retries,
            last_error=msg.last_error,
            next_retry_at=msg.next_retry_at,
            created_at=msg.created_at,
            processed_at=msg.processed_at,
        )
        for msg in result.scalars().all()
    ]


@router.post(
    "/outbox/messages/{message_id}/retry",
    response_model=OutboxRetryResponse,
    summary="retry ידני להודעה כושלת",
    description="מאפס את סטטוס ההודעה ל-pending. עובד רק על הודעות בסטטוס failed.",
)
async def retry_outbox_message(
    message_id: int,
    db: AsyncSession = Depends(get_db),
) -> OutboxRetryResponse:
    message = await db.get(NotificationMessage, message_id)
    if not message:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"הודעה {message_id} לא נמצאה",
        )

    previous_status = _value(message.status)
    if message.status != NotificationStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"אפשר לעשות retry רק להודעות בסטטוס failed, הסטטוס הנוכחי: {previous_status}",
        )

    message.status = NotificationStatus.PENDING
    message.next_retry_at = None
    await db.commit()

    logger.info(
        "retry ידני להודעת outbox",
        extra_data={"message_id": message_id, "previous_status": previous_status},
    )
    return OutboxRetryResponse(
        message_id=message.id,
        previous_status=previous_status,
        new_status=NotificationStatus.PENDING.value,
        retry_count=message.retry_count,
    )


# ─── 3. יומן Cashu ───────────────────────────────────────────────────────────

@router.get(
    "/cashu/failed-transactions",
    response_model=list[FailedTransactionResponse],
    summary="פעולות mint לפי הכרעה",
    description="ברירת מחדל: פעולות שעדיין pending.",
)
async def list_failed_transactions(
    store_id: Optional[str] = Query(default=None),
    resolution: Resolution = Query(default=Resolution.PENDING),
    limit: int = Query(default=100, ge=1, le=500),
    ledger: CashuWalletLedger = Depends(get_wallet_ledger),
) -> list[FailedTransactionResponse]:
    rows = await ledger.list_failed_transactions(store_id=store_id, resolution=resolution, limit=limit)
    return [
        FailedTransactionResponse(
            id=row.id,
            store_id=row.store_id,
            mint_url=row.mint_url,
            unit=row.unit,
            operation_type=_value(row.operation_type),
            resolution=_value(row.resolution),
            retry_count=row.retry_count,
            last_retried=row.last_retried,
            next_retry_at=row.next_retry_at,
            melt_quote_id=row.melt_quote_id,
            mint_quote_id=row.mint_quote_id,
            details=row.details,
            created_at=row.created_at,
        )
        for row in rows
    ]


@router.post(
    "/cashu/failed-transactions/{operation_id}/retry",
    response_model=CashuRetryResponse,
    summary="בדיקה חוזרת מיידית של פעולת mint",
)
async def retry_failed_transaction(
    operation_id: str,
    ledger: CashuWalletLedger = Depends(get_wallet_ledger),
) -> CashuRetryResponse:
    result = await ledger.retry_failed_transaction(operation_id)
    logger.info(
        "retry ידני לפעולת mint",
        extra_data={"operation_id": operation_id, "result": result.value},
    )
    return CashuRetryResponse(operation_id=operation_id, result=result.value)
