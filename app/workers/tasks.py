"""
Celery Tasks

- sweep of unresolved Cashu mint operations (journal recovery)
- worker side of the notification outbox
- claim status refresh for Sent rewards
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services.cashu import CashuWalletLedger
from app.domain.services.claim_status_service import ClaimStatusService
from app.domain.services.notification_service import NotificationService
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop - מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.retry_failed_cashu_transactions")
def retry_failed_cashu_transactions(limit: int = 50) -> dict:
    """
    Poll the mint for every due journal row.

    Safe on several workers at once: rows are locked one at a time and
    rows already resolved are skipped.
    """

    async def _sweep():
        async with get_task_session() as db:
            return await CashuWalletLedger(db).retry_failed_transactions(limit=limit)

    return run_async(_sweep())


@celery_app.task(name="app.workers.tasks.retry_cashu_operation")
def retry_cashu_operation(operation_id: str) -> dict:
    """Poll one journal row now"""

    async def _retry():
        async with get_task_session() as db:
            result = await CashuWalletLedger(db).retry_failed_transaction(operation_id)
            return {"operation_id": operation_id, "result": result.value}

    return run_async(_retry())


@celery_app.task(name="app.workers.tasks.process_notification_outbox")
def process_notification_outbox(limit: int = 50) -> dict:
    """Send due reward emails/SMS from the outbox"""

    async def _process():
        async with get_task_session() as db:
            return await NotificationService(db).process_pending(limit=limit)

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.refresh_reward_claim_status")
def refresh_reward_claim_status(limit: int = 200) -> dict:
    async def _refresh():
        async with get_task_session() as db:
            return await ClaimStatusService(db).refresh_outstanding(limit=limit)

    return run_async(_refresh())


@celery_app.task(name="app.workers.tasks.cleanup_sent_notifications")
def cleanup_sent_notifications(days: int = 7) -> dict:
    """Clean up old sent messages from the outbox"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await NotificationService(db).cleanup_sent(days=days)
            if deleted:
                logger.info("Old notifications deleted", extra_data={"deleted": deleted, "days": days})
            return {"deleted": deleted}

    return run_async(_cleanup())
