"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "bitcoin_rewards",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # melt על mint איטי יכול לקחת כמה דקות
    task_time_limit=600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "retry-failed-cashu-transactions-every-minute": {
        "task": "app.workers.tasks.retry_failed_cashu_transactions",
        "schedule": 60.0,
    },
    "process-notification-outbox-every-10-seconds": {
        "task": "app.workers.tasks.process_notification_outbox",
        "schedule": 10.0,
    },
    "refresh-reward-claim-status-every-5-minutes": {
        "task": "app.workers.tasks.refresh_reward_claim_status",
        "schedule": 300.0,
    },
    "cleanup-sent-notifications-daily": {
        "task": "app.workers.tasks.cleanup_sent_notifications",
        "schedule": 86400.0,  # 24 hours
    },
}
