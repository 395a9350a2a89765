"""
Sender Factory - one sender instance per channel
"""
from __future__ import annotations

import threading

from app.core.logging import get_logger
from app.db.models.notification_message import NotificationChannel
from app.domain.services.notifications.base_sender import BaseNotificationSender

logger = get_logger(__name__)

_senders: dict[NotificationChannel, BaseNotificationSender] = {}
_lock = threading.Lock()


def _create_sender(channel: NotificationChannel) -> BaseNotificationSender:
    if channel == NotificationChannel.EMAIL:
        from app.domain.services.notifications.email_sender import HttpEmailSender

        return HttpEmailSender()

    if channel == NotificationChannel.SMS:
        from app.domain.services.notifications.sms_sender import HttpSmsSender

        return HttpSmsSender()

    raise ValueError(f"Unknown notification channel: {channel}")


def get_notification_sender(channel: NotificationChannel) -> BaseNotificationSender:
    if channel not in _senders:
        with _lock:
            if channel not in _senders:
                _senders[channel] = _create_sender(channel)
                logger.info(
                    "Notification sender initialized",
                    extra_data={
                        "channel": channel.value,
                        "configured": _senders[channel].is_configured,
                    },
                )
    return _senders[channel]


def reset_senders() -> None:
    """ניקוי ה-cache (לבדיקות)"""
    with _lock:
        _senders.clear()
