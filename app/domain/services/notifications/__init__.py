"""
Customer notification senders (email / SMS)
"""
from app.domain.services.notifications.base_sender import BaseNotificationSender
from app.domain.services.notifications.sender_factory import (
    get_notification_sender,
    reset_senders,
)

__all__ = [
    "BaseNotificationSender",
    "get_notification_sender",
    "reset_senders",
]
