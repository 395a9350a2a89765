"""
ממשק בסיסי לשליחת הודעות ללקוח (email / SMS).

שכבת ה-outbox תלויה רק בממשק; כל מימוש אחראי על ה-HTTP, על
circuit breaker ועל נרמול הנמען.
"""
from __future__ import annotations

from abc import ABC, abstractmethod


class BaseNotificationSender(ABC):

    channel: str = ""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """האם יש URL ומפתח לשער"""

    @abstractmethod
    async def send(self, recipient: str, body: str, subject: str | None = None) -> None:
        """
        שליחת הודעה אחת.

        Raises:
            ExternalServiceException: בכשלון שליחה (כולל timeout / circuit פתוח).
        """
