"""
Notification Message Model - Transactional Outbox for reward emails/SMS
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, Enum as SQLEnum

from app.db.database import Base, utcnow


class NotificationChannel(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class NotificationMessage(Base):
    """Queued customer notification with retry tracking"""

    __tablename__ = "notification_outbox"

    id = Column(Integer, primary_key=True, index=True)

    channel = Column(SQLEnum(NotificationChannel), nullable=False)
    recipient = Column(String(320), nullable=False)  # email address or E.164 phone
    subject = Column(String(500), nullable=True)
    body = Column(Text, nullable=False)
    reward_id = Column(String(36), nullable=True, index=True)

    status = Column(SQLEnum(NotificationStatus), default=NotificationStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=5)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
