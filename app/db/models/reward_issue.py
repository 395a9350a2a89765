"""
Reward Issue Model - one row per rewarded inbound event
"""
import enum
import uuid

from sqlalchemy import (
    Column, String, DateTime, Numeric, BigInteger, Text, Enum as SQLEnum,
    UniqueConstraint, Index,
)

from app.db.database import Base, utcnow


class RewardStage(str, enum.Enum):
    """Pipeline progress of a single issuance"""
    CREATED = "created"
    FUNDING = "funding"
    DELIVERING = "delivering"
    SENT = "sent"
    FAILED = "failed"


class RewardStatus(str, enum.Enum):
    """Customer-facing lifecycle; Claimed, Expired and Failed are terminal"""
    PENDING = "Pending"
    SENT = "Sent"
    CLAIMED = "Claimed"
    EXPIRED = "Expired"
    FAILED = "Failed"


# Allowed status transitions (monotonic)
REWARD_STATUS_TRANSITIONS: dict[RewardStatus, frozenset[RewardStatus]] = {
    RewardStatus.PENDING: frozenset({RewardStatus.SENT, RewardStatus.FAILED}),
    RewardStatus.SENT: frozenset({RewardStatus.CLAIMED, RewardStatus.EXPIRED}),
    RewardStatus.CLAIMED: frozenset(),
    RewardStatus.EXPIRED: frozenset(),
    RewardStatus.FAILED: frozenset(),
}


def new_reward_id() -> str:
    return uuid.uuid4().hex


class RewardIssue(Base):
    """Issued reward with payout reference and delivery outcome"""

    __tablename__ = "reward_issues"

    id = Column(String(36), primary_key=True, default=new_reward_id)
    store_id = Column(String(100), nullable=False, index=True)
    transaction_id = Column(String(200), nullable=False)
    platform = Column(String(20), nullable=False)
    order_id = Column(String(200), nullable=True)
    invoice_id = Column(String(200), nullable=True)

    customer_email = Column(String(320), nullable=True)
    customer_phone = Column(String(50), nullable=True)

    transaction_amount = Column(Numeric(18, 8), nullable=False)
    currency = Column(String(10), nullable=False)
    amount_sats = Column(BigInteger, nullable=False)

    funding_source = Column(String(20), nullable=True)
    # pull payment id (lightning / onchain) או cashuA token (ecash)
    payout_reference = Column(Text, nullable=True)
    claim_link = Column(Text, nullable=True)
    delivery_channel = Column(String(20), nullable=True)

    stage = Column(SQLEnum(RewardStage), nullable=False, default=RewardStage.CREATED)
    status = Column(SQLEnum(RewardStatus), nullable=False, default=RewardStatus.PENDING, index=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    # בדיקת claim אחרונה; הסריקה מתחילה מהשורות שלא נבדקו הכי הרבה זמן
    last_checked_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # אירוע נכנס אחד = תגמול אחד, גם כשה-webhook נשלח פעמיים במקביל
        UniqueConstraint("store_id", "transaction_id", name="uq_reward_issue_store_tx"),
        Index("ix_reward_issues_store_email", "store_id", "customer_email"),
        Index("ix_reward_issues_store_created", "store_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return not REWARD_STATUS_TRANSITIONS[self.status]
