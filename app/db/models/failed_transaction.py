"""
Failed Transaction Model - journal of mint operations awaiting reconciliation

Every swap/melt/mint writes a row here, in the same DB transaction that
debits its inputs, before the request goes to the mint. The row stays
``pending`` until the mint confirms either the outputs or the restored
inputs.
"""
import enum
import uuid

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, JSON, Enum as SQLEnum, Index,
)

from app.db.database import Base, utcnow


class MintOperationType(str, enum.Enum):
    SWAP = "swap"
    MELT = "melt"
    MINT = "mint"


class Resolution(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class FailedTransaction(Base):
    """Journal row for one mint operation"""

    __tablename__ = "cashu_failed_transactions"

    id = Column(String(36), primary_key=True, default=lambda: uuid.uuid4().hex)
    store_id = Column(String(100), nullable=False, index=True)
    mint_url = Column(String(500), nullable=False)
    unit = Column(String(20), nullable=False, default="sat")
    operation_type = Column(SQLEnum(MintOperationType), nullable=False)

    # inputs as wire proofs [{id, amount, secret, C}]
    used_proofs = Column(JSON, nullable=False, default=list)
    # blinded outputs + everything needed to unblind them later:
    # {"keyset_id", "amounts", "secrets", "blinding_factors", "blinded_messages",
    #  "send_count"}
    output_data = Column(JSON, nullable=False, default=dict)

    melt_quote_id = Column(String(200), nullable=True)
    melt_quote_expiry = Column(DateTime, nullable=True)
    lightning_invoice = Column(Text, nullable=True)
    mint_quote_id = Column(String(200), nullable=True)

    resolution = Column(SQLEnum(Resolution), nullable=False, default=Resolution.PENDING, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retried = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    details = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_cashu_failed_tx_sweep", "resolution", "next_retry_at"),
    )
