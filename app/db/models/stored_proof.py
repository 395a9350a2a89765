"""
Stored Proof Model - ecash held by a store's wallet
"""
import enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Enum as SQLEnum, Index,
)

from app.db.database import Base, utcnow


class ProofState(str, enum.Enum):
    UNSPENT = "unspent"
    SPENT = "spent"


class StoredProof(Base):
    """
    One Cashu proof. Consumed only through the guarded
    ``state='unspent'`` compare-and-set in the wallet ledger.
    """

    __tablename__ = "cashu_proofs"

    id = Column(Integer, primary_key=True, index=True)
    keyset_id = Column(String(66), nullable=False)
    amount = Column(BigInteger, nullable=False)
    secret = Column(String(200), nullable=False, unique=True)
    C = Column("c", String(66), nullable=False)

    store_id = Column(String(100), nullable=False)
    mint_url = Column(String(500), nullable=False)
    unit = Column(String(20), nullable=False, default="sat")

    state = Column(SQLEnum(ProofState), nullable=False, default=ProofState.UNSPENT)
    # journal row that consumed (or created) this proof
    operation_id = Column(String(36), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)
    spent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_cashu_proofs_wallet_state", "store_id", "mint_url", "unit", "state"),
    )

    def to_wire(self) -> dict:
        """Proof as sent to a mint or embedded in a token"""
        return {"id": self.keyset_id, "amount": self.amount, "secret": self.secret, "C": self.C}
