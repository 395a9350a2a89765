"""
Mint Models - known Cashu mints and their cached keysets
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, JSON, UniqueConstraint,
)

from app.db.database import Base, utcnow


class Mint(Base):
    """A mint the wallet trusts for a unit; inactive mints are refused"""

    __tablename__ = "cashu_mints"

    id = Column(Integer, primary_key=True, index=True)
    url = Column(String(500), nullable=False)
    unit = Column(String(20), nullable=False, default="sat")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("url", "unit", name="uq_cashu_mint_url_unit"),
    )


class MintKeys(Base):
    """Public keys of one keyset (amount -> compressed pubkey hex)"""

    __tablename__ = "cashu_mint_keys"

    id = Column(Integer, primary_key=True, index=True)
    mint_url = Column(String(500), nullable=False, index=True)
    keyset_id = Column(String(66), nullable=False)
    unit = Column(String(20), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    input_fee_ppk = Column(Integer, nullable=False, default=0)
    # JSON keys are strings: {"1": "02ab...", "2": "03cd..."}
    keys = Column(JSON, nullable=False)
    fetched_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("mint_url", "keyset_id", name="uq_cashu_mint_keys_keyset"),
    )
