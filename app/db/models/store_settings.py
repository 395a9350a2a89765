"""
Store Settings Model - per-store reward configuration stored as JSON
"""
from sqlalchemy import Column, String, DateTime, JSON

from app.db.database import Base, utcnow


class StoreSettings(Base):
    """
    Raw settings document of one store.

    The JSON is validated into ``StoreRewardSettings`` on every read;
    the pipeline never touches the dict directly.
    """

    __tablename__ = "store_settings"

    store_id = Column(String(100), primary_key=True)
    settings_json = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
