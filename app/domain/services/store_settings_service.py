"""
Store Settings Service - load/save the per-store settings document
"""
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import StoreNotFoundError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.store_settings import StoreSettings
from app.domain.models.reward_settings import StoreRewardSettings

logger = get_logger(__name__)


class StoreSettingsService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find(self, store_id: str) -> StoreRewardSettings | None:
        row = await self.db.get(StoreSettings, store_id)
        if row is None:
            return None
        return StoreRewardSettings.model_validate(row.settings_json or {})

    async def get(self, store_id: str) -> StoreRewardSettings:
        """
        Raises:
            StoreNotFoundError: the store has no settings row
        """
        store_settings = await self.find(store_id)
        if store_settings is None:
            raise StoreNotFoundError(store_id)
        return store_settings

    async def save(self, store_id: str, store_settings: StoreRewardSettings) -> StoreRewardSettings:
        document = store_settings.model_dump(mode="json")
        row = await self.db.get(StoreSettings, store_id)
        if row is None:
            row = StoreSettings(store_id=store_id, settings_json=document)
            self.db.add(row)
        else:
            row.settings_json = document
            row.updated_at = utcnow()
        await self.db.commit()

        logger.info(
            "Store settings saved",
            extra_data={
                "store_id": store_id,
                "enabled": store_settings.enabled,
                "funding_order": [source.value for source in store_settings.rewards.funding_order()],
            },
        )
        return store_settings
