"""
Per-store settings
"""
from fastapi import APIRouter, Depends

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import get_store_settings_service
from app.domain.models.reward_settings import StoreRewardSettings
from app.domain.services.store_settings_service import StoreSettingsService

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


@router.get("", response_model=StoreRewardSettings, summary="הגדרות החנות")
async def get_settings(
    store_id: str,
    settings_service: StoreSettingsService = Depends(get_store_settings_service),
) -> StoreRewardSettings:
    return await settings_service.get(store_id)


@router.put(
    "",
    response_model=StoreRewardSettings,
    summary="שמירת הגדרות החנות",
    description="מחליף את מסמך ההגדרות כולו. ולידציה נכשלת מחזירה 422.",
)
async def put_settings(
    store_id: str,
    body: StoreRewardSettings,
    settings_service: StoreSettingsService = Depends(get_store_settings_service),
) -> StoreRewardSettings:
    return await settings_service.save(store_id, body)
