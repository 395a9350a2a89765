"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin_debug import router as admin_debug_router
from app.api.routes.rewards import router as rewards_router
from app.api.routes.settings import router as settings_router
from app.api.routes.wallet import router as wallet_router

router = APIRouter()

router.include_router(rewards_router, prefix="/stores/{store_id}/rewards", tags=["Rewards"])
router.include_router(settings_router, prefix="/stores/{store_id}/settings", tags=["Settings"])
router.include_router(wallet_router, prefix="/stores/{store_id}/wallet", tags=["Wallet"])
router.include_router(admin_debug_router, prefix="/admin/debug", tags=["Admin Debug"])
