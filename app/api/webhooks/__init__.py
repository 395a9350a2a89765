"""
Inbound webhooks
"""
from fastapi import APIRouter

from app.api.webhooks.commerce import router as commerce_router

router = APIRouter()

router.include_router(commerce_router, prefix="/webhooks", tags=["Webhooks"])
