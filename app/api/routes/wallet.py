"""
Store Cashu wallet - balance and funding with a token
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import get_store_settings_service, get_wallet_ledger
from app.core.exceptions import ValidationException
from app.domain.services.cashu import CashuWalletLedger
from app.domain.services.store_settings_service import StoreSettingsService

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class BalanceResponse(BaseModel):
    store_id: str
    mint_url: str
    unit: str
    balance: int


class ReceiveTokenRequest(BaseModel):
    token: str = Field(min_length=1, description="cashuA token, אפשר עם קידומת cashu:")


class ReceiveTokenResponse(BaseModel):
    store_id: str
    amount: int
    balance: int


@router.get("/balance", response_model=BalanceResponse, summary="יתרת הארנק")
async def get_balance(
    store_id: str,
    mint_url: str | None = Query(default=None, description="ברירת מחדל: ה-mint מההגדרות"),
    unit: str | None = Query(default=None),
    ledger: CashuWalletLedger = Depends(get_wallet_ledger),
    settings_service: StoreSettingsService = Depends(get_store_settings_service),
) -> BalanceResponse:
    store_settings = await settings_service.get(store_id)
    mint_url = mint_url or store_settings.normalized_mint_url
    unit = unit or store_settings.rewards.unit
    if not mint_url:
        raise ValidationException("No mint configured for store", field="mint_url")

    balance = await ledger.get_balance(store_id, mint_url, unit)
    return BalanceResponse(store_id=store_id, mint_url=mint_url, unit=unit, balance=balance)


@router.post(
    "/receive",
    response_model=ReceiveTokenResponse,
    summary="טעינת הארנק מ-token",
    description="ה-proofs של ה-token מוחלפים ב-mint ל-proofs חדשים של החנות.",
)
async def receive_token(
    store_id: str,
    body: ReceiveTokenRequest,
    ledger: CashuWalletLedger = Depends(get_wallet_ledger),
    settings_service: StoreSettingsService = Depends(get_store_settings_service),
) -> ReceiveTokenResponse:
    # חנות לא מוכרת → 404 לפני פנייה ל-mint
    store_settings = await settings_service.get(store_id)
    amount = await ledger.receive_token(store_id, body.token)

    balance = 0
    if store_settings.normalized_mint_url:
        balance = await ledger.get_balance(store_id, store_settings.normalized_mint_url, store_settings.rewards.unit)
    return ReceiveTokenResponse(store_id=store_id, amount=amount, balance=balance)
