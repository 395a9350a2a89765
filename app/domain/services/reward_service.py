"""
Reward Service - the reward-issuance pipeline

    verify → normalize → convert → compute → dispatch

Every inbound source (Shopify / Square webhooks, BTCPay invoice events,
manual test rewards) goes through ``issue_reward``.
"""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import RewardsDisabledError, UnparseablePayloadError, WebhookSignatureError
from app.core.logging import get_logger, log_async_operation
from app.core.validation import CurrencyValidator
from app.db.database import utcnow
from app.db.models.reward_issue import RewardIssue
from app.domain.models.reward_settings import StoreRewardSettings
from app.domain.models.transaction import TEST_TRANSACTION_PREFIX, Platform, Transaction
from app.domain.services.clients import BTCPayClient, ShopifyClient, SquareClient
from app.domain.services.order_normalizer import is_ignorable_square_event, normalize
from app.domain.services.payout_dispatcher import PayoutDispatcher
from app.domain.services.rate_service import RateService
from app.domain.services.reward_calculator import RewardCalculator
from app.domain.services.reward_record_service import RewardRecordService
from app.domain.services.store_settings_service import StoreSettingsService
from app.domain.services.webhook_verifier import verify_webhook

logger = get_logger(__name__)

# BTCPay webhook type → invoice status it reports
BTCPAY_REWARD_EVENTS = {
    "InvoiceSettled": "Completed",
    "InvoiceProcessing": "PaidInFull",
    "InvoicePaymentSettled": "PaymentSettled",
}

STATUS_IGNORED = "ignored"
STATUS_NO_REWARD = "no_reward"
STATUS_DUPLICATE = "duplicate"


@dataclass
class RewardResult:
    """What the webhook caller gets back"""

    status: str
    reward: RewardIssue | None = None
    amount_sats: int = 0

    @property
    def reward_id(self) -> str | None:
        return self.reward.id if self.reward is not None else None

    def to_response(self) -> dict[str, Any]:
        return {"rewardId": self.reward_id, "status": self.status}


def _square_client_for(store_settings: StoreRewardSettings) -> SquareClient | None:
    credentials = store_settings.square
    if not credentials.is_configured:
        return None
    return SquareClient(credentials.access_token, environment=credentials.environment)


def _shopify_client_for(store_settings: StoreRewardSettings) -> ShopifyClient | None:
    credentials = store_settings.shopify
    if not credentials.is_configured:
        return None
    return ShopifyClient(credentials.shop_url, credentials.access_token)


class RewardService:
    def __init__(
        self,
        db: AsyncSession,
        rate_service: RateService,
        dispatcher: PayoutDispatcher,
        btcpay_client: BTCPayClient | None = None,
        calculator: RewardCalculator | None = None,
        square_client_factory: Callable[[StoreRewardSettings], SquareClient | None] = _square_client_for,
        shopify_client_factory: Callable[[StoreRewardSettings], ShopifyClient | None] = _shopify_client_for,
    ):
        self.db = db
        self.settings_service = StoreSettingsService(db)
        self.records = RewardRecordService(db)
        self.rate_service = rate_service
        self.dispatcher = dispatcher
        self.btcpay = btcpay_client or BTCPayClient()
        self.calculator = calculator or RewardCalculator()
        self._square_client_factory = square_client_factory
        self._shopify_client_factory = shopify_client_factory

    # ==================== webhooks ====================

    @staticmethod
    def _webhook_secret(platform: Platform, store_settings: StoreRewardSettings) -> tuple[str, str]:
        """(secret, notification_url)"""
        if platform == Platform.SHOPIFY:
            return store_settings.shopify.webhook_secret, ""
        if platform == Platform.SQUARE:
            return store_settings.square.webhook_signature_key, store_settings.square.notification_url
        return store_settings.btcpay.webhook_secret, ""

    @staticmethod
    def _check_enabled(store_id: str, platform: Platform, store_settings: StoreRewardSettings) -> None:
        if not store_settings.enabled:
            raise RewardsDisabledError(store_id)
        if not store_settings.is_platform_enabled(platform):
            raise RewardsDisabledError(store_id, platform.value)

    async def handle_webhook(
        self,
        platform: Platform,
        store_id: str,
        raw_body: bytes,
        signature_header: str | None,
    ) -> RewardResult:
        """
        Full webhook path for one inbound request.

        Raises:
            StoreNotFoundError: no settings for ``store_id`` (404)
            WebhookSignatureError: HMAC mismatch (401), checked before parsing
            RewardsDisabledError: store or platform switched off (400)
            UnparseablePayloadError: body is not a usable event (400)
        """
        store_settings = await self.settings_service.get(store_id)

        secret, notification_url = self._webhook_secret(platform, store_settings)
        if not verify_webhook(raw_body, signature_header, secret, platform, notification_url):
            raise WebhookSignatureError(platform.value)

        self._check_enabled(store_id, platform, store_settings)

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise UnparseablePayloadError(platform.value, "Body is not valid JSON")
        if not isinstance(payload, dict):
            raise UnparseablePayloadError(platform.value)

        if platform == Platform.BTCPAY:
            return await self.handle_btcpay_event(store_id, payload, store_settings)
        return await self.process_commerce_event(platform, store_id, payload, store_settings)

    async def process_commerce_event(
        self,
        platform: Platform,
        store_id: str,
        payload: dict,
        store_settings: StoreRewardSettings,
    ) -> RewardResult:
        if platform == Platform.SQUARE and is_ignorable_square_event(payload):
            logger.info(
                "Square event ignored",
                extra_data={"store_id": store_id, "event_type": payload.get("type")},
            )
            return RewardResult(status=STATUS_IGNORED)

        transaction = await normalize(
            platform,
            payload,
            store_id,
            square_client=self._square_client_factory(store_settings),
            shopify_client=self._shopify_client_factory(store_settings),
        )
        if transaction is None:
            raise UnparseablePayloadError(platform.value)

        return await self.issue_reward(store_id, transaction, store_settings)

    async def handle_btcpay_event(
        self,
        store_id: str,
        payload: dict,
        store_settings: StoreRewardSettings,
    ) -> RewardResult:
        """React to settled/paid invoice events; everything else is acknowledged"""
        event_type = payload.get("type")
        if event_type not in BTCPAY_REWARD_EVENTS:
            logger.debug(
                "BTCPay event ignored",
                extra_data={"store_id": store_id, "event_type": event_type},
            )
            return RewardResult(status=STATUS_IGNORED)

        invoice_id = payload.get("invoiceId")
        if not invoice_id:
            raise UnparseablePayloadError(Platform.BTCPAY.value, "Event has no invoiceId")

        invoice = await self.btcpay.get_invoice(store_id, str(invoice_id))
        if invoice is None:
            raise UnparseablePayloadError(Platform.BTCPAY.value, f"Invoice {invoice_id} not found")

        transaction = await normalize(Platform.BTCPAY, invoice, store_id)
        if transaction is None:
            raise UnparseablePayloadError(Platform.BTCPAY.value)

        logger.info(
            "BTCPay invoice event accepted",
            extra_data={
                "store_id": store_id,
                "invoice_id": invoice_id,
                "event_type": event_type,
                "invoice_status": BTCPAY_REWARD_EVENTS[event_type],
            },
        )
        return await self.issue_reward(store_id, transaction, store_settings)

    # ==================== pipeline ====================

    @log_async_operation("issue_reward")
    async def issue_reward(
        self,
        store_id: str,
        transaction: Transaction,
        store_settings: StoreRewardSettings,
    ) -> RewardResult:
        # בדיקה מוקדמת חוסכת קריאת שער; ה-index הייחודי הוא ההגנה האמיתית
        existing = await self.records.get_by_transaction(store_id, transaction.transaction_id)
        if existing is not None:
            return RewardResult(status=STATUS_DUPLICATE, reward=existing, amount_sats=existing.amount_sats)

        btc_amount = await self.rate_service.convert_to_btc(
            transaction.amount,
            transaction.currency,
            store_settings.preferred_rate_provider,
        )
        amount_sats = self.calculator.compute(transaction, btc_amount, store_settings)
        if amount_sats <= 0:
            return RewardResult(status=STATUS_NO_REWARD)

        outcome = await self.dispatcher.dispatch(
            store_id,
            transaction,
            amount_sats,
            store_settings,
            btc_amount=btc_amount,
        )
        if outcome.duplicate:
            return RewardResult(status=STATUS_DUPLICATE, reward=outcome.reward, amount_sats=outcome.reward.amount_sats)
        return RewardResult(status=outcome.status.value, reward=outcome.reward, amount_sats=amount_sats)

    async def create_test_reward(
        self,
        store_id: str,
        amount: Decimal,
        currency: str = "USD",
        customer_email: str = "",
        customer_phone: str = "",
        platform: Platform = Platform.BTCPAY,
    ) -> RewardResult:
        """
        Manual reward for checking a store's setup end to end.

        The platform flag is not checked; the store must exist and be enabled.
        """
        store_settings = await self.settings_service.get(store_id)
        if not store_settings.enabled:
            raise RewardsDisabledError(store_id)

        transaction = Transaction(
            transaction_id=f"{TEST_TRANSACTION_PREFIX}{uuid.uuid4().hex}",
            amount=Decimal(str(amount)),
            currency=CurrencyValidator.normalize(currency),
            platform=platform,
            timestamp=utcnow(),
            customer_email=customer_email or "",
            customer_phone=customer_phone or "",
            metadata={"storeId": store_id},
        )
        logger.info(
            "Test reward requested",
            extra_data={
                "store_id": store_id,
                "transaction_id": transaction.transaction_id,
                "amount": str(transaction.amount),
                "currency": transaction.currency,
            },
        )
        return await self.issue_reward(store_id, transaction, store_settings)
