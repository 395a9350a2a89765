"""
בדיקות HTTP ל-webhooks של Shopify / Square / BTCPay
"""
import json

import pytest
from sqlalchemy import select

from app.db.models.notification_message import NotificationMessage
from app.db.models.reward_issue import RewardIssue
from app.domain.services.webhook_verifier import (
    compute_btcpay_signature,
    compute_shopify_signature,
    compute_square_signature,
)
from tests.conftest import FakeBTCPayClient

STORE = "store-1"
SHOPIFY_SECRET = "shpss_test"
SQUARE_KEY = "sq_key"
SQUARE_URL = "https://rewards.test/webhooks/square/store-1"
BTCPAY_SECRET = "btcpay_secret"

SHOPIFY_ORDER = json.dumps({
    "id": 1001,
    "order_number": 1001,
    "total_price": "50.00",
    "currency": "USD",
    "email": "alice@example.com",
}).encode()


@pytest.fixture
async def store(store_settings_factory):
    return await store_settings_factory(
        STORE,
        shopify={"webhook_secret": SHOPIFY_SECRET},
        square={"webhook_signature_key": SQUARE_KEY, "notification_url": SQUARE_URL},
        btcpay={"webhook_secret": BTCPAY_SECRET},
    )


def _shopify_headers(body: bytes = SHOPIFY_ORDER) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-Sha256": compute_shopify_signature(body, SHOPIFY_SECRET),
    }


class TestShopifyWebhook:

    @pytest.mark.unit
    async def test_order_is_rewarded(self, api_client, db_session, store):
        response = await api_client.post(
            f"/webhooks/shopify/{STORE}", content=SHOPIFY_ORDER, headers=_shopify_headers()
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "Sent"
        assert body["rewardId"]
        assert "x-correlation-id" in response.headers

        messages = (await db_session.execute(select(NotificationMessage))).scalars().all()
        assert [m.recipient for m in messages] == ["alice@example.com"]
        assert messages[0].reward_id == body["rewardId"]

    @pytest.mark.unit
    async def test_redelivery_is_duplicate(self, api_client, fake_btcpay: FakeBTCPayClient, store):
        """Shopify שולח שוב את אותו webhook: אותו rewardId, בלי תשלום נוסף"""
        first = await api_client.post(f"/webhooks/shopify/{STORE}", content=SHOPIFY_ORDER, headers=_shopify_headers())
        second = await api_client.post(f"/webhooks/shopify/{STORE}", content=SHOPIFY_ORDER, headers=_shopify_headers())

        assert second.status_code == 200
        assert second.json() == {"rewardId": first.json()["rewardId"], "status": "duplicate"}
        assert len(fake_btcpay.pull_payments) == 1

    @pytest.mark.unit
    async def test_bad_signature(self, api_client, store):
        response = await api_client.post(
            f"/webhooks/shopify/{STORE}",
            content=SHOPIFY_ORDER,
            headers={"X-Shopify-Hmac-Sha256": "deadbeef"},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid webhook signature"}

    @pytest.mark.unit
    async def test_unknown_store(self, api_client):
        response = await api_client.post("/webhooks/shopify/nope", content=SHOPIFY_ORDER)

        assert response.status_code == 404
        assert "nope" in response.json()["error"]

    @pytest.mark.unit
    async def test_disabled_store(self, api_client, store_settings_factory):
        await store_settings_factory(STORE, enabled=False)

        response = await api_client.post(f"/webhooks/shopify/{STORE}", content=SHOPIFY_ORDER)

        assert response.status_code == 400
        assert "disabled" in response.json()["error"]

    @pytest.mark.unit
    async def test_garbage_body(self, api_client, store):
        body = b"<xml/>"
        response = await api_client.post(f"/webhooks/shopify/{STORE}", content=body, headers=_shopify_headers(body))

        assert response.status_code == 400
        assert set(response.json()) == {"error"}


class TestSquareWebhook:

    EVENT = json.dumps({
        "type": "order.updated",
        "data": {"object": {"order": {
            "id": "sq-1",
            "total_money": {"amount": 5000, "currency": "USD"},
            "email_address": "sq@example.com",
        }}},
    }).encode()

    @pytest.mark.unit
    @pytest.mark.parametrize("header", ["X-Square-Signature", "X-Square-HmacSha256-Signature"])
    async def test_signed_order(self, api_client, store, header: str):
        signature = compute_square_signature(self.EVENT, SQUARE_KEY, SQUARE_URL)

        response = await api_client.post(f"/webhooks/square/{STORE}", content=self.EVENT, headers={header: signature})

        assert response.status_code == 200
        assert response.json()["status"] == "Sent"

    @pytest.mark.unit
    async def test_signature_for_other_url_is_rejected(self, api_client, store):
        signature = compute_square_signature(self.EVENT, SQUARE_KEY, "https://elsewhere.test/hook")

        response = await api_client.post(
            f"/webhooks/square/{STORE}",
            content=self.EVENT,
            headers={"X-Square-HmacSha256-Signature": signature},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid webhook signature"}

    @pytest.mark.unit
    async def test_bad_signature_creates_nothing(self, api_client, db_session, fake_btcpay: FakeBTCPayClient, store):
        """חתימה שגויה: 401, בלי תגמול, בלי הודעה ובלי pull payment"""
        response = await api_client.post(
            f"/webhooks/square/{STORE}",
            content=self.EVENT,
            headers={"X-Square-Signature": "bm90LXRoZS1zaWduYXR1cmU="},
        )

        assert response.status_code == 401
        assert (await db_session.execute(select(RewardIssue))).scalars().all() == []
        assert (await db_session.execute(select(NotificationMessage))).scalars().all() == []
        assert fake_btcpay.pull_payments == []


class TestBTCPayWebhook:

    @pytest.mark.unit
    async def test_settled_invoice(self, api_client, fake_btcpay: FakeBTCPayClient, store):
        fake_btcpay.invoices["inv-9"] = {"id": "inv-9", "amount": "100", "currency": "USD", "metadata": {}}
        body = json.dumps({"type": "InvoiceSettled", "invoiceId": "inv-9"}).encode()

        response = await api_client.post(
            f"/webhooks/btcpay/{STORE}",
            content=body,
            headers={"BTCPay-Sig": compute_btcpay_signature(body, BTCPAY_SECRET)},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "Sent"
        assert fake_btcpay.pull_payments[0]["amount_sats"] == 200

    @pytest.mark.unit
    async def test_created_invoice_is_acknowledged(self, api_client, store):
        body = json.dumps({"type": "InvoiceCreated", "invoiceId": "inv-9"}).encode()

        response = await api_client.post(f"/webhooks/btcpay/{STORE}", content=body)

        assert response.status_code == 200
        assert response.json() == {"rewardId": None, "status": "ignored"}
